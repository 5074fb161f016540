from __future__ import annotations

from datetime import date
from decimal import Decimal

from fabricsec.persistence.db import clamp_readonly_pool_size
from fabricsec.services.query.gateway import (
    EMPTY_RESULT_HASH,
    build_pagination,
    clamp_estimate_timeout,
    compute_result_hash,
    json_safe,
)
from fabricsec.services.query.pool import build_column_metadata


def test_result_hash_of_empty_result() -> None:
    assert compute_result_hash([]) == EMPTY_RESULT_HASH


def test_result_hash_ignores_key_order() -> None:
    left = compute_result_hash([{"id": 1, "name": "a"}])
    right = compute_result_hash([{"name": "a", "id": 1}])
    assert left == right
    assert left.startswith("sha256:")
    assert compute_result_hash([{"id": 2, "name": "a"}]) != left


def test_json_safe_converts_database_types() -> None:
    row = {"amount": Decimal("10.50"), "opened": date(2024, 1, 2), "raw": b"\x01\x02"}
    assert json_safe(row) == {"amount": "10.50", "opened": "2024-01-02", "raw": "0102"}


def test_pagination_marks_truncation() -> None:
    assert build_pagination(returned_rows=100, max_rows=100, truncated=True) == {
        "returned_rows": 100,
        "max_rows": 100,
        "has_more": True,
        "total_rows": "UNKNOWN",
    }
    assert build_pagination(returned_rows=3, max_rows=100, truncated=False)["total_rows"] == 3


def test_estimate_timeout_is_clamped() -> None:
    assert clamp_estimate_timeout(1) == 5.0
    assert clamp_estimate_timeout(10) == 10.0
    assert clamp_estimate_timeout(60) == 15.0


def test_readonly_pool_size_is_bounded() -> None:
    assert clamp_readonly_pool_size(1) == 5
    assert clamp_readonly_pool_size(12) == 12
    assert clamp_readonly_pool_size(50) == 20


def test_column_metadata_falls_back_to_sample_types() -> None:
    description = [("id", None, None, None, None, None, None), ("name", None, None, None, None, None, None)]
    rows = [{"id": 1, "name": None}, {"id": 2, "name": "b"}]
    columns = build_column_metadata(description, rows)
    assert [column.name for column in columns] == ["id", "name"]
    assert columns[0].type_name == "INTEGER"
    assert columns[1].type_name == "VARCHAR"
    assert columns[1].nullable is True
