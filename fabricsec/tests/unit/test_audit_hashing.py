from __future__ import annotations

from datetime import datetime, timezone

from fabricsec.domain.models import AuditRecord
from fabricsec.services.audit import (
    GENESIS_HASH,
    canonical_serialization,
    compute_audit_hash,
    is_compliance_event,
    is_critical,
    is_security_event,
    normalize_payload,
    requires_digital_signature,
    sanitize_metadata,
)


def _record(**overrides: object) -> AuditRecord:
    values: dict[str, object] = {
        "id": 1,
        "event_type": "QUERY_EXECUTION",
        "event_subtype": "AD_HOC",
        "severity": "INFO",
        "user_id": "u-1",
        "session_id": None,
        "ip_address": "10.0.0.1",
        "occurred_at": datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc),
        "payload_json": {"b": 2, "a": [1, 2]},
        "security_event_flag": False,
        "compliance_event_flag": True,
        "risk_level": "LOW",
        "correlation_id": "corr-1",
        "previous_audit_hash": GENESIS_HASH,
        "digital_signature": None,
    }
    values.update(overrides)
    return AuditRecord(**values)


def test_hash_is_deterministic() -> None:
    assert compute_audit_hash(_record()) == compute_audit_hash(_record())
    assert len(compute_audit_hash(_record())) == 64


def test_hash_covers_every_field_and_previous_hash() -> None:
    base = compute_audit_hash(_record())
    assert compute_audit_hash(_record(severity="WARN")) != base
    assert compute_audit_hash(_record(payload_json={"b": 3, "a": [1, 2]})) != base
    assert compute_audit_hash(_record(digital_signature="sig")) != base
    assert compute_audit_hash(_record(previous_audit_hash="f" * 64)) != base


def test_naive_and_aware_utc_timestamps_hash_alike() -> None:
    # SQLite returns naive datetimes; they must hash like the aware originals.
    naive = _record(occurred_at=datetime(2024, 5, 1, 12, 0, 0, 123456))
    assert compute_audit_hash(naive) == compute_audit_hash(_record())


def test_canonical_form_is_key_order_independent() -> None:
    left = canonical_serialization(_record(payload_json={"a": 1, "b": 2}))
    right = canonical_serialization(_record(payload_json={"b": 2, "a": 1}))
    assert left == right


def test_algorithm_is_configurable() -> None:
    assert len(compute_audit_hash(_record(), algorithm="sha512")) == 128


def test_classification_predicates() -> None:
    record = _record(security_event_flag=True, severity="CRITICAL")
    assert is_security_event(record)
    assert is_compliance_event(record)
    assert is_critical(record)
    assert requires_digital_signature(record)
    assert is_critical(_record(risk_level="CRITICAL"))
    assert requires_digital_signature(_record(event_type="ROLE_ASSIGNMENT"))
    assert requires_digital_signature(_record(event_type="CONFIGURATION_CHANGE"))
    assert not requires_digital_signature(_record())


def test_sanitize_redacts_sensitive_keys() -> None:
    payload = {
        "db_password": "hunter2",
        "api_key": "k",
        "nested": {"Authorization": "Bearer abc", "rows": 3},
        "items": [{"refresh_token": "t"}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["db_password"] == "[REDACTED]"
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["nested"] == {"Authorization": "[REDACTED]", "rows": 3}
    assert sanitized["items"] == [{"refresh_token": "[REDACTED]"}]
    assert sanitized["safe"] == "value"


def test_normalize_payload_is_json_round_tripped() -> None:
    occurred = datetime(2024, 1, 1, tzinfo=timezone.utc)
    normalized = normalize_payload({"when": occurred, "ids": (1, 2), "secret": "x"})
    assert normalized == {"when": str(occurred), "ids": [1, 2], "secret": "[REDACTED]"}
    assert normalize_payload(None) == {}
