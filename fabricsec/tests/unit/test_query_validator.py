from __future__ import annotations

from datetime import date
from decimal import Decimal

from fabricsec.core.errors import ErrorCode
from fabricsec.services.authz.resolver import PermissionGrant
from fabricsec.services.query.validator import (
    ParameterSpec,
    ParameterType,
    QuerySecurityValidator,
    ValidationRule,
    bind_parameter_names,
    extract_tables,
    normalize_sql,
)


QUERY_ALL = frozenset({PermissionGrant("QUERY_READ", "QUERY_READ", "QUERY", "READ", "*")})
REPORTS_ONLY = frozenset({PermissionGrant("REPORTS_READ", "REPORTS_READ", "QUERY", "READ", "reports/*")})
BALANCES_AND_REPORTS = REPORTS_ONLY | {PermissionGrant("BALANCES_READ", "BALANCES_READ", "QUERY", "READ", "balances")}
# VIEWER-style grants: plenty of READ, none of it typed for queries.
CONFIG_ONLY = frozenset(
    {
        PermissionGrant("CONFIG_READ", "CONFIG_READ", "BATCH_CONFIG", "READ", "*"),
        PermissionGrant("JOB_MONITOR", "JOB_MONITOR", "BATCH_JOB", "READ", "*"),
    }
)


def _validator() -> QuerySecurityValidator:
    return QuerySecurityValidator(max_joins=3, max_subqueries=3)


def test_parameterized_select_is_accepted() -> None:
    result = _validator().validate(
        "SELECT id, name FROM accounts WHERE branch_code = :branch",
        {"branch": "ABC123"},
        QUERY_ALL,
    )
    assert result.valid
    assert result.error_code is None
    assert result.resources == ["accounts"]
    assert result.bound_parameters == {"branch": "ABC123"}


def test_trailing_semicolon_is_tolerated() -> None:
    result = _validator().validate("SELECT id FROM accounts WHERE id = :id;", {"id": 7}, QUERY_ALL)
    assert result.valid
    assert not result.sql.endswith(";")


def test_multiple_statements_are_rejected() -> None:
    result = _validator().validate("SELECT id FROM accounts; DROP TABLE accounts", {}, QUERY_ALL)
    assert not result.valid
    assert result.error_code == ErrorCode.SECURITY_REJECTED
    assert result.has_rule(ValidationRule.MULTI_STATEMENT)
    assert result.has_rule(ValidationRule.PROHIBITED_KEYWORD)


def test_numeric_literal_in_comparison_is_rejected() -> None:
    result = _validator().validate("SELECT * FROM t WHERE id = 42", {}, QUERY_ALL)
    assert not result.valid
    assert result.error_code == ErrorCode.SECURITY_REJECTED
    assert result.has_rule(ValidationRule.LITERAL)


def test_quoted_literal_is_rejected() -> None:
    result = _validator().validate("SELECT id FROM accounts WHERE name = 'bob'", {}, QUERY_ALL)
    assert result.has_rule(ValidationRule.LITERAL)


def test_non_select_statement_is_rejected() -> None:
    result = _validator().validate("DELETE FROM accounts WHERE id = :id", {"id": 1}, QUERY_ALL)
    assert not result.valid
    assert result.has_rule(ValidationRule.SHAPE)
    assert result.has_rule(ValidationRule.PROHIBITED_KEYWORD)


def test_keyword_matching_respects_word_boundaries() -> None:
    # Column names that merely contain a keyword are fine.
    result = _validator().validate(
        "SELECT updated_at, created_by, deleted_flag FROM accounts WHERE id = :id",
        {"id": 5},
        QUERY_ALL,
    )
    assert result.valid, result.messages


def test_oracle_package_prefixes_are_rejected() -> None:
    result = _validator().validate(
        "SELECT DBMS_PIPE.RECEIVE_MESSAGE(:name) FROM dual",
        {"name": "x"},
        QUERY_ALL,
    )
    assert result.has_rule(ValidationRule.PROHIBITED_KEYWORD)


def test_union_select_is_an_injection_signature() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE id = :id UNION SELECT password FROM users",
        {"id": 1},
        QUERY_ALL,
    )
    assert result.has_rule(ValidationRule.INJECTION)
    assert result.error_code == ErrorCode.SECURITY_REJECTED


def test_injection_in_parameter_value_is_rejected() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE name = :name",
        {"name": "1' OR 1=1 --"},
        QUERY_ALL,
    )
    assert not result.valid
    reasons = [reason for reason in result.reasons if reason.rule == ValidationRule.INJECTION]
    assert reasons and reasons[0].parameter == "name"


def test_comment_sequences_are_rejected() -> None:
    result = _validator().validate("SELECT id FROM accounts -- trailing", {}, QUERY_ALL)
    assert result.has_rule(ValidationRule.INJECTION)


def test_unbound_parameter_is_a_validation_error() -> None:
    result = _validator().validate("SELECT id FROM accounts WHERE id = :id", {}, QUERY_ALL)
    assert not result.valid
    assert result.error_code == ErrorCode.VALIDATION_ERROR
    assert result.has_rule(ValidationRule.UNBOUND_PARAMETER)


def test_unused_parameter_is_rejected() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE id = :id",
        {"id": 1, "extra": "value"},
        QUERY_ALL,
    )
    assert result.has_rule(ValidationRule.UNUSED_PARAMETER)


def test_cast_operator_is_not_a_bind_parameter() -> None:
    assert bind_parameter_names("SELECT amount::numeric FROM ledger WHERE id = :id AND id <> :id") == ["id"]


def test_viewer_grants_do_not_authorize_queries() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE branch_code = :branch",
        {"branch": "ABC123"},
        CONFIG_ONLY,
    )
    assert not result.valid
    assert result.error_code == ErrorCode.SECURITY_REJECTED
    assert result.has_rule(ValidationRule.ACCESS_DENIED)


def test_resource_pattern_limits_access() -> None:
    validator = _validator()
    allowed = validator.validate(
        "SELECT id FROM balances WHERE id = :id", {"id": 1}, BALANCES_AND_REPORTS, resource="reports/daily"
    )
    denied = validator.validate("SELECT id FROM accounts WHERE id = :id", {"id": 1}, REPORTS_ONLY)
    assert allowed.valid, allowed.messages
    assert allowed.resources == ["balances", "reports/daily"]
    assert denied.has_rule(ValidationRule.ACCESS_DENIED)


def test_declared_resource_never_stands_in_for_the_tables_read() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE branch_code = :branch",
        {"branch": "B1"},
        REPORTS_ONLY,
        resource="reports/daily",
    )
    assert not result.valid
    assert result.error_code == ErrorCode.SECURITY_REJECTED
    assert result.resources == ["accounts", "reports/daily"]
    denied = [reason.message for reason in result.reasons if reason.rule == ValidationRule.ACCESS_DENIED]
    assert denied == ["No READ or EXECUTE permission covers resource accounts"]


def test_declared_resource_must_itself_be_authorized() -> None:
    result = _validator().validate(
        "SELECT id FROM balances WHERE id = :id",
        {"id": 1},
        frozenset({PermissionGrant("BALANCES_READ", "BALANCES_READ", "QUERY", "READ", "balances")}),
        resource="reports/daily",
    )
    assert not result.valid
    assert result.has_rule(ValidationRule.ACCESS_DENIED)


def test_every_joined_table_needs_a_grant() -> None:
    result = _validator().validate(
        "SELECT b.id FROM balances b JOIN accounts a ON a.id = b.account_id WHERE b.id = :id",
        {"id": 1},
        BALANCES_AND_REPORTS,
    )
    assert not result.valid
    assert [reason.message for reason in result.reasons] == [
        "No READ or EXECUTE permission covers resource accounts"
    ]


def test_keywords_as_bind_names_are_allowed() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE lock_state = :lock AND region = :set",
        {"lock": "open", "set": "EU"},
        QUERY_ALL,
    )
    assert result.valid, result.messages
    bare = _validator().validate("SELECT id FROM accounts WHERE id = :id FOR UPDATE LOCK", {"id": 1}, QUERY_ALL)
    assert bare.has_rule(ValidationRule.PROHIBITED_KEYWORD)


def test_empty_permissions_deny() -> None:
    result = _validator().validate("SELECT id FROM accounts WHERE id = :id", {"id": 1}, frozenset())
    assert result.has_rule(ValidationRule.ACCESS_DENIED)


def test_cte_names_are_not_resources() -> None:
    sql = (
        "WITH recent AS (SELECT id, branch_code FROM accounts WHERE opened_at >= :since) "
        "SELECT id FROM recent JOIN branches ON branches.code = recent.branch_code"
    )
    assert extract_tables(normalize_sql(sql)) == ["accounts", "branches"]
    result = _validator().validate(sql, {"since": "2024-01-01"}, QUERY_ALL)
    assert result.valid, result.messages


def test_complexity_limits() -> None:
    sql = (
        "SELECT a.id FROM a JOIN b ON b.id = a.id JOIN c ON c.id = a.id "
        "JOIN d ON d.id = a.id JOIN e ON e.id = a.id WHERE a.id = :id"
    )
    result = _validator().validate(sql, {"id": 1}, QUERY_ALL)
    assert result.has_rule(ValidationRule.COMPLEXITY)


def test_parameter_specs_coerce_and_bound() -> None:
    specs = [
        ParameterSpec(name="limit_amount", type=ParameterType.DECIMAL, min_value=0, max_value=1000),
        ParameterSpec(name="as_of", type=ParameterType.DATE),
        ParameterSpec(name="active", type=ParameterType.BOOLEAN),
    ]
    result = _validator().validate(
        "SELECT id FROM accounts WHERE balance < :limit_amount AND opened_at <= :as_of AND active = :active",
        {"limit_amount": "250.50", "as_of": "2024-03-31", "active": "true"},
        QUERY_ALL,
        parameter_specs=specs,
    )
    assert result.valid, result.messages
    assert result.bound_parameters["limit_amount"] == Decimal("250.50")
    assert result.bound_parameters["as_of"] == date(2024, 3, 31)
    assert result.bound_parameters["active"] is True


def test_parameter_spec_violations_are_validation_errors() -> None:
    specs = [
        ParameterSpec(name="branch", max_length=6, pattern=r"[A-Z0-9]+"),
        ParameterSpec(name="days", type=ParameterType.INTEGER, min_value=1, max_value=90),
        ParameterSpec(name="region", type=ParameterType.ENUM, allowed_values=("EU", "US")),
    ]
    result = _validator().validate(
        "SELECT id FROM accounts WHERE branch_code = :branch AND age_days < :days AND region = :region",
        {"branch": "abc", "days": 365, "region": "APAC"},
        QUERY_ALL,
        parameter_specs=specs,
    )
    assert not result.valid
    assert result.error_code == ErrorCode.VALIDATION_ERROR
    assert {reason.parameter for reason in result.reasons} == {"branch", "days", "region"}


def test_missing_required_parameter() -> None:
    result = _validator().validate(
        "SELECT id FROM accounts WHERE branch_code = :branch",
        {},
        QUERY_ALL,
        parameter_specs=[ParameterSpec(name="branch")],
    )
    assert result.error_code == ErrorCode.VALIDATION_ERROR
    assert result.messages == ["PARAMETER: Parameter branch is required"]


def test_all_reasons_are_collected() -> None:
    result = _validator().validate("UPDATE accounts SET x = 1; DROP TABLE y", {}, frozenset())
    rules = {reason.rule for reason in result.reasons}
    assert {
        ValidationRule.SHAPE,
        ValidationRule.MULTI_STATEMENT,
        ValidationRule.PROHIBITED_KEYWORD,
        ValidationRule.INJECTION,
        ValidationRule.LITERAL,
        ValidationRule.ACCESS_DENIED,
    } <= rules
