"""Static checks applied to an ad-hoc read query before it reaches a connection.

The validator is keyword and shape based, not a SQL parser. It enforces a
strict binding policy: every caller-supplied value travels as a named bind
parameter (``:name``) and the statement text itself may not carry quoted or
compared literals. Failures are returned as structured reasons so rejected
attempts stay forensically useful in the audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
import logging
import re
from typing import Any, Iterable

from fabricsec.core.config import get_settings
from fabricsec.core.errors import ErrorCode
from fabricsec.services.authz.patterns import PatternMatcherRegistry, get_pattern_registry
from fabricsec.services.authz.resolver import PermissionGrant, authorized_patterns


logger = logging.getLogger(__name__)

ALLOWED_LEADING_KEYWORDS = frozenset({"SELECT", "WITH"})

PROHIBITED_KEYWORDS = frozenset(
    {
        "INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT",
        "CREATE", "ALTER", "DROP", "TRUNCATE", "RENAME",
        "GRANT", "REVOKE", "DENY",
        "COMMIT", "ROLLBACK", "SAVEPOINT",
        "EXECUTE", "EXEC", "CALL", "DECLARE", "SET",
        "DIRECTORY", "BFILE", "EXTERNAL",
        "ANALYZE", "EXPLAIN", "LOCK", "UNLOCK", "COPY", "ATTACH", "PRAGMA",
    }
)
# Package prefixes that expose server-side I/O on Oracle.
PROHIBITED_PREFIXES = ("DBMS_", "UTL_")

INJECTION_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("stacked statement", re.compile(r";\s*(INSERT|UPDATE|DELETE|DROP|CREATE|ALTER)\b", re.IGNORECASE)),
    ("UNION SELECT", re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b", re.IGNORECASE)),
    ("quote terminator with comment", re.compile(r"'\s*;\s*--")),
    ("string concatenation", re.compile(r"'\s*\|\|\s*'")),
    ("hex literal", re.compile(r"\b0x[0-9a-f]+\b", re.IGNORECASE)),
    ("BENCHMARK()", re.compile(r"\bBENCHMARK\s*\(", re.IGNORECASE)),
    ("SLEEP()", re.compile(r"\b(PG_)?SLEEP\s*\(", re.IGNORECASE)),
    ("WAITFOR DELAY", re.compile(r"\bWAITFOR\s+DELAY\b", re.IGNORECASE)),
    ("line comment", re.compile(r"--")),
    ("block comment", re.compile(r"/\*|\*/")),
    ("tautology", re.compile(r"\bOR\s+(\d+|'[^']*')\s*=\s*(\d+|'[^']*')", re.IGNORECASE)),
)

# ":name" but not the "::type" cast operator.
_BIND_PATTERN = re.compile(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)")
_WORD_PATTERN = re.compile(r"\b[A-Za-z_][A-Za-z0-9_$]*\b")
_STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'?")
_COMPARED_LITERAL_PATTERN = re.compile(
    r"(<>|!=|<=|>=|=|<|>|\bLIKE\b|\bBETWEEN\b|\bIN\s*\()\s*[-+]?\d+(\.\d+)?\b",
    re.IGNORECASE,
)
_TABLE_PATTERN = re.compile(r"\b(?:FROM|JOIN)\s+([A-Za-z_][A-Za-z0-9_$]*(?:\.[A-Za-z_][A-Za-z0-9_$]*)*)", re.IGNORECASE)
_CTE_NAME_PATTERN = re.compile(r"(?:\bWITH|,)\s*([A-Za-z_][A-Za-z0-9_]*)\s+AS\s*\(", re.IGNORECASE)
_JOIN_PATTERN = re.compile(r"\bJOIN\b", re.IGNORECASE)
_SELECT_PATTERN = re.compile(r"\bSELECT\b", re.IGNORECASE)
_PLAIN_VALUE_PATTERN = re.compile(r"[A-Za-z0-9_./-]*")


class ParameterType(str, Enum):
    STRING = "STRING"
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"
    DATE = "DATE"
    BOOLEAN = "BOOLEAN"
    ENUM = "ENUM"


class ValidationRule(str, Enum):
    SHAPE = "SHAPE"
    MULTI_STATEMENT = "MULTI_STATEMENT"
    PROHIBITED_KEYWORD = "PROHIBITED_KEYWORD"
    INJECTION = "INJECTION"
    LITERAL = "LITERAL"
    UNBOUND_PARAMETER = "UNBOUND_PARAMETER"
    UNUSED_PARAMETER = "UNUSED_PARAMETER"
    ACCESS_DENIED = "ACCESS_DENIED"
    COMPLEXITY = "COMPLEXITY"
    PARAMETER = "PARAMETER"


# Rejections under these rules are malformed input, not an attack or an authorization failure.
_VALIDATION_ONLY_RULES = frozenset({ValidationRule.PARAMETER, ValidationRule.UNBOUND_PARAMETER})


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = True
    min_value: float | None = None
    max_value: float | None = None
    max_length: int | None = None
    pattern: str | None = None
    date_format: str = "%Y-%m-%d"
    allowed_values: tuple[Any, ...] | None = None


@dataclass(frozen=True)
class ValidationReason:
    rule: ValidationRule
    message: str
    parameter: str | None = None

    def __str__(self) -> str:
        return f"{self.rule.value}: {self.message}"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reasons: list[ValidationReason] = field(default_factory=list)
    error_code: ErrorCode | None = None
    resources: list[str] = field(default_factory=list)
    sql: str = ""
    bound_parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def messages(self) -> list[str]:
        return [str(reason) for reason in self.reasons]

    def has_rule(self, rule: ValidationRule) -> bool:
        return any(reason.rule == rule for reason in self.reasons)


def normalize_sql(sql: str) -> str:
    # Collapse whitespace and drop a single trailing terminator.
    text = " ".join((sql or "").split())
    if text.endswith(";"):
        text = text[:-1].rstrip()
    return text


def bind_parameter_names(sql: str) -> list[str]:
    seen: dict[str, None] = {}
    for match in _BIND_PATTERN.finditer(sql):
        seen.setdefault(match.group(1), None)
    return list(seen)


def extract_tables(sql: str) -> list[str]:
    # Tables named after FROM/JOIN, minus CTE names defined in the same statement.
    cte_names = {name.lower() for name in _CTE_NAME_PATTERN.findall(sql)}
    tables: dict[str, None] = {}
    for name in _TABLE_PATTERN.findall(sql):
        lowered = name.lower()
        if lowered in cte_names:
            continue
        tables.setdefault(lowered, None)
    return list(tables)


def _coerce_parameter(spec: ParameterSpec, value: Any) -> tuple[Any, str | None]:
    # Returns (bound value, error message); error is None when the value is acceptable.
    kind = ParameterType(spec.type)
    if kind == ParameterType.INTEGER:
        if isinstance(value, bool):
            return None, "expected an integer"
        try:
            coerced: Any = int(value) if not isinstance(value, str) else int(value.strip(), 10)
        except (TypeError, ValueError):
            return None, "expected an integer"
        if isinstance(value, float) and not value.is_integer():
            return None, "expected an integer"
        return _check_range(spec, coerced)
    if kind == ParameterType.DECIMAL:
        if isinstance(value, bool):
            return None, "expected a decimal number"
        try:
            coerced = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None, "expected a decimal number"
        if not coerced.is_finite():
            return None, "expected a finite decimal number"
        return _check_range(spec, coerced)
    if kind == ParameterType.DATE:
        if isinstance(value, datetime):
            return value.date(), None
        if isinstance(value, date):
            return value, None
        if not isinstance(value, str):
            return None, f"expected a date formatted as {spec.date_format}"
        try:
            return datetime.strptime(value.strip(), spec.date_format).date(), None
        except ValueError:
            return None, f"expected a date formatted as {spec.date_format}"
    if kind == ParameterType.BOOLEAN:
        if isinstance(value, bool):
            return value, None
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true", None
        return None, "expected a boolean"
    if kind == ParameterType.ENUM:
        allowed = spec.allowed_values or ()
        if value not in allowed:
            return None, f"value is not one of the allowed values ({len(allowed)} options)"
        return value, None

    if not isinstance(value, str):
        return None, "expected a string"
    if spec.max_length is not None and len(value) > spec.max_length:
        return None, f"longer than {spec.max_length} characters"
    if spec.pattern is not None and re.fullmatch(spec.pattern, value) is None:
        return None, "does not match the required format"
    if spec.allowed_values is not None and value not in spec.allowed_values:
        return None, "value is not one of the allowed values"
    return value, None


def _check_range(spec: ParameterSpec, value: Any) -> tuple[Any, str | None]:
    comparable = Decimal(str(value))
    if spec.min_value is not None and comparable < Decimal(str(spec.min_value)):
        return None, f"below the minimum of {spec.min_value}"
    if spec.max_value is not None and comparable > Decimal(str(spec.max_value)):
        return None, f"above the maximum of {spec.max_value}"
    return value, None


class QuerySecurityValidator:
    def __init__(
        self,
        *,
        max_joins: int | None = None,
        max_subqueries: int | None = None,
        registry: PatternMatcherRegistry | None = None,
    ) -> None:
        settings = get_settings()
        self._max_joins = max_joins if max_joins is not None else settings.query_max_joins
        self._max_subqueries = max_subqueries if max_subqueries is not None else settings.query_max_subqueries
        self._registry = registry or get_pattern_registry()

    def _check_shape(self, sql: str) -> list[ValidationReason]:
        reasons: list[ValidationReason] = []
        if not sql:
            return [ValidationReason(ValidationRule.SHAPE, "Query text is empty")]
        leading = sql.split(None, 1)[0].upper().strip("(")
        if leading not in ALLOWED_LEADING_KEYWORDS:
            reasons.append(
                ValidationReason(ValidationRule.SHAPE, f"Statement must start with SELECT or WITH, got {leading}")
            )
        if ";" in sql:
            reasons.append(
                ValidationReason(ValidationRule.MULTI_STATEMENT, "Multiple statements are not allowed")
            )
        # Bind names are caller-chosen labels, not SQL; ":lock" is a parameter, not LOCK.
        scrubbed = _BIND_PATTERN.sub(" ", _STRING_LITERAL_PATTERN.sub(" ", sql))
        words = {word.upper() for word in _WORD_PATTERN.findall(scrubbed)}
        prohibited = sorted(words & PROHIBITED_KEYWORDS)
        prohibited += sorted(word for word in words if word.startswith(PROHIBITED_PREFIXES))
        for keyword in prohibited:
            reasons.append(
                ValidationReason(ValidationRule.PROHIBITED_KEYWORD, f"Prohibited keyword: {keyword}")
            )
        if leading == "WITH" and not _SELECT_PATTERN.search(sql):
            reasons.append(ValidationReason(ValidationRule.SHAPE, "WITH clause must end in a SELECT"))
        return reasons

    def _check_injection(self, text: str, *, parameter: str | None = None) -> list[ValidationReason]:
        reasons = []
        for label, pattern in INJECTION_PATTERNS:
            if pattern.search(text):
                where = f"parameter {parameter}" if parameter else "query text"
                reasons.append(
                    ValidationReason(
                        ValidationRule.INJECTION,
                        f"Injection signature ({label}) in {where}",
                        parameter=parameter,
                    )
                )
        return reasons

    def _check_literals(self, sql: str, params: dict[str, Any]) -> list[ValidationReason]:
        # Values belong in bind parameters, never in the statement text.
        reasons = []
        if _STRING_LITERAL_PATTERN.search(sql):
            reasons.append(
                ValidationReason(ValidationRule.LITERAL, "Quoted literal in query text; use a bind parameter")
            )
        if _COMPARED_LITERAL_PATTERN.search(sql):
            reasons.append(
                ValidationReason(ValidationRule.LITERAL, "Literal value in comparison; use a bind parameter")
            )
        stripped = _BIND_PATTERN.sub(" ", sql).lower()
        for name, value in params.items():
            # Plain words may legitimately coincide with identifiers; fragments with syntax may not.
            if not isinstance(value, str) or _PLAIN_VALUE_PATTERN.fullmatch(value.strip()):
                continue
            if len(value.strip()) >= 3 and value.strip().lower() in stripped:
                reasons.append(
                    ValidationReason(
                        ValidationRule.LITERAL,
                        f"Value of parameter {name} appears inline in the query text",
                        parameter=name,
                    )
                )
        return reasons

    def _check_binding(
        self,
        sql: str,
        params: dict[str, Any],
        specs: dict[str, ParameterSpec],
    ) -> list[ValidationReason]:
        reasons = []
        referenced = bind_parameter_names(sql)
        for name in referenced:
            # Declared parameters are reported by the parameter check instead.
            if name not in params and name not in specs:
                reasons.append(
                    ValidationReason(
                        ValidationRule.UNBOUND_PARAMETER, f"No value supplied for :{name}", parameter=name
                    )
                )
        for name in params:
            if name not in referenced:
                reasons.append(
                    ValidationReason(
                        ValidationRule.UNUSED_PARAMETER,
                        f"Parameter {name} has no bind position in the query",
                        parameter=name,
                    )
                )
        return reasons

    def _check_parameters(
        self,
        params: dict[str, Any],
        specs: dict[str, ParameterSpec],
    ) -> tuple[list[ValidationReason], dict[str, Any]]:
        reasons: list[ValidationReason] = []
        bound: dict[str, Any] = {}
        for name, spec in specs.items():
            if params.get(name) is None:
                if spec.required:
                    reasons.append(
                        ValidationReason(ValidationRule.PARAMETER, f"Parameter {name} is required", parameter=name)
                    )
                else:
                    bound[name] = None
                continue
            value, error = _coerce_parameter(spec, params[name])
            if error is not None:
                reasons.append(
                    ValidationReason(ValidationRule.PARAMETER, f"Parameter {name}: {error}", parameter=name)
                )
                continue
            bound[name] = value
        for name, value in params.items():
            if name in specs:
                continue
            # Undeclared parameters are bound as-is but must still be scalar.
            if value is not None and not isinstance(value, (str, int, float, bool, Decimal, date)):
                reasons.append(
                    ValidationReason(
                        ValidationRule.PARAMETER,
                        f"Parameter {name}: unsupported type {type(value).__name__}",
                        parameter=name,
                    )
                )
                continue
            bound[name] = value
        for name, value in params.items():
            if isinstance(value, str):
                reasons.extend(self._check_injection(value, parameter=name))
        return reasons, bound

    def _check_complexity(self, sql: str) -> list[ValidationReason]:
        reasons = []
        joins = len(_JOIN_PATTERN.findall(sql))
        selects = len(_SELECT_PATTERN.findall(sql))
        if joins > self._max_joins:
            reasons.append(
                ValidationReason(ValidationRule.COMPLEXITY, f"{joins} JOINs exceed the limit of {self._max_joins}")
            )
        if selects > self._max_subqueries:
            reasons.append(
                ValidationReason(
                    ValidationRule.COMPLEXITY,
                    f"{selects} SELECT clauses exceed the limit of {self._max_subqueries}",
                )
            )
        return reasons

    def _check_authorization(
        self,
        resources: list[str],
        permissions: Iterable[PermissionGrant],
    ) -> list[ValidationReason]:
        patterns = authorized_patterns(frozenset(permissions))
        if not resources:
            return [ValidationReason(ValidationRule.ACCESS_DENIED, "Query names no target resource")]
        reasons = []
        for resource in resources:
            if not any(self._registry.matches(pattern, resource) for pattern in patterns):
                reasons.append(
                    ValidationReason(
                        ValidationRule.ACCESS_DENIED,
                        f"No READ or EXECUTE permission covers resource {resource}",
                    )
                )
        return reasons

    def validate(
        self,
        sql: str,
        params: dict[str, Any] | None,
        permissions: Iterable[PermissionGrant],
        *,
        resource: str | None = None,
        parameter_specs: Iterable[ParameterSpec] | None = None,
    ) -> ValidationResult:
        params = dict(params or {})
        specs = {spec.name: spec for spec in parameter_specs or ()}
        normalized = normalize_sql(sql)
        # The declared resource is checked on top of the tables the SQL reads, never instead of them.
        resources = extract_tables(normalized)
        declared = (resource or "").strip()
        if declared and declared.lower() not in resources:
            resources.append(declared)

        reasons: list[ValidationReason] = []
        reasons.extend(self._check_shape(normalized))
        reasons.extend(self._check_injection(normalized))
        reasons.extend(self._check_literals(normalized, params))
        reasons.extend(self._check_binding(normalized, params, specs))
        parameter_reasons, bound = self._check_parameters(params, specs)
        reasons.extend(parameter_reasons)
        reasons.extend(self._check_complexity(normalized))
        reasons.extend(self._check_authorization(resources, permissions))

        if not reasons:
            return ValidationResult(
                valid=True,
                resources=resources,
                sql=normalized,
                bound_parameters=bound,
            )
        if all(reason.rule in _VALIDATION_ONLY_RULES for reason in reasons):
            error_code = ErrorCode.VALIDATION_ERROR
        else:
            error_code = ErrorCode.SECURITY_REJECTED
        logger.warning(
            "query_validation_failed error_code=%s rules=%s resources=%s",
            error_code.value,
            ",".join(sorted({reason.rule.value for reason in reasons})),
            ",".join(resources),
        )
        return ValidationResult(
            valid=False,
            reasons=reasons,
            error_code=error_code,
            resources=resources,
            sql=normalized,
        )


@lru_cache
def get_query_validator() -> QuerySecurityValidator:
    return QuerySecurityValidator()


def validate_query(
    sql: str,
    params: dict[str, Any] | None,
    permissions: Iterable[PermissionGrant],
    *,
    resource: str | None = None,
    parameter_specs: Iterable[ParameterSpec] | None = None,
) -> ValidationResult:
    return get_query_validator().validate(
        sql, params, permissions, resource=resource, parameter_specs=parameter_specs
    )
