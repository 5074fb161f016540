from __future__ import annotations

from fabricsec.services.authz.patterns import PatternMatcherRegistry, resource_matches


def test_star_matches_every_resource() -> None:
    assert resource_matches("*", "accounts")
    assert resource_matches("*", "reports/daily_balances")


def test_glob_is_case_insensitive() -> None:
    assert resource_matches("reports/*", "REPORTS/Daily")
    assert not resource_matches("reports/*", "accounts")


def test_empty_pattern_or_resource_never_matches() -> None:
    assert not resource_matches("", "accounts")
    assert not resource_matches("*", "")


def test_regex_prefix_full_matches() -> None:
    assert resource_matches("re:gl_[a-z]+", "gl_balances")
    # Full match, not search: a trailing suffix is not covered.
    assert not resource_matches("re:gl_[a-z]+", "gl_balances_2024")


def test_invalid_regex_denies() -> None:
    assert not resource_matches("re:(unclosed", "anything")


def test_registry_accepts_new_syntax() -> None:
    class ExactMatcher:
        def matches(self, pattern: str, resource: str) -> bool:
            return pattern == resource

    registry = PatternMatcherRegistry()
    registry.register("exact", ExactMatcher())
    assert registry.matches("exact:accounts", "accounts")
    assert not registry.matches("exact:accounts", "ACCOUNTS")
    # Unknown prefixes fall through to the glob matcher.
    assert registry.matches("schema:*", "schema:accounts")
