from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
import re
from typing import Protocol


class PatternMatcher(Protocol):
    def matches(self, pattern: str, resource: str) -> bool: ...


class GlobPatternMatcher:
    # Case-insensitive glob; "*" alone grants every resource of the type.
    def matches(self, pattern: str, resource: str) -> bool:
        normalized_pattern = pattern.strip().lower()
        normalized_resource = resource.strip().lower()
        if not normalized_pattern or not normalized_resource:
            return False
        if normalized_pattern == "*":
            return True
        return fnmatchcase(normalized_resource, normalized_pattern)


class RegexPatternMatcher:
    # Full-match regex for patterns written as "re:<expression>".
    def matches(self, pattern: str, resource: str) -> bool:
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error:
            return False
        return compiled.fullmatch(resource.strip()) is not None


@dataclass
class PatternMatcherRegistry:
    """Dispatch resource patterns to a matcher by syntax prefix.

    Patterns without a registered ``<prefix>:`` use the default glob matcher.
    Register a new syntax here instead of teaching callers about it.
    """

    default: PatternMatcher = field(default_factory=GlobPatternMatcher)
    by_prefix: dict[str, PatternMatcher] = field(default_factory=lambda: {"re": RegexPatternMatcher()})

    def register(self, prefix: str, matcher: PatternMatcher) -> None:
        self.by_prefix[prefix.lower()] = matcher

    def matches(self, pattern: str, resource: str) -> bool:
        prefix, sep, rest = pattern.partition(":")
        if sep:
            matcher = self.by_prefix.get(prefix.lower())
            if matcher is not None:
                return matcher.matches(rest, resource)
        return self.default.matches(pattern, resource)


_default_registry = PatternMatcherRegistry()


def get_pattern_registry() -> PatternMatcherRegistry:
    return _default_registry


def resource_matches(pattern: str, resource: str) -> bool:
    return _default_registry.matches(pattern, resource)
