from re import Pattern
from typing import Any

from reqwire.http import Url


class InternalMatcher:
    """Wraps a user given matcher. Patterns are searched, everything else is compared with `==`."""

    __slots__ = ("matcher",)

    def __init__(self, matcher: Any) -> None:
        self.matcher = str(matcher) if isinstance(matcher, Url) else matcher

    def matches(self, value: Any) -> bool:
        if isinstance(self.matcher, Pattern):
            return isinstance(value, str) and self.matcher.search(value) is not None
        if isinstance(self.matcher, set):
            return value in self.matcher
        return bool(self.matcher == value)

    def __repr__(self) -> str:
        if isinstance(self.matcher, Pattern):
            return f"{self.matcher.pattern} (regex)"
        if isinstance(self.matcher, set):
            return " or ".join(sorted(self.matcher))
        return str(self.matcher)
