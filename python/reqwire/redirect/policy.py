"""Redirect policies."""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Self

from reqwire.exceptions import TooManyRedirectsError
from reqwire.http import HeaderMap, Url

DEFAULT_MAX_HOPS = 10

DEFAULT_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "cookie2", "proxy-authorization", "www-authenticate"})


class ActionKind(Enum):
    FOLLOW = "follow"
    STOP = "stop"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Action:
    """What to do with a redirect response. Created with `Attempt.follow()`, `stop()` or `error()`."""

    kind: ActionKind
    error: Exception | str | None = None


@dataclass(frozen=True, slots=True)
class Attempt:
    """A redirect about to be followed."""

    status: int
    """Status code of the redirect response."""
    url: Url
    """URL the redirect points to."""
    previous: list[Url]
    """URLs already requested in this chain, the one that answered with the redirect last."""

    def follow(self) -> Action:
        """Follow the redirect."""
        return Action(ActionKind.FOLLOW)

    def stop(self) -> Action:
        """Do not follow. The redirect response is returned as the final response."""
        return Action(ActionKind.STOP)

    def error(self, error: Exception | str) -> Action:
        """Fail the request with a RedirectError."""
        return Action(ActionKind.ERROR, error)


class Policy:
    """Controls how redirects are followed.

    - `limited` follows up to `max_hops` redirects, then fails with TooManyRedirectsError.
    - `none` never follows. Redirect responses are returned as is.
    - `custom` decides with a function taking an `Attempt` and returning an `Action`.

    The default is `limited(10)`.
    """

    __slots__ = ("_custom", "_max_hops")

    def __init__(self, max_hops: int | None, custom: Callable[[Attempt], Action] | None = None) -> None:
        """Do not use directly. Instead, use limited(), none() or custom()."""
        self._max_hops = max_hops
        self._custom = custom

    @classmethod
    def limited(cls, max_hops: int) -> Self:
        """Follow at most max_hops redirects in a chain."""
        if not isinstance(max_hops, int) or max_hops < 0:
            raise ValueError("max_hops must be a non-negative integer")
        return cls(max_hops)

    @classmethod
    def none(cls) -> Self:
        """Never follow redirects."""
        return cls(None)

    @classmethod
    def custom(cls, policy: Callable[[Attempt], Action]) -> Self:
        """Decide with a custom function. It may delegate to another policy with `other.redirect(attempt)`."""
        if not callable(policy):
            raise TypeError("policy must be callable")
        return cls(None, policy)

    @classmethod
    def default(cls) -> Self:
        return cls.limited(DEFAULT_MAX_HOPS)

    @property
    def follows(self) -> bool:
        """False for the `none` policy."""
        return self._custom is not None or self._max_hops is not None

    @property
    def max_hops(self) -> int | None:
        return self._max_hops

    def redirect(self, attempt: Attempt) -> Action:
        """Apply the policy to an attempt."""
        if self._custom is not None:
            return self._custom(attempt)
        if self._max_hops is None:
            return attempt.stop()
        if len(attempt.previous) > self._max_hops:
            return attempt.error(TooManyRedirectsError(self._max_hops))
        return attempt.follow()

    def __repr__(self) -> str:
        if self._custom is not None:
            return f"Policy.custom({getattr(self._custom, '__name__', self._custom)!r})"
        if self._max_hops is None:
            return "Policy.none()"
        return f"Policy.limited({self._max_hops})"


class SensitiveHeaders:
    """Headers removed from a redirected request when the redirect crosses origins.

    Starts from authorization, cookie, cookie2, proxy-authorization and www-authenticate. `deny` adds names to the
    set, `allow` removes them.
    """

    __slots__ = ("_names",)

    def __init__(self, names: Iterable[str] = DEFAULT_SENSITIVE_HEADERS) -> None:
        self._names = frozenset(name.lower() for name in names)

    def deny(self, *names: str) -> Self:
        return type(self)(self._names | {name.lower() for name in names})

    def allow(self, *names: str) -> Self:
        return type(self)(self._names - {name.lower() for name in names})

    @property
    def names(self) -> frozenset[str]:
        return self._names

    def strip(self, headers: HeaderMap) -> list[str]:
        """Remove the sensitive headers in place. Returns the removed names."""
        return [name for name in sorted(self._names) if headers.popall(name, None) is not None]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._names

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SensitiveHeaders):
            return self._names == other._names
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._names)

    def __repr__(self) -> str:
        return f"SensitiveHeaders({sorted(self._names)!r})"
