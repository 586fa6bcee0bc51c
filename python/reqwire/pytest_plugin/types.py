"""Types used in the pytest plugin."""

from collections.abc import Awaitable, Callable
from re import Pattern
from typing import TYPE_CHECKING, Any

from dirty_equals import DirtyEquals

from reqwire.http import Url

if TYPE_CHECKING:
    from reqwire.pytest_plugin.mock import CapturedRequest, MockResponse

Matcher = DirtyEquals[Any] | str | Pattern[str]
JsonMatcher = DirtyEquals[Any] | Any
MethodMatcher = Matcher | set[str]
UrlMatcher = Matcher | Url
QueryMatcher = dict[str, Matcher | list[str]] | Matcher
BodyContentMatcher = bytes | Matcher
CustomMatcher = Callable[["CapturedRequest"], bool | Awaitable[bool]]
CustomHandler = Callable[["CapturedRequest"], "MockResponse | None | Awaitable[MockResponse | None]"]
