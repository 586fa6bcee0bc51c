from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reqwire.pytest_plugin.internal.matcher import InternalMatcher
    from reqwire.pytest_plugin.mock import CapturedRequest, Mock

_MAX_UNMATCHED = 5
_MAX_MATCHED = 3


def assert_fail(
    mock: "Mock",
    *,
    count: int | None = None,
    min_count: int | None = None,
    max_count: int | None = None,
) -> None:
    msg = format_assert_called_error(mock, count=count, min_count=min_count, max_count=max_count)
    raise AssertionError(msg)


def format_assert_called_error(
    mock: "Mock",
    *,
    count: int | None = None,
    min_count: int | None = None,
    max_count: int | None = None,
) -> str:
    actual_count = len(mock._matched_requests)
    error_parts = ["Mock was not called as expected."]

    if count is not None:
        error_parts.append(f"Expected exactly {count} call(s), but got {actual_count}.")
    else:
        expectations = []
        if min_count is not None:
            expectations.append(f"at least {min_count}")
        if max_count is not None:
            expectations.append(f"at most {max_count}")
        error_parts.append(f"Expected {' and '.join(expectations)} call(s), but got {actual_count}.")

    error_parts.append("\nMock configuration:")
    error_parts.append(_format_mock_matchers(mock))

    unmatched = mock._unmatched_requests_repr
    if unmatched:
        error_parts.append(f"\nUnmatched requests ({len(unmatched)}):")
        for i, request_repr in enumerate(unmatched[-_MAX_UNMATCHED:], 1):
            error_parts.append(f"  {i}. {request_repr}")
        if len(unmatched) > _MAX_UNMATCHED:
            error_parts.append(f"  ... and {len(unmatched) - _MAX_UNMATCHED} more")

    matched = mock._matched_requests
    if matched:
        error_parts.append(f"\nMatched requests ({len(matched)}):")
        for i, request in enumerate(matched[-_MAX_MATCHED:], 1):
            error_parts.append(f"  {i}. {request.repr_full()}")
        if len(matched) > _MAX_MATCHED:
            error_parts.append(f"  ... and {len(matched) - _MAX_MATCHED} more")

    return "\n".join(error_parts)


def format_unmatched_request(request: "CapturedRequest", *, unmatched: set[str]) -> str:
    """One line describing a request a mock rejected and which of its matchers failed."""
    failed = f" [failed: {', '.join(sorted(unmatched))}]" if unmatched else ""
    return f"{request.repr_full()}{failed}"


def _format_mock_matchers(mock: "Mock") -> str:
    parts = [
        f"  Method: {_format_matcher(mock._method_matcher)}",
        f"  Path: {_format_matcher(mock._path_matcher)}",
    ]

    if mock._query_matcher is not None:
        if isinstance(mock._query_matcher, dict):
            query_parts = [f"{k}={_format_matcher(v)}" for k, v in mock._query_matcher.items()]
            parts.append(f"  Query: {', '.join(query_parts)}")
        else:
            parts.append(f"  Query: {_format_matcher(mock._query_matcher)}")

    if mock._header_matchers:
        header_parts = [f"{name}: {_format_matcher(value)}" for name, value in mock._header_matchers.items()]
        parts.append(f"  Headers: {', '.join(header_parts)}")

    if mock._body_matcher is not None:
        matcher, kind = mock._body_matcher
        if kind == "json":
            parts.append(f"  Body (JSON): {_format_matcher(matcher)}")
        elif isinstance(matcher.matcher, bytes):
            parts.append(f"  Body (bytes): {matcher.matcher!r}")
        else:
            parts.append(f"  Body (text): {_format_matcher(matcher)}")

    if mock._custom_matcher is not None:
        parts.append(f"  Custom matcher: {getattr(mock._custom_matcher, '__name__', repr(mock._custom_matcher))}")

    if mock._custom_handler is not None:
        parts.append(f"  Custom handler: {getattr(mock._custom_handler, '__name__', repr(mock._custom_handler))}")

    return "\n".join(parts)


def _format_matcher(matcher: "InternalMatcher | None") -> str:
    return "Any" if matcher is None else repr(matcher)
