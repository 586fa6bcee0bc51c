"""Module providing HTTP request mocking capabilities for reqwire clients in tests.

Mocks sit at the transport boundary: the client's pool, redirects, retries, cookies and timeouts all run as usual, only
the network round trip is replaced. Requests no mock matches go to the network (or fail in strict mode).
"""

import inspect
import itertools
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Iterable
from dataclasses import dataclass
from functools import cached_property
from re import Pattern
from typing import Any, Literal, Self, assert_never

import orjson
import pytest

from reqwire.client import BaseClientBuilder, ClientConfig
from reqwire.exceptions import ProtocolError, TransportError
from reqwire.http import HeaderMap, Url
from reqwire.pytest_plugin.internal.matcher import InternalMatcher
from reqwire.pytest_plugin.types import (
    BodyContentMatcher,
    CustomHandler,
    CustomMatcher,
    JsonMatcher,
    Matcher,
    MethodMatcher,
    QueryMatcher,
    UrlMatcher,
)
from reqwire.transport.types import Connection, ProxyTarget, RequestHead, ResponseHead, Transport

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class CapturedRequest:
    """A request as it reached the transport: one hop, with the final headers and the fully read body."""

    method: str
    url: Url
    headers: HeaderMap
    body: bytes | None
    connection_id: int

    def text(self) -> str:
        return (self.body or b"").decode()

    def json(self) -> Any:
        return orjson.loads(self.body or b"")

    def repr_full(self) -> str:
        headers = ", ".join(f"{name}: {value}" for name, value in self.headers.items())
        body = f", body={self.body!r}" if self.body else ""
        return f"{self.method} {self.url} (headers: {headers}{body})"

    def __repr__(self) -> str:
        return f"CapturedRequest({self.method} {str(self.url)!r})"


class MockResponse:
    """Response served by a mock. Build it fluently, e.g. `MockResponse(201).body_json({"id": 1})`."""

    def __init__(self, status: int = 200) -> None:
        self._status = status
        self._headers = HeaderMap()
        self._version = "HTTP/1.1"
        self._chunks: list[bytes] = []
        self._close_connection = False
        self._fail_after: int | None = None

    def status(self, status: int) -> Self:
        if not 100 <= status <= 999:
            raise ValueError("invalid status code")
        self._status = status
        return self

    def header(self, name: str, value: str) -> Self:
        self._headers.append(name, value)
        return self

    def version(self, version: str) -> Self:
        self._version = version
        return self

    def body_bytes(self, body: bytes | bytearray | memoryview) -> Self:
        self._chunks = [bytes(body)] if body else []
        return self

    def body_text(self, body: str) -> Self:
        if "content-type" not in self._headers:
            self._headers["content-type"] = "text/plain; charset=utf-8"
        return self.body_bytes(body.encode())

    def body_json(self, data: Any) -> Self:
        if "content-type" not in self._headers:
            self._headers["content-type"] = "application/json"
        return self.body_bytes(orjson.dumps(data))

    def body_chunks(self, chunks: Iterable[bytes]) -> Self:
        """Serve the body in these chunks, each one read separately by the client."""
        self._chunks = [bytes(chunk) for chunk in chunks if chunk]
        return self

    def close_connection(self) -> Self:
        """Send `Connection: close` and drop the connection after the response."""
        self._close_connection = True
        self._headers["connection"] = "close"
        return self

    def fail_body_after(self, chunks: int) -> Self:
        """Fail reading the body with a ProtocolError after the given number of chunks."""
        self._fail_after = chunks
        return self

    @property
    def closes_connection(self) -> bool:
        return self._close_connection or self._fail_after is not None

    def head(self) -> ResponseHead:
        headers = self._headers.copy()
        if "content-length" not in headers and "transfer-encoding" not in headers:
            headers["content-length"] = str(sum(len(chunk) for chunk in self._chunks))
        return ResponseHead(self._status, headers, self._version)

    async def iter_body(self) -> AsyncGenerator[bytes, None]:
        for i, chunk in enumerate(self._chunks):
            if self._fail_after is not None and i >= self._fail_after:
                break
            yield chunk
        if self._fail_after is not None:
            raise ProtocolError("connection closed before message completed")

    def __repr__(self) -> str:
        return f"MockResponse(status={self._status})"


class Mock:
    """Class representing a single mock rule."""

    def __init__(self, method: MethodMatcher | None = None, path: UrlMatcher | None = None) -> None:
        """Do not use directly. Instead, use ClientMocker.mock()."""
        self._method_matcher = InternalMatcher(method) if method is not None else None
        self._path_matcher = InternalMatcher(path) if path is not None else None
        self._query_matcher: dict[str, InternalMatcher] | InternalMatcher | None = None
        self._header_matchers: dict[str, InternalMatcher] = {}
        self._body_matcher: tuple[InternalMatcher, Literal["content", "json"]] | None = None
        self._custom_matcher: CustomMatcher | None = None
        self._custom_handler: CustomHandler | None = None

        self._matched_requests: list[CapturedRequest] = []
        self._unmatched_requests_repr: list[str] = []

        self._using_response_builder = False

    def assert_called(
        self,
        *,
        count: int | None = None,
        min_count: int | None = None,
        max_count: int | None = None,
    ) -> None:
        """Assert that this mock was called the expected number of times. By default, exactly once."""
        if count is None and min_count is None and max_count is None:
            count = 1

        if self._assertion_passes(count, min_count, max_count):
            return

        from reqwire.pytest_plugin.internal.assert_message import assert_fail

        assert_fail(self, count=count, min_count=min_count, max_count=max_count)

    def _assertion_passes(self, count: int | None, min_count: int | None, max_count: int | None) -> bool:
        actual_count = len(self._matched_requests)
        if count is not None:
            return actual_count == count
        return (min_count is None or actual_count >= min_count) and (max_count is None or actual_count <= max_count)

    def get_requests(self) -> list[CapturedRequest]:
        """Get all captured requests by this mock."""
        return [*self._matched_requests]

    def get_call_count(self) -> int:
        """Get the total number of calls to this mock."""
        return len(self._matched_requests)

    def reset_requests(self) -> None:
        """Reset all captured requests for this mock."""
        self._matched_requests.clear()
        self._unmatched_requests_repr.clear()

    def match_query(self, query: QueryMatcher) -> Self:
        """Set a matcher to match the entire query string or specific query parameters."""
        if isinstance(query, dict):
            self._query_matcher = {k: InternalMatcher(v) for k, v in query.items()}
        else:
            self._query_matcher = InternalMatcher(query)
        return self

    def match_query_param(self, name: str, value: Matcher) -> Self:
        """Set a matcher to match a specific query parameter."""
        if not isinstance(self._query_matcher, dict):
            self._query_matcher = {}
        self._query_matcher[name] = InternalMatcher(value)
        return self

    def match_header(self, name: str, value: Matcher) -> Self:
        """Set a matcher to match a specific request header."""
        self._header_matchers[name] = InternalMatcher(value)
        return self

    def match_body(self, matcher: BodyContentMatcher) -> Self:
        """Set a matcher to match request bodies as raw content (text or bytes)."""
        self._body_matcher = (InternalMatcher(matcher), "content")
        return self

    def match_body_json(self, matcher: JsonMatcher) -> Self:
        """Set a matcher to match JSON request bodies."""
        self._body_matcher = (InternalMatcher(matcher), "json")
        return self

    def match_request(self, matcher: CustomMatcher) -> Self:
        """Set a custom matcher, a sync or async function returning whether the request matches."""
        self._custom_matcher = matcher
        return self

    def match_request_with_response(self, handler: CustomHandler) -> Self:
        """Set a custom handler returning the MockResponse for a request, or None when it does not match."""
        assert not self._using_response_builder, "Cannot use response builder and custom handler together"
        self._custom_handler = handler
        return self

    def with_status(self, status: int) -> Self:
        """Set the mocked response status code."""
        self._response.status(status)
        return self

    def with_header(self, name: str, value: str) -> Self:
        """Add a header to the mocked response."""
        self._response.header(name, value)
        return self

    def with_body_bytes(self, body: bytes | bytearray | memoryview) -> Self:
        """Set the mocked response body to the given bytes."""
        self._response.body_bytes(body)
        return self

    def with_body_text(self, body: str) -> Self:
        """Set the mocked response body to the given text."""
        self._response.body_text(body)
        return self

    def with_body_json(self, json_body: Any) -> Self:
        """Set the mocked response body to the given JSON-serializable object."""
        self._response.body_json(json_body)
        return self

    def with_body_chunks(self, chunks: Iterable[bytes]) -> Self:
        """Serve the mocked response body in the given chunks."""
        self._response.body_chunks(chunks)
        return self

    def with_version(self, version: str) -> Self:
        """Set the mocked response HTTP version."""
        self._response.version(version)
        return self

    def with_connection_close(self) -> Self:
        """Close the connection after the mocked response so the client can not reuse it."""
        self._response.close_connection()
        return self

    def with_body_failure(self, after_chunks: int = 0) -> Self:
        """Fail reading the mocked response body after the given number of chunks."""
        self._response.fail_body_after(after_chunks)
        return self

    @cached_property
    def _response(self) -> MockResponse:
        assert self._custom_handler is None, "Cannot use response builder and custom handler together"
        self._using_response_builder = True
        return MockResponse()

    async def _handle(self, request: CapturedRequest) -> MockResponse | None:
        matches = {
            "method": self._matches_method(request),
            "path": self._matches_path(request),
            "query": self._match_query(request),
            "headers": self._match_headers(request),
            "body": self._match_body(request),
        }
        if all(matches.values()):
            matches["custom"] = await self._matches_custom(request)

        response: MockResponse | None = None
        if all(matches.values()):
            if self._custom_handler is not None:
                response = await _maybe_await(self._custom_handler(request))
                matches["handler"] = response is not None
            else:
                response = self._response

        if response is not None:
            self._matched_requests.append(request)
            return response

        from reqwire.pytest_plugin.internal.assert_message import format_unmatched_request

        self._unmatched_requests_repr.append(
            format_unmatched_request(request, unmatched={k for k, matched in matches.items() if not matched})
        )
        return None

    def _matches_method(self, request: CapturedRequest) -> bool:
        return self._method_matcher is None or self._method_matcher.matches(request.method)

    def _matches_path(self, request: CapturedRequest) -> bool:
        # Matches either the URL without its query or just the path
        if self._path_matcher is None:
            return True
        url = str(request.url.with_query(None).with_fragment(None))
        return self._path_matcher.matches(url) or self._path_matcher.matches(request.url.path)

    def _match_headers(self, request: CapturedRequest) -> bool:
        for header_name, expected_value in self._header_matchers.items():
            actual_value = request.headers.get(header_name)
            if actual_value is None or not expected_value.matches(actual_value):
                return False
        return True

    def _match_body(self, request: CapturedRequest) -> bool:
        if self._body_matcher is None:
            return True
        if request.body is None:
            return False

        matcher, kind = self._body_matcher
        if kind == "json":
            try:
                return matcher.matches(orjson.loads(request.body))
            except orjson.JSONDecodeError:
                return False
        elif kind == "content":
            if isinstance(matcher.matcher, bytes):
                return matcher.matches(request.body)
            return matcher.matches(request.body.decode(errors="replace"))
        else:
            assert_never(kind)

    def _match_query(self, request: CapturedRequest) -> bool:
        if self._query_matcher is None:
            return True

        query_str = request.url.query_string or ""
        query_dict = request.url.query_dict_multi_value

        if isinstance(self._query_matcher, dict):
            for key, expected_value in self._query_matcher.items():
                actual_value = query_dict.get(key)
                if actual_value is None or not expected_value.matches(actual_value):
                    return False
            return True
        if isinstance(self._query_matcher.matcher, str | Pattern):
            return self._query_matcher.matches(query_str)
        return self._query_matcher.matches(query_dict)

    async def _matches_custom(self, request: CapturedRequest) -> bool:
        if self._custom_matcher is None:
            return True
        return bool(await _maybe_await(self._custom_matcher(request)))


class ClientMocker:
    """Main class for mocking HTTP requests."""

    def __init__(self) -> None:
        """Initialize the ClientMocker."""
        self._mocks: list[Mock] = []
        self._strict = False

    def mock(self, method: MethodMatcher | None = None, path: UrlMatcher | None = None) -> Mock:
        """Add a mock rule for requests matching the given criteria."""
        mock = Mock(method, path)
        self._mocks.append(mock)
        return mock

    def get(self, path: UrlMatcher | None = None) -> Mock:
        """Mock GET requests to the given URL."""
        return self.mock("GET", path)

    def post(self, path: UrlMatcher | None = None) -> Mock:
        """Mock POST requests to the given URL."""
        return self.mock("POST", path)

    def put(self, path: UrlMatcher | None = None) -> Mock:
        """Mock PUT requests to the given URL."""
        return self.mock("PUT", path)

    def patch(self, path: UrlMatcher | None = None) -> Mock:
        """Mock PATCH requests to the given URL."""
        return self.mock("PATCH", path)

    def delete(self, path: UrlMatcher | None = None) -> Mock:
        """Mock DELETE requests to the given URL."""
        return self.mock("DELETE", path)

    def head(self, path: UrlMatcher | None = None) -> Mock:
        """Mock HEAD requests to the given URL."""
        return self.mock("HEAD", path)

    def options(self, path: UrlMatcher | None = None) -> Mock:
        """Mock OPTIONS requests to the given URL."""
        return self.mock("OPTIONS", path)

    def strict(self, enabled: bool = True) -> Self:
        """Enable strict mode - unmatched requests will raise an error."""
        self._strict = enabled
        return self

    def get_requests(self) -> list[CapturedRequest]:
        """Get all captured requests in all mocks."""
        return [request for mock in self._mocks for request in mock.get_requests()]

    def get_call_count(self) -> int:
        """Get the total number of calls in all mocks."""
        return sum(mock.get_call_count() for mock in self._mocks)

    def clear(self) -> None:
        """Remove all mocks."""
        self._mocks.clear()

    def reset_requests(self) -> None:
        """Reset all captured requests in all mocks."""
        for mock in self._mocks:
            mock.reset_requests()

    def wrap_transport(self, transport: Transport) -> "MockTransport":
        """Wrap a transport so that requests matching the mocks never reach it."""
        return MockTransport(self, transport)

    async def _respond(self, request: CapturedRequest) -> MockResponse | None:
        for mock in self._mocks:
            if (response := await mock._handle(request)) is not None:
                return response

        # No rule matched
        if self._strict:
            msg = f"No mock rule matched request: {request.method} {request.url}"
            raise AssertionError(msg)
        return None


class MockTransport:
    """Transport answering matched requests from mocks. Others go to the wrapped transport."""

    def __init__(self, mocker: ClientMocker, transport: Transport) -> None:
        self._mocker = mocker
        self._transport = transport

    async def connect(self, scheme: str, host: str, port: int, *, tunnel: ProxyTarget | None = None) -> "MockConnection":
        return MockConnection(self._mocker, self._transport, scheme, host, port, tunnel)


class MockConnection:
    """A connection opening the real one lazily, only when a request is not mocked."""

    def __init__(
        self,
        mocker: ClientMocker,
        transport: Transport,
        scheme: str,
        host: str,
        port: int,
        tunnel: ProxyTarget | None,
    ) -> None:
        self.id = next(_connection_ids)
        self._mocker = mocker
        self._transport = transport
        self._target = (scheme, host, port, tunnel)
        self._real: Connection | None = None
        self._response: MockResponse | None = None
        self._skip_body = False
        self._closed = False

    async def send(self, head: RequestHead, body: AsyncIterator[bytes] | None) -> ResponseHead:
        if self._closed:
            raise TransportError("connection closed")

        data = b"".join([bytes(chunk) async for chunk in body]) if body is not None else None
        request = CapturedRequest(head.method, self._request_url(head), head.headers.copy(), data, self.id)

        self._response = await self._mocker._respond(request)
        if self._response is not None:
            self._skip_body = head.method == "HEAD"
            logger.debug("Mocked %s %s on connection %d", request.method, request.url, self.id)
            return self._response.head()

        real = await self._real_connection()
        return await real.send(head, _replay(data) if data is not None else None)

    async def read_body(self) -> AsyncGenerator[bytes, None]:
        if self._response is None:
            assert self._real is not None
            async for chunk in self._real.read_body():
                yield chunk
            return

        response = self._response
        try:
            if not self._skip_body:
                async for chunk in response.iter_body():
                    yield chunk
        finally:
            if response.closes_connection:
                self.close()

    def is_reusable(self) -> bool:
        if self._closed:
            return False
        if self._response is None and self._real is not None:
            return self._real.is_reusable()
        return self._response is None or not self._response.closes_connection

    def close(self) -> None:
        self._closed = True
        if self._real is not None:
            self._real.close()

    async def _real_connection(self) -> Connection:
        if self._real is None:
            scheme, host, port, tunnel = self._target
            self._real = await self._transport.connect(scheme, host, port, tunnel=tunnel)
        return self._real

    def _request_url(self, head: RequestHead) -> Url:
        if "://" in head.target:
            return Url(head.target)
        scheme, host, port, tunnel = self._target
        if tunnel is not None:
            scheme, host, port = tunnel.scheme, tunnel.host, tunnel.port
        authority = head.headers.get("host") or f"{host}:{port}"
        return Url(f"{scheme}://{authority}{head.target}")

    def __repr__(self) -> str:
        scheme, host, port, _ = self._target
        return f"MockConnection(id={self.id}, target='{scheme}://{host}:{port}', closed={self._closed})"


async def _replay(data: bytes) -> AsyncGenerator[bytes, None]:
    yield data


async def _maybe_await(value: Any) -> Any:
    return await value if inspect.isawaitable(value) else value


@pytest.fixture
def client_mocker(monkeypatch: pytest.MonkeyPatch) -> ClientMocker:
    """Fixture that provides a ClientMocker for mocking HTTP requests in tests.

    Clients built with their default transport while the fixture is active are mocked.
    """
    mocker = ClientMocker()
    orig_default_transport = BaseClientBuilder._default_transport

    def default_transport(self: BaseClientBuilder, config: ClientConfig) -> Transport:
        return mocker.wrap_transport(orig_default_transport(self, config))

    monkeypatch.setattr(BaseClientBuilder, "_default_transport", default_transport)
    return mocker
