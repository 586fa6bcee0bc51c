import base64
import re
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Self
from urllib.parse import urlencode

import orjson

from reqwire.exceptions import BuilderError, causes_details
from reqwire.http import HeaderMap, RequestBody, Url
from reqwire.request._request import (
    BlockingConsumedRequest,
    BlockingStreamRequest,
    ConsumedRequest,
    StreamRequest,
)
from reqwire.types import FormParams, HeadersType, QueryParams, Stream

if TYPE_CHECKING:
    from reqwire.client import Runtime
    from reqwire.client._engine import Engine

_METHOD_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")


class BaseRequestBuilder:
    """Common base for async and blocking request builders. A builder builds one request."""

    def __init__(self, engine: "Engine", method: str, url: Url) -> None:
        """Do not use directly. Instead, use the client's request(), get(), post() etc."""
        if not isinstance(method, str) or not _METHOD_RE.fullmatch(method):
            raise ValueError(f"invalid HTTP method: {method!r}")
        self._engine = engine
        self._method = method
        self._url = url.without_credentials()
        self._headers = HeaderMap()
        self._body: RequestBody | None = None
        self._form = False
        self._timeout: timedelta | None = None
        self._error_for_status: bool | None = None
        self._extensions: dict[str, Any] = {}
        self._error: Exception | None = None
        self._built = False
        if url.username:
            self.basic_auth(url.username, url.password)

    def header(self, name: str, value: str) -> Self:
        """Add a header to the request."""
        self._check_not_built()
        self._headers.append(name, value)
        return self

    def headers(self, headers: HeadersType) -> Self:
        """Add headers to the request."""
        self._check_not_built()
        self._headers.extend(headers)
        return self

    def basic_auth(self, username: str, password: str | None) -> Self:
        """Set the Authorization header using Basic auth."""
        self._check_not_built()
        token = base64.b64encode(f"{username}:{password or ''}".encode()).decode("ascii")
        self._headers.insert("authorization", f"Basic {token}")
        return self

    def bearer_auth(self, token: str) -> Self:
        """Set the Authorization header using Bearer auth."""
        self._check_not_built()
        self._headers.insert("authorization", f"Bearer {token}")
        return self

    def body(self, body: RequestBody | None) -> Self:
        """Set the request body."""
        self._check_not_built()
        if body is not None and not isinstance(body, RequestBody):
            raise TypeError(f"body must be a RequestBody, got {type(body).__name__}")
        self._set_body(body)
        return self

    def body_bytes(self, body: bytes | bytearray | memoryview) -> Self:
        """Set the request body from bytes."""
        self._check_not_built()
        self._set_body(RequestBody.from_bytes(body))
        return self

    def body_text(self, body: str) -> Self:
        """Set the request body from a string, encoded as UTF-8."""
        self._check_not_built()
        self._set_body(RequestBody.from_text(body))
        return self

    def body_json(self, data: Any) -> Self:
        """Set the request body to data serialized as JSON. Sets the Content-Type header if not set already."""
        self._check_not_built()
        self._set_body(RequestBody.from_bytes(orjson.dumps(data)))
        if "content-type" not in self._headers:
            self._headers["content-type"] = "application/json"
        return self

    def body_stream(self, stream: Stream) -> Self:
        """Set the request body from a sync or async iterable of bytes. The body is sent with chunked encoding.

        The stream can be read only once, so redirects and retries that need to send it again fail.
        """
        self._check_not_built()
        self._set_body(RequestBody.from_stream(stream))
        return self

    def form(self, form: FormParams) -> Self:
        """Set the request body to form params, urlencoded. Sets the Content-Type header if not set already."""
        self._check_not_built()
        if self._body is not None:
            raise BuilderError("Can not set body when multipart or form is used")
        pairs = self._encode_params(form, "form")
        self._body = RequestBody.from_text(urlencode(pairs))
        self._form = True
        if "content-type" not in self._headers:
            self._headers["content-type"] = "application/x-www-form-urlencoded"
        return self

    def query(self, query: QueryParams) -> Self:
        """Add query params to the URL."""
        self._check_not_built()
        pairs = self._encode_params(query, "query")
        if pairs:
            self._url = self._url.extend_query(pairs)
        return self

    def timeout(self, timeout: timedelta) -> Self:
        """Total timeout for the request, overriding the client's timeout."""
        self._check_not_built()
        if not isinstance(timeout, timedelta):
            raise TypeError(f"timeout must be a timedelta, got {type(timeout).__name__}")
        self._timeout = timeout
        return self

    def error_for_status(self, enable: bool) -> Self:
        """Fail with StatusError for 4xx and 5xx responses. Overrides the client's setting."""
        self._check_not_built()
        self._error_for_status = enable
        return self

    def extensions(self, extensions: dict[str, Any]) -> Self:
        """Arbitrary values carried through to the response."""
        self._check_not_built()
        if not isinstance(extensions, dict):
            raise TypeError(f"extensions must be a dict, got {type(extensions).__name__}")
        self._extensions = extensions
        return self

    def _set_body(self, body: RequestBody | None) -> None:
        if self._form:
            raise BuilderError("Can not set body when multipart or form is used")
        self._body = body

    def _encode_params(self, params: QueryParams | FormParams, kind: str) -> list[tuple[str, str]]:
        if isinstance(params, (str, bytes)) or not isinstance(params, Iterable):
            raise TypeError(f"{kind} must be a mapping or a sequence of (name, value) tuples")
        items = params.items() if isinstance(params, Mapping) else params
        pairs: list[tuple[str, str]] = []
        for item in items:
            if not isinstance(item, tuple) or len(item) != 2:
                raise TypeError(f"{kind} items must be (name, value) tuples, got {type(item).__name__!r}")
            name, value = item
            if not isinstance(name, str):
                raise TypeError(f"{kind} names must be str, got {type(name).__name__!r}")
            try:
                pairs.append((name, _param_value(value)))
            except ValueError as e:
                if self._error is None:
                    self._error = e
        return pairs

    def _take_parts(self) -> dict[str, Any]:
        self._check_not_built()
        self._built = True
        if self._error is not None:
            raise BuilderError("Failed to build request", details=causes_details(self._error)) from self._error
        headers = self._headers
        present = set(headers.keys())
        for name, value in self._engine.config.default_headers.items():
            if name not in present:
                headers.append(name, value)
        return {
            "engine": self._engine,
            "method": self._method,
            "url": self._url,
            "headers": headers,
            "body": self._body,
            "timeout": self._timeout,
            "error_for_status": self._error_for_status,
            "extensions": self._extensions,
        }

    def _check_not_built(self) -> None:
        if self._built:
            raise RuntimeError("Request was already built")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._method} {str(self._url)!r})"


class RequestBuilder(BaseRequestBuilder):
    """Builder for requests of an async client."""

    def build(self) -> ConsumedRequest:
        """Build a request that reads the whole response body when sent."""
        return ConsumedRequest(**self._take_parts())

    def build_streamed(self) -> StreamRequest:
        """Build a request that streams the response body. Use the result as an async context manager."""
        return StreamRequest(**self._take_parts())


class BlockingRequestBuilder(BaseRequestBuilder):
    """Builder for requests of a blocking client."""

    def __init__(self, engine: "Engine", method: str, url: Url, *, runtime: "Runtime") -> None:
        super().__init__(engine, method, url)
        self._runtime = runtime

    def build(self) -> BlockingConsumedRequest:
        """Build a request that reads the whole response body when sent."""
        return BlockingConsumedRequest(**self._take_parts(), runtime=self._runtime)

    def build_streamed(self) -> BlockingStreamRequest:
        """Build a request that streams the response body. Use the result as a context manager."""
        return BlockingStreamRequest(**self._take_parts(), runtime=self._runtime)


def _param_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ValueError("unsupported value")
