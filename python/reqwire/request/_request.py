from datetime import timedelta
from functools import partial
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self

from reqwire.http import HeaderMap, RequestBody, Url
from reqwire.response import BlockingResponse, Response

if TYPE_CHECKING:
    from reqwire.client import Runtime
    from reqwire.client._engine import Engine


class Request:
    """A built request. Fields can still be modified before it is sent. A request can be sent only once."""

    def __init__(
        self,
        engine: "Engine",
        method: str,
        url: Url,
        headers: HeaderMap,
        body: RequestBody | None,
        *,
        timeout: timedelta | None = None,
        error_for_status: bool | None = None,
        extensions: dict[str, Any] | None = None,
    ) -> None:
        """Do not use directly. Instead, build requests with a request builder."""
        self._engine = engine
        self._method = method
        self._url = url
        self._headers = headers
        self._body = body
        self._timeout = timeout
        self._error_for_status = error_for_status
        self._extensions = extensions if extensions is not None else {}
        self._sent = False

    @property
    def method(self) -> str:
        return self._method

    @method.setter
    def method(self, value: str) -> None:
        self._method = value

    @property
    def url(self) -> Url:
        return self._url

    @url.setter
    def url(self, value: Url | str) -> None:
        self._url = Url(value)

    @property
    def headers(self) -> HeaderMap:
        return self._headers

    @headers.setter
    def headers(self, value: HeaderMap) -> None:
        self._headers = value if isinstance(value, HeaderMap) else HeaderMap(value)

    @property
    def body(self) -> RequestBody | None:
        return self._body

    @body.setter
    def body(self, value: RequestBody | None) -> None:
        if value is not None and not isinstance(value, RequestBody):
            raise TypeError(f"body must be a RequestBody, got {type(value).__name__}")
        self._body = value

    @property
    def timeout(self) -> timedelta | None:
        """Total timeout of the request including redirects and reading the body."""
        return self._timeout

    @timeout.setter
    def timeout(self, value: timedelta | None) -> None:
        if value is not None and not isinstance(value, timedelta):
            raise TypeError("timeout must be a timedelta")
        self._timeout = value

    @property
    def extensions(self) -> dict[str, Any]:
        """Arbitrary values carried to the response."""
        return self._extensions

    @extensions.setter
    def extensions(self, value: dict[str, Any]) -> None:
        if not isinstance(value, dict):
            raise TypeError("extensions must be a dict")
        self._extensions = value

    @property
    def error_for_status(self) -> bool | None:
        """Request level override of the client's error_for_status setting."""
        return self._error_for_status

    def copy(self) -> Self:
        """Copy of the request that can be sent separately. The body is shared, so a single-pass stream body can only
        be sent by one of them.
        """
        return type(self)(
            self._engine,
            self._method,
            self._url,
            self._headers.copy(),
            self._body,
            timeout=self._timeout,
            error_for_status=self._error_for_status,
            extensions=dict(self._extensions),
            **self._copy_kwargs(),
        )

    def __copy__(self) -> Self:
        return self.copy()

    def _copy_kwargs(self) -> dict[str, Any]:
        return {}

    def _mark_sent(self) -> None:
        if self._sent:
            raise RuntimeError("Request was already sent")
        self._sent = True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._method} {str(self._url)!r})"


class ConsumedRequest(Request):
    """Request whose response body is read completely before `send` returns."""

    async def send(self) -> Response:
        """Execute the request. The connection is returned to the pool before the response is returned."""
        self._mark_sent()
        return await self._engine.execute(self, stream=False, make_response=Response)


class StreamRequest(Request):
    """Request whose response body is streamed. Use as an async context manager.

    The connection is kept until the body has been read to the end or the context exits.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._response: Response | None = None

    async def __aenter__(self) -> Response:
        self._mark_sent()
        self._response = await self._engine.execute(self, stream=True, make_response=Response)
        return self._response

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._response is not None:
            await self._response._aclose()


class BlockingConsumedRequest(Request):
    """Blocking request whose response body is read completely before `send` returns."""

    def __init__(self, *args: Any, runtime: "Runtime", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._runtime = runtime

    def _copy_kwargs(self) -> dict[str, Any]:
        return {"runtime": self._runtime}

    def send(self) -> BlockingResponse:
        """Execute the request, blocking the calling thread until the whole response has been read."""
        self._mark_sent()
        make_response = partial(BlockingResponse, runtime=self._runtime)
        return self._runtime.run(self._engine.execute(self, stream=False, make_response=make_response))


class BlockingStreamRequest(Request):
    """Blocking request whose response body is streamed. Use as a context manager."""

    def __init__(self, *args: Any, runtime: "Runtime", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._runtime = runtime
        self._response: BlockingResponse | None = None

    def _copy_kwargs(self) -> dict[str, Any]:
        return {"runtime": self._runtime}

    def __enter__(self) -> BlockingResponse:
        self._mark_sent()
        make_response = partial(BlockingResponse, runtime=self._runtime)
        self._response = self._runtime.run(self._engine.execute(self, stream=True, make_response=make_response))
        return self._response

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._response is not None:
            self._runtime.run(self._response._aclose())
