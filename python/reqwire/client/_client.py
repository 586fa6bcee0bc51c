from types import TracebackType
from typing import TYPE_CHECKING, Self

from reqwire.client._engine import Engine
from reqwire.http import Url
from reqwire.request import BlockingRequestBuilder, RequestBuilder
from reqwire.types import UrlType

if TYPE_CHECKING:
    from reqwire.client._blocking import Runtime, _BlockingHandle


class BaseClient:
    """Common base for async and blocking clients.

    Clients are handles to a shared engine: clones share the connection pool, cookie provider and configuration.
    Closing any handle closes the engine for all of them.
    """

    def __init__(self, engine: Engine) -> None:
        """Do not use directly. Instead, use ClientBuilder or BlockingClientBuilder."""
        self._engine = engine

    def _request_url(self, url: UrlType) -> Url:
        base = self._engine.config.base_url
        if base is not None and isinstance(url, str):
            return base.join(url)
        return Url(url)

    def __repr__(self) -> str:
        state = "closed" if self._engine.closed else "open"
        return f"{type(self).__name__}({state})"


class Client(BaseClient):
    """Async HTTP client. Create with ClientBuilder. Use as an async context manager or call close()."""

    def request(self, method: str, url: UrlType) -> RequestBuilder:
        """Start building a request with the method and url."""
        return RequestBuilder(self._engine, method, self._request_url(url))

    def get(self, url: UrlType) -> RequestBuilder:
        """Same as `request("GET", url)`."""
        return self.request("GET", url)

    def post(self, url: UrlType) -> RequestBuilder:
        """Same as `request("POST", url)`."""
        return self.request("POST", url)

    def put(self, url: UrlType) -> RequestBuilder:
        """Same as `request("PUT", url)`."""
        return self.request("PUT", url)

    def patch(self, url: UrlType) -> RequestBuilder:
        """Same as `request("PATCH", url)`."""
        return self.request("PATCH", url)

    def delete(self, url: UrlType) -> RequestBuilder:
        """Same as `request("DELETE", url)`."""
        return self.request("DELETE", url)

    def head(self, url: UrlType) -> RequestBuilder:
        """Same as `request("HEAD", url)`."""
        return self.request("HEAD", url)

    async def close(self) -> None:
        """Close the client. In-flight requests fail with ClientClosedError."""
        await self._engine.aclose()

    def clone(self) -> Self:
        """New handle to the same client."""
        return type(self)(self._engine)

    def __copy__(self) -> Self:
        return self.clone()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


class BlockingClient(BaseClient):
    """Blocking HTTP client. Create with BlockingClientBuilder. Use as a context manager or call close().

    Safe to share between threads. Requests run on the client's Runtime thread.
    """

    def __init__(self, handle: "_BlockingHandle") -> None:
        """Do not use directly. Instead, use BlockingClientBuilder."""
        super().__init__(handle.engine)
        self._handle = handle

    @property
    def runtime(self) -> "Runtime":
        return self._handle.runtime

    def request(self, method: str, url: UrlType) -> BlockingRequestBuilder:
        """Start building a request with the method and url."""
        return BlockingRequestBuilder(self._engine, method, self._request_url(url), runtime=self._handle.runtime)

    def get(self, url: UrlType) -> BlockingRequestBuilder:
        """Same as `request("GET", url)`."""
        return self.request("GET", url)

    def post(self, url: UrlType) -> BlockingRequestBuilder:
        """Same as `request("POST", url)`."""
        return self.request("POST", url)

    def put(self, url: UrlType) -> BlockingRequestBuilder:
        """Same as `request("PUT", url)`."""
        return self.request("PUT", url)

    def patch(self, url: UrlType) -> BlockingRequestBuilder:
        """Same as `request("PATCH", url)`."""
        return self.request("PATCH", url)

    def delete(self, url: UrlType) -> BlockingRequestBuilder:
        """Same as `request("DELETE", url)`."""
        return self.request("DELETE", url)

    def head(self, url: UrlType) -> BlockingRequestBuilder:
        """Same as `request("HEAD", url)`."""
        return self.request("HEAD", url)

    def close(self) -> None:
        """Close the client according to its drain policy. Closes the runtime too if the client created it."""
        self._handle.close()

    def clone(self) -> Self:
        """New handle to the same client."""
        return type(self)(self._handle)

    def __copy__(self) -> Self:
        return self.clone()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
