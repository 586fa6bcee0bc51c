"""Request execution shared by the async and blocking clients."""

import asyncio
import base64
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, TypeVar

from reqwire.client._config import ClientConfig
from reqwire.client._decoder import ContentDecoder, accept_encoding
from reqwire.client._pool import ConnectionPool, PooledConnection, PoolKey, ProxyRoute
from reqwire.exceptions import (
    BodyNotReplayableError,
    BuilderError,
    ClientClosedError,
    ConnectRefusedError,
    RequestError,
    RequestPanicError,
    TotalTimeoutError,
    TransportError,
    causes_details,
)
from reqwire.http import HeaderMap, Url
from reqwire.redirect import Hop, RedirectEngine
from reqwire.response import BaseResponse
from reqwire.response._response import BufferedBody, raise_for_status
from reqwire.transport.types import Connection, ProxyTarget, RequestHead, ResponseHead, Transport

if TYPE_CHECKING:
    from reqwire.request import Request

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseResponse)

DRAIN_LIMIT = 64 * 1024

_EMPTY_BODY_LENGTH_METHODS = frozenset({"POST", "PUT", "PATCH"})


class Engine:
    """Executes logical requests: routing, pooled connections, redirects, cookies, retries and timeouts.

    Shared by every handle of a client (clones included). All requests of an engine run on the same event loop.
    """

    def __init__(self, config: ClientConfig, transport: Transport) -> None:
        self.config = config
        self._transport = transport
        self._redirects = RedirectEngine(
            config.redirect_policy,
            sensitive_headers=config.sensitive_headers,
            referer=config.referer,
            https_only=config.https_only,
        )
        self._pool = ConnectionPool(
            self._open_connection,
            max_connections=config.max_connections,
            idle_timeout=config.pool_idle_timeout,
            max_idle_per_host=config.pool_max_idle_per_host,
            connect_timeout=config.connect_timeout,
            pool_timeout=config.pool_timeout,
        )
        self._tasks: set[asyncio.Task[Any]] = set()
        self._aborted: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def closed(self) -> bool:
        return self._closed

    async def execute(self, request: "Request", *, stream: bool, make_response: Callable[..., R]) -> R:
        """Send request, following redirects, and build the final response with make_response."""
        if self._closed:
            raise ClientClosedError("Client was closed")
        task = asyncio.current_task()
        assert task is not None
        self._tasks.add(task)
        try:
            return await self._execute_with_timeout(request, stream, make_response)
        except asyncio.CancelledError:
            if task in self._aborted:
                task.uncancel()
                raise ClientClosedError("Client was closed") from None
            raise
        finally:
            self._tasks.discard(task)
            self._aborted.discard(task)

    async def aclose(self, *, wait: bool = False, timeout: float | None = None) -> None:
        """Stop accepting requests and close pooled connections.

        In-flight requests are cancelled and fail with ClientClosedError. With `wait` they get up to `timeout` seconds
        to complete first.
        """
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        pending = {task for task in self._tasks if task is not current and not task.done()}
        if wait and pending:
            logger.debug("Waiting for %d in-flight requests before closing", len(pending))
            _, pending = await asyncio.wait(pending, timeout=timeout)
        for task in pending:
            self._aborted.add(task)
            task.cancel()
        self._pool.close()
        logger.debug("Client closed, %d in-flight requests cancelled", len(pending))

    async def _execute_with_timeout(self, request: "Request", stream: bool, make_response: Callable[..., R]) -> R:
        timeout = request.timeout.total_seconds() if request.timeout is not None else self.config.timeout
        deadline = asyncio.get_running_loop().time() + timeout if timeout is not None else None
        timeout_cm = asyncio.timeout_at(deadline)
        try:
            async with timeout_cm:
                return await self._execute(request, deadline, stream, make_response)
        except TimeoutError as e:
            if timeout_cm.expired():
                raise TotalTimeoutError("request timeout") from e
            raise

    async def _execute(
        self, request: "Request", deadline: float | None, stream: bool, make_response: Callable[..., R]
    ) -> R:
        self._check_scheme(request.url)
        if request.body is not None and not request.body.is_replayable:
            raise BodyNotReplayableError("request body stream was already consumed")
        error_for_status = request.error_for_status
        if error_for_status is None:
            error_for_status = self.config.error_for_status

        hop = Hop(request.method, request.url, request.headers, request.body)
        history: list[Url] = []
        while True:
            history.append(hop.url)
            head, pooled = await self._send(hop)
            try:
                self._store_cookies(head, hop.url)
                next_hop = self._redirects.next_hop(head.status, head.headers.get("location"), hop, history)
            except BaseException:
                self._pool.release(pooled, reusable=False)
                raise
            if next_hop is None:
                break
            await self._drain(pooled)
            hop = next_hop

        decoder = ContentDecoder.for_response(head.headers, gzip=self.config.gzip, deflate=self.config.deflate)
        body: _LiveBody | BufferedBody
        if stream:
            body = _LiveBody(self._pool, pooled, deadline, decoder)
            if error_for_status and head.status >= 400:
                await body.aclose()
        else:
            body = BufferedBody(await self._read_body(pooled, decoder))
        if error_for_status:
            raise_for_status(head.status)
        return make_response(head, hop.url, history=history[:-1], extensions=dict(request.extensions), body=body)

    def _check_scheme(self, url: Url) -> None:
        if not url.is_http or (self.config.https_only and url.scheme != "https"):
            raise BuilderError("URL scheme is not allowed")

    async def _send(self, hop: Hop) -> tuple[ResponseHead, PooledConnection]:
        key, target, headers = self._route(hop)
        retries = 0
        while True:
            pooled: PooledConnection | None = None
            try:
                pooled = await self._pool.acquire(key)
                body = hop.body.aiter_chunks() if hop.body is not None else None
                return await self._send_on(pooled, RequestHead(hop.method, target, headers), body), pooled
            except BaseException as e:
                reused = pooled is not None and pooled.is_reused
                if pooled is not None:
                    self._pool.release(pooled, reusable=False)
                if not isinstance(e, RequestError) or not self._should_retry(hop, e, reused, retries):
                    raise
            retries += 1
            assert self.config.retry is not None
            if delay := self.config.retry.backoff_delay(retries):
                await asyncio.sleep(delay)

    async def _send_on(
        self, pooled: PooledConnection, head: RequestHead, body: AsyncIterator[bytes] | None
    ) -> ResponseHead:
        try:
            return await pooled.connection.send(head, body)
        except RequestError:
            raise
        except OSError as e:
            raise TransportError("error sending request", details=causes_details(e)) from e

    def _should_retry(self, hop: Hop, error: RequestError, reused: bool, retries: int) -> bool:
        policy = self.config.retry
        if policy is None or not policy.should_retry(hop.method, error, reused_connection=reused, retries=retries):
            return False
        if hop.body is not None and not hop.body.is_replayable:
            raise BodyNotReplayableError(
                "request body stream can not be replayed for retry", details=causes_details(error)
            ) from error
        logger.debug("Retrying %s %s after %r (retry %d)", hop.method, hop.url.origin_ascii, error, retries + 1)
        return True

    def _route(self, hop: Hop) -> tuple[PoolKey, str, HeaderMap]:
        url = hop.url
        host, port = url.host, url.port_or_known_default
        assert host is not None and port is not None
        headers = self._hop_headers(hop)

        proxy = self._proxy_for(url)
        if proxy is None:
            return PoolKey(url.scheme, host, port), url.path_and_query, headers

        proxy_url, proxy_headers = proxy
        key = PoolKey(url.scheme, host, port, ProxyRoute(str(proxy_url), tuple(proxy_headers.items())))
        if url.scheme == "https":
            return key, url.path_and_query, headers
        headers.extend(proxy_headers)
        return key, str(url.with_fragment(None)), headers

    def _proxy_for(self, url: Url) -> tuple[Url, HeaderMap] | None:
        for proxy in self.config.proxies:
            if (proxy_url := proxy.intercept(url)) is None:
                continue
            headers = proxy.proxy_headers
            if proxy_url.username and "proxy-authorization" not in headers:
                credentials = f"{proxy_url.username}:{proxy_url.password or ''}".encode()
                headers["proxy-authorization"] = f"Basic {base64.b64encode(credentials).decode('ascii')}"
            return proxy_url.without_credentials(), headers
        return None

    def _hop_headers(self, hop: Hop) -> HeaderMap:
        headers = hop.headers.copy()
        if "accept" not in headers:
            headers["accept"] = "*/*"
        if "host" not in headers:
            headers["host"] = hop.url.authority
        if "accept-encoding" not in headers and "range" not in headers:
            if coding := accept_encoding(gzip=self.config.gzip, deflate=self.config.deflate):
                headers["accept-encoding"] = coding

        if (provider := self.config.cookie_provider) is not None:
            headers.popall("cookie", None)
            if cookie := self._call_cookie_provider(provider.cookies, str(hop.url)):
                headers["cookie"] = cookie

        body = hop.body
        if body is None:
            if hop.method in _EMPTY_BODY_LENGTH_METHODS and "content-length" not in headers:
                headers["content-length"] = "0"
        elif (length := body.content_length) is not None:
            headers.popall("transfer-encoding", None)
            headers["content-length"] = str(length)
        elif "content-length" not in headers:
            headers["transfer-encoding"] = "chunked"
        return headers

    def _store_cookies(self, head: ResponseHead, url: Url) -> None:
        provider = self.config.cookie_provider
        if provider is not None and (values := head.headers.getall("set-cookie")):
            self._call_cookie_provider(provider.set_cookies, values, str(url))

    def _call_cookie_provider(self, fun: Callable[..., Any], *args: Any) -> Any:
        try:
            return fun(*args)
        except Exception as e:
            raise RequestPanicError("cookie provider failed", details=causes_details(e, with_type=True)) from e

    async def _open_connection(self, key: PoolKey) -> Connection:
        try:
            if key.proxy is None:
                return await self._transport.connect(key.scheme, key.host, key.port)
            proxy = Url(key.proxy.url)
            proxy_host, proxy_port = proxy.host, proxy.port_or_known_default
            assert proxy_host is not None and proxy_port is not None
            tunnel = ProxyTarget(key.scheme, key.host, key.port, key.proxy.headers) if key.scheme == "https" else None
            return await self._transport.connect(proxy.scheme, proxy_host, proxy_port, tunnel=tunnel)
        except RequestError:
            raise
        except OSError as e:
            raise ConnectRefusedError("tcp connect error", details=causes_details(e)) from e

    async def _drain(self, pooled: PooledConnection) -> None:
        read = 0
        try:
            async with aclosing(_iter_body(pooled.connection)) as chunks:
                async for chunk in chunks:
                    read += len(chunk)
                    if read > DRAIN_LIMIT:
                        logger.debug("Redirect body of connection %d is over %d bytes", pooled.id, DRAIN_LIMIT)
                        self._pool.release(pooled, reusable=False)
                        return
        except RequestError as e:
            logger.debug("Reading redirect body of connection %d failed: %r", pooled.id, e)
            self._pool.release(pooled, reusable=False)
            return
        except BaseException:
            self._pool.release(pooled, reusable=False)
            raise
        self._pool.release(pooled, reusable=True)

    async def _read_body(self, pooled: PooledConnection, decoder: ContentDecoder | None) -> list[bytes]:
        chunks: list[bytes] = []
        try:
            async with aclosing(_iter_body(pooled.connection, decoder)) as body:
                async for chunk in body:
                    chunks.append(chunk)
        except BaseException:
            self._pool.release(pooled, reusable=False)
            raise
        self._pool.release(pooled, reusable=True)
        return chunks


class _LiveBody:
    """Response body read lazily from a checked out connection.

    The connection goes back to the pool as reusable once the body has been read to the end. Failing or closing early
    discards it.
    """

    __slots__ = ("_chunks", "_deadline", "_pool", "_pooled")

    def __init__(
        self, pool: ConnectionPool, pooled: PooledConnection, deadline: float | None, decoder: ContentDecoder | None
    ) -> None:
        self._pool = pool
        self._pooled: PooledConnection | None = pooled
        self._chunks = _iter_body(pooled.connection, decoder)
        self._deadline = deadline

    async def next_chunk(self) -> bytes | None:
        if self._pooled is None:
            return None
        timeout_cm = asyncio.timeout_at(self._deadline)
        try:
            async with timeout_cm:
                chunk = await anext(self._chunks, None)
        except TimeoutError as e:
            await self._finish(reusable=False)
            if timeout_cm.expired():
                raise TotalTimeoutError("request timeout") from e
            raise
        except BaseException:
            await self._finish(reusable=False)
            raise
        if chunk is None:
            await self._finish(reusable=True)
        return chunk

    async def aclose(self) -> None:
        if self._pooled is not None:
            await self._finish(reusable=False)

    async def _finish(self, *, reusable: bool) -> None:
        pooled, self._pooled = self._pooled, None
        assert pooled is not None
        self._pool.release(pooled, reusable=reusable)
        await self._chunks.aclose()


async def _iter_body(connection: Connection, decoder: ContentDecoder | None = None) -> AsyncGenerator[bytes, None]:
    try:
        async with aclosing(connection.read_body()) as body:
            async for chunk in body:
                if decoder is not None and not (chunk := decoder.decode(chunk)):
                    continue
                yield chunk
        if decoder is not None and (tail := decoder.flush()):
            yield tail
    except RequestError:
        raise
    except OSError as e:
        raise TransportError("error reading a body from connection", details=causes_details(e)) from e
