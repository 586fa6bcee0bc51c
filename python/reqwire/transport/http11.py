"""Default HTTP/1.1 transport: asyncio streams, `ssl` and `h11` framing."""

import asyncio
import logging
import ssl
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

import h11

from reqwire.exceptions import (
    ConnectError,
    ConnectRefusedError,
    ConnectTimeoutError,
    DnsError,
    ProtocolError,
    ReadTimeoutError,
    RequestError,
    TlsValidationError,
    TransportError,
    WriteTimeoutError,
    causes_details,
)
from reqwire.http import HeaderMap
from reqwire.transport.resolver import GaiResolver
from reqwire.transport.tls import TlsConfig
from reqwire.transport.types import ProxyTarget, RequestHead, Resolver, ResponseHead

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024


class Http11Connection:
    """HTTP/1.1 connection over an asyncio stream pair. Keeps the connection open between requests when allowed."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        read_timeout: float | None = None,
        write_timeout: float | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._h11 = h11.Connection(our_role=h11.CLIENT)
        self._closed = False

    async def send(self, head: RequestHead, body: AsyncIterator[bytes] | None) -> ResponseHead:
        if self._closed:
            raise TransportError("connection closed")
        if self._h11.our_state is not h11.IDLE or self._h11.their_state is not h11.IDLE:
            raise ProtocolError("connection is not ready to send a request")

        headers = [(name.encode("ascii"), value.encode("utf-8")) for name, value in head.headers.items()]
        try:
            request = h11.Request(method=head.method.encode("ascii"), target=head.target.encode("utf-8"), headers=headers)
            await self._write(self._h11.send(request))
            if body is not None:
                async for chunk in body:
                    await self._write(self._h11.send(h11.Data(data=chunk)))
            await self._write(self._h11.send(h11.EndOfMessage()))
        except h11.LocalProtocolError as e:
            self.close()
            raise ProtocolError("invalid request", details=causes_details(e)) from e

        event = await self._next_event()
        while isinstance(event, h11.InformationalResponse):
            event = await self._next_event()
        if not isinstance(event, h11.Response):
            self.close()
            raise ProtocolError(f"unexpected event {type(event).__name__} while reading response head")

        return ResponseHead(
            status=event.status_code,
            headers=HeaderMap([(name.decode("latin-1"), value.decode("latin-1")) for name, value in event.headers]),
            version=f"HTTP/{event.http_version.decode('ascii')}",
            reason=event.reason.decode("latin-1"),
        )

    async def read_body(self) -> AsyncGenerator[bytes, None]:
        while True:
            event = await self._next_event()
            if isinstance(event, h11.Data):
                if event.data:
                    yield bytes(event.data)
            elif isinstance(event, h11.EndOfMessage):
                if self._h11.our_state is h11.DONE and self._h11.their_state is h11.DONE:
                    self._h11.start_next_cycle()
                return
            else:
                self.close()
                raise ProtocolError(f"unexpected event {type(event).__name__} while reading response body")

    def is_reusable(self) -> bool:
        if self._closed or self._reader.at_eof():
            return False
        return self._h11.our_state is h11.IDLE and self._h11.their_state is h11.IDLE

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()

    def _detach(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        # Hand the raw streams over after a CONNECT tunnel was established.
        self._closed = True
        return self._reader, self._writer

    async def _next_event(self) -> Any:
        while True:
            try:
                event = self._h11.next_event()
            except h11.RemoteProtocolError as e:
                self.close()
                raise ProtocolError(str(e), details=causes_details(e)) from e
            if event is h11.NEED_DATA:
                self._h11.receive_data(await self._read())
                continue
            return event

    async def _read(self) -> bytes:
        try:
            async with asyncio.timeout(self._read_timeout):
                return await self._reader.read(READ_SIZE)
        except TimeoutError as e:
            self.close()
            raise ReadTimeoutError("read timeout") from e
        except (OSError, ssl.SSLError) as e:
            self.close()
            raise TransportError("connection error", details=causes_details(e)) from e

    async def _write(self, data: bytes | None) -> None:
        if not data:
            return
        try:
            self._writer.write(data)
            async with asyncio.timeout(self._write_timeout):
                await self._writer.drain()
        except TimeoutError as e:
            self.close()
            raise WriteTimeoutError("write timeout") from e
        except (OSError, ssl.SSLError) as e:
            self.close()
            raise TransportError("connection error", details=causes_details(e)) from e

    def __repr__(self) -> str:
        peer = self._writer.get_extra_info("peername")
        return f"Http11Connection(peer={peer!r}, closed={self._closed})"


class Http11Transport:
    """Default transport. Resolves, connects, negotiates TLS and speaks HTTP/1.1."""

    def __init__(
        self,
        *,
        resolver: Resolver | None = None,
        tls: TlsConfig | None = None,
        read_timeout: float | None = None,
        write_timeout: float | None = None,
    ) -> None:
        self._resolver = resolver or GaiResolver()
        self._tls = tls or TlsConfig()
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout

    async def connect(self, scheme: str, host: str, port: int, *, tunnel: ProxyTarget | None = None) -> Http11Connection:
        reader, writer = await self._open_tcp(host, port)
        try:
            if scheme == "https":
                await self._start_tls(writer, host)
            if tunnel is not None:
                reader, writer = await self._open_tunnel(reader, writer, tunnel)
                if tunnel.scheme == "https":
                    await self._start_tls(writer, tunnel.host)
        except BaseException:
            writer.close()
            raise
        logger.debug("Connected to %s://%s:%d%s", scheme, host, port, f" (tunnel to {tunnel.authority})" if tunnel else "")
        return self._new_connection(reader, writer)

    def _new_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Http11Connection:
        return Http11Connection(reader, writer, read_timeout=self._read_timeout, write_timeout=self._write_timeout)

    async def _open_tcp(self, host: str, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        addrs = await self._resolver.resolve(host, port)
        if not addrs:
            raise DnsError("dns error", details={"causes": [{"message": f"no addresses found for {host}"}]})
        errors: list[OSError] = []
        for addr in addrs:
            try:
                return await asyncio.open_connection(addr.host, addr.port, limit=READ_SIZE)
            except OSError as e:
                logger.debug("Connecting to %s:%d failed: %s", addr.host, addr.port, e)
                errors.append(e)
        last_error = errors[-1]
        if isinstance(last_error, TimeoutError):
            raise ConnectTimeoutError("connect timeout", details=causes_details(last_error)) from last_error
        raise ConnectRefusedError("tcp connect error", details=causes_details(last_error)) from last_error

    async def _start_tls(self, writer: asyncio.StreamWriter, server_hostname: str) -> None:
        try:
            await writer.start_tls(self._tls.ssl_context, server_hostname=server_hostname)
        except ssl.SSLCertVerificationError as e:
            raise TlsValidationError(
                f"invalid peer certificate: {e.verify_message}", details=causes_details(e)
            ) from e
        except (ssl.SSLError, OSError) as e:
            raise TlsValidationError("tls handshake failed", details=causes_details(e)) from e

    async def _open_tunnel(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, tunnel: ProxyTarget
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        conn = self._new_connection(reader, writer)
        headers = HeaderMap([("host", tunnel.authority), *tunnel.headers])
        try:
            resp = await conn.send(RequestHead("CONNECT", tunnel.authority, headers), None)
        except RequestError as e:
            raise ConnectError("proxy tunnel error", details=causes_details(e)) from e
        if not 200 <= resp.status < 300:
            raise ConnectError(
                f"proxy CONNECT to {tunnel.authority} failed", details={"causes": None, "status": resp.status}
            )
        return conn._detach()
