import asyncio
import queue
import ssl
from asyncio import AbstractEventLoop
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from threading import Thread
from typing import Any, Self

import h11
from reqwire.http import Url

from .server import find_free_port, wait_port_open


class TunnelProxyServer:
    """Proxy that only opens CONNECT tunnels. Records the CONNECT requests it saw.

    Granian does not accept CONNECT, so this one speaks HTTP/1.1 over h11 directly.
    """

    def __init__(self) -> None:
        self.port = find_free_port()
        self.tunnels: list[dict[str, Any]] = []
        self._stop: asyncio.Event | None = None

    @property
    def url(self) -> Url:
        return Url(f"http://127.0.0.1:{self.port}")

    @asynccontextmanager
    async def serve_context(self) -> AsyncGenerator[Self]:
        server_loop_chan: queue.Queue[AbstractEventLoop] = queue.Queue(maxsize=1)

        def server_runner() -> None:
            with asyncio.Runner() as runner:
                server_loop_chan.put_nowait(runner.get_loop())
                runner.run(self._serve())

        server_thread = Thread(target=server_runner, daemon=True)
        server_thread.start()

        try:
            await wait_port_open("127.0.0.1", self.port)
            yield self
        finally:
            server_loop_chan.get(timeout=5).call_soon_threadsafe(self._stop_serving)
            server_thread.join(timeout=5)
            assert not server_thread.is_alive()

    def _stop_serving(self) -> None:
        assert self._stop is not None
        self._stop.set()

    async def _serve(self) -> None:
        self._stop = asyncio.Event()
        server = await asyncio.start_server(self._on_connection, "127.0.0.1", self.port)
        try:
            await self._stop.wait()
        finally:
            server.close()
            tasks = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = h11.Connection(h11.SERVER)
        try:
            request = await next_event(conn, reader)
            if not isinstance(request, h11.Request):
                return
            if request.method != b"CONNECT":
                await respond(conn, writer, 405)
                return
            await self._tunnel(conn, request, reader, writer)
        except (h11.ProtocolError, ConnectionError):
            return
        finally:
            await close_quietly(writer)

    async def _tunnel(
        self, conn: h11.Connection, request: h11.Request, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        authority = request.target.decode()
        self.tunnels.append({
            "authority": authority,
            "headers": [[name.decode(), value.decode()] for name, value in request.headers],
        })
        host, _, port = authority.rpartition(":")
        try:
            upstream_reader, upstream_writer = await asyncio.open_connection(host.strip("[]"), int(port))
        except OSError:
            await respond(conn, writer, 502)
            return

        writer.write(conn.send(h11.Response(status_code=200, headers=[])) or b"")
        await writer.drain()
        trailing, _ = conn.trailing_data
        if trailing:
            upstream_writer.write(trailing)

        await asyncio.gather(pipe(reader, upstream_writer), pipe(upstream_reader, writer), return_exceptions=True)


async def respond(conn: h11.Connection, writer: asyncio.StreamWriter, status: int) -> None:
    writer.write(conn.send(h11.Response(status_code=status, headers=[(b"content-length", b"0")])) or b"")
    writer.write(conn.send(h11.EndOfMessage()) or b"")
    await writer.drain()


async def next_event(conn: h11.Connection, reader: asyncio.StreamReader) -> Any:
    while True:
        event = conn.next_event()
        if event is not h11.NEED_DATA:
            return event
        conn.receive_data(await reader.read(65536))


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while data := await reader.read(65536):
            writer.write(data)
            await writer.drain()
    finally:
        await close_quietly(writer)


async def close_quietly(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with suppress(ConnectionError, ssl.SSLError):
        await writer.wait_closed()
