import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from reqwire.exceptions import ClientClosedError, ConnectTimeoutError, PoolTimeoutError
from reqwire.transport.types import Connection

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


class ProxyRoute(NamedTuple):
    """Proxy a connection is routed through. Part of the pool key."""

    url: str
    headers: tuple[tuple[str, str], ...] = ()


class PoolKey(NamedTuple):
    scheme: str
    host: str
    port: int
    proxy: ProxyRoute | None = None

    def __str__(self) -> str:
        via = f" via {self.proxy.url}" if self.proxy else ""
        return f"{self.scheme}://{self.host}:{self.port}{via}"


class ConnectionState(Enum):
    IDLE = "idle"
    CHECKED_OUT = "checked_out"
    CLOSED = "closed"


class PoolStats(NamedTuple):
    idle: int
    checked_out: int


class PooledConnection:
    """A transport connection owned by the pool. Checked out by at most one request at a time."""

    __slots__ = ("connection", "id", "idle_since", "key", "requests", "state")

    def __init__(self, key: PoolKey, connection: Connection) -> None:
        self.key = key
        self.connection = connection
        self.id = next(_connection_ids)
        self.state = ConnectionState.CHECKED_OUT
        self.idle_since = 0.0
        self.requests = 0

    @property
    def is_reused(self) -> bool:
        """Whether the connection carried a request before the current checkout."""
        return self.requests > 1

    def __repr__(self) -> str:
        return f"PooledConnection(id={self.id}, key={self.key}, state={self.state.value})"


@dataclass(slots=True)
class _Bucket:
    idle: deque[PooledConnection] = field(default_factory=deque)
    in_use: int = 0
    waiters: deque[asyncio.Future[None]] = field(default_factory=deque)

    @property
    def total(self) -> int:
        return len(self.idle) + self.in_use


class ConnectionPool:
    """Per-(scheme, host, port, proxy) connection pool.

    Each key has its own bucket of idle connections and its own slot limit. The pool is bound to the event loop it is
    first used on. All bookkeeping happens between suspension points, so buckets need no locks.
    """

    def __init__(
        self,
        opener: Callable[[PoolKey], Awaitable[Connection]],
        *,
        max_connections: int | None = None,
        idle_timeout: float | None = 90.0,
        max_idle_per_host: int | None = None,
        connect_timeout: float | None = None,
        pool_timeout: float | None = None,
    ) -> None:
        self._opener = opener
        self._max_connections = max_connections
        self._idle_timeout = idle_timeout
        self._max_idle_per_host = max_idle_per_host
        self._connect_timeout = connect_timeout
        self._pool_timeout = pool_timeout
        self._buckets: dict[PoolKey, _Bucket] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._sweeper: asyncio.Task[None] | None = None
        self._closed = False

    async def acquire(self, key: PoolKey) -> PooledConnection:
        """Check out a connection for key: a fresh idle one, a new one, or the next one freed up."""
        loop = self._check_loop()
        deadline: float | None = None

        while True:
            if self._closed:
                raise ClientClosedError("Client was closed")

            bucket = self._buckets.setdefault(key, _Bucket())

            if (conn := self._pop_idle(bucket, loop.time())) is not None:
                conn.state = ConnectionState.CHECKED_OUT
                conn.requests += 1
                bucket.in_use += 1
                logger.debug("Reusing connection %d to %s", conn.id, key)
                return conn

            if self._max_connections is None or bucket.total < self._max_connections:
                return await self._open(key, bucket)

            if deadline is None and self._pool_timeout is not None:
                deadline = loop.time() + self._pool_timeout
            await self._wait_for_slot(bucket, deadline)

    def release(self, conn: PooledConnection, *, reusable: bool) -> None:
        """Return a checked out connection. Non-reusable connections are closed and their slot is freed."""
        if conn.state is not ConnectionState.CHECKED_OUT:
            raise RuntimeError(f"Connection {conn.id} was already released")

        bucket = self._buckets.setdefault(conn.key, _Bucket())
        bucket.in_use -= 1

        if reusable and not self._closed and conn.connection.is_reusable() and self._has_idle_room(bucket):
            conn.state = ConnectionState.IDLE
            conn.idle_since = self._loop.time() if self._loop is not None else 0.0
            bucket.idle.append(conn)
            self._ensure_sweeper()
        else:
            self._close_connection(conn, "released as not reusable" if not reusable else "not kept idle")

        self._notify(bucket)
        self._prune(conn.key, bucket)

    def stats(self) -> dict[PoolKey, PoolStats]:
        """Idle and checked out connection counts per key."""
        return {key: PoolStats(len(bucket.idle), bucket.in_use) for key, bucket in self._buckets.items() if bucket.total}

    def close(self) -> None:
        """Close idle connections. Checked out connections are closed when they are released."""
        if self._closed:
            return
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        for bucket in self._buckets.values():
            while bucket.idle:
                self._close_connection(bucket.idle.popleft(), "pool closed")
            while bucket.waiters:
                waiter = bucket.waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(ClientClosedError("Client was closed"))

    @property
    def closed(self) -> bool:
        return self._closed

    async def _open(self, key: PoolKey, bucket: _Bucket) -> PooledConnection:
        bucket.in_use += 1  # reserve the slot while connecting
        try:
            timeout_cm = asyncio.timeout(self._connect_timeout)
            try:
                async with timeout_cm:
                    raw = await self._opener(key)
            except TimeoutError as e:
                if timeout_cm.expired():
                    raise ConnectTimeoutError("connect timeout") from e
                raise
        except BaseException:
            bucket.in_use -= 1
            self._notify(bucket)
            self._prune(key, bucket)
            raise

        if self._closed:
            raw.close()
            bucket.in_use -= 1
            raise ClientClosedError("Client was closed")

        conn = PooledConnection(key, raw)
        conn.requests = 1
        logger.debug("Opened connection %d to %s", conn.id, key)
        return conn

    def _pop_idle(self, bucket: _Bucket, now: float) -> PooledConnection | None:
        while bucket.idle:
            conn = bucket.idle.pop()
            if self._is_expired(conn, now):
                self._close_connection(conn, "idle timeout")
            elif not conn.connection.is_reusable():
                self._close_connection(conn, "closed by peer")
            else:
                return conn
        return None

    async def _wait_for_slot(self, bucket: _Bucket, deadline: float | None) -> None:
        assert self._loop is not None
        waiter: asyncio.Future[None] = self._loop.create_future()
        bucket.waiters.append(waiter)
        timeout_cm = asyncio.timeout_at(deadline)
        woken = False
        try:
            async with timeout_cm:
                await waiter
            woken = True
        except TimeoutError as e:
            if timeout_cm.expired():
                raise PoolTimeoutError("pool timeout") from e
            raise
        finally:
            if not woken:
                if waiter in bucket.waiters:
                    bucket.waiters.remove(waiter)
                elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    # woken up but cancelled before resuming, hand the slot to the next waiter
                    self._notify(bucket)

    def _notify(self, bucket: _Bucket) -> None:
        while bucket.waiters:
            waiter = bucket.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _prune(self, key: PoolKey, bucket: _Bucket) -> None:
        if not bucket.total and not bucket.waiters and self._buckets.get(key) is bucket:
            del self._buckets[key]

    def _has_idle_room(self, bucket: _Bucket) -> bool:
        return self._max_idle_per_host is None or len(bucket.idle) < self._max_idle_per_host

    def _is_expired(self, conn: PooledConnection, now: float) -> bool:
        return self._idle_timeout is not None and now - conn.idle_since >= self._idle_timeout

    def _close_connection(self, conn: PooledConnection, reason: str) -> None:
        conn.state = ConnectionState.CLOSED
        conn.connection.close()
        logger.debug("Closed connection %d to %s (%s)", conn.id, conn.key, reason)

    def _ensure_sweeper(self) -> None:
        if self._idle_timeout is None or self._sweeper is not None or self._loop is None:
            return
        self._sweeper = self._loop.create_task(self._sweep(self._idle_timeout))

    async def _sweep(self, idle_timeout: float) -> None:
        assert self._loop is not None
        try:
            while any(bucket.idle for bucket in self._buckets.values()):
                await asyncio.sleep(max(idle_timeout / 2, 0.01))
                now = self._loop.time()
                for key, bucket in list(self._buckets.items()):
                    expired = [conn for conn in bucket.idle if self._is_expired(conn, now)]
                    for conn in expired:
                        bucket.idle.remove(conn)
                        self._close_connection(conn, "idle timeout")
                    if expired:
                        self._notify(bucket)
                        self._prune(key, bucket)
        finally:
            if self._sweeper is asyncio.current_task():
                self._sweeper = None

    def _check_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
        elif self._loop is not loop:
            raise RuntimeError("Connection pool is bound to a different event loop")
        return loop
