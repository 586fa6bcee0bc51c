import asyncio
import concurrent.futures
import logging
import threading
import weakref
from collections.abc import Coroutine
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self, TypeVar

from reqwire.exceptions import ClientClosedError, NestedBlockingCallError, RequestError, RequestPanicError, causes_details

if TYPE_CHECKING:
    from reqwire.client._engine import Engine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DrainPolicy(Enum):
    """What closing a blocking client or runtime does with in-flight requests."""

    WAIT = "wait"
    """Let in-flight requests finish (bounded by the drain timeout), then cancel the rest."""
    CANCEL = "cancel"
    """Cancel in-flight requests immediately."""


class Runtime:
    """Event loop running in a dedicated daemon thread. Drives the requests of blocking clients.

    A blocking client creates its own runtime unless one is given with `BlockingClientBuilder.runtime()`. A runtime
    can be shared by multiple clients. Closing it fails in-flight and later calls with ClientClosedError.
    """

    def __init__(self, *, name: str = "reqwire-runtime") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=_run_loop, args=(self._loop,), name=name, daemon=True)
        self._lock = threading.Lock()
        self._futures: set[concurrent.futures.Future[Any]] = set()
        self._closed = False
        self._thread.start()
        self._finalizer = weakref.finalize(self, _stop_loop, self._loop, self._thread)
        logger.debug("Runtime %s started", name)

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run coro on the runtime and block until it completes.

        Exceptions that are not RequestErrors are raised as RequestPanicError. Raises NestedBlockingCallError when
        called from the runtime's own thread, as waiting there would deadlock.
        """
        if threading.get_ident() == self._thread.ident:
            coro.close()
            raise NestedBlockingCallError("Blocking call from the runtime thread would deadlock")
        if _in_running_loop():
            logger.warning("Blocking call made from a running event loop, the loop is blocked until it completes")

        with self._lock:
            if self._closed:
                coro.close()
                raise ClientClosedError("Runtime was closed")
            fut = asyncio.run_coroutine_threadsafe(_guard(coro), self._loop)
            self._futures.add(fut)
        try:
            return fut.result()
        except concurrent.futures.CancelledError:
            raise ClientClosedError("Client was closed") from None
        finally:
            with self._lock:
                self._futures.discard(fut)

    def close(self, drain_policy: DrainPolicy = DrainPolicy.WAIT, drain_timeout: float | None = None) -> None:
        """Stop accepting work, drain or cancel in-flight work and join the runtime thread."""
        if threading.get_ident() == self._thread.ident:
            raise NestedBlockingCallError("Runtime can not be closed from its own thread")
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = set(self._futures)

        if drain_policy is DrainPolicy.WAIT and pending:
            _, pending = concurrent.futures.wait(pending, timeout=drain_timeout)
        for fut in pending:
            fut.cancel()
        if pending:
            logger.debug("Runtime cancelled %d in-flight calls", len(pending))

        asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result()
        self._finalizer()
        logger.debug("Runtime %s closed", self._thread.name)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Runtime(name={self._thread.name!r}, closed={self._closed})"


class _BlockingHandle:
    """Engine and runtime shared by a blocking client and its clones."""

    def __init__(
        self,
        engine: "Engine",
        runtime: Runtime,
        *,
        owns_runtime: bool,
        drain_policy: DrainPolicy,
        drain_timeout: float | None,
    ) -> None:
        self.engine = engine
        self.runtime = runtime
        self.owns_runtime = owns_runtime
        self.drain_policy = drain_policy
        self.drain_timeout = drain_timeout

    def close(self) -> None:
        if not self.runtime.closed and not self.engine.closed:
            wait = self.drain_policy is DrainPolicy.WAIT
            self.runtime.run(self.engine.aclose(wait=wait, timeout=self.drain_timeout))
        if self.owns_runtime:
            self.runtime.close(self.drain_policy, self.drain_timeout)


async def _guard(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return await coro
    except RequestError:
        raise
    except Exception as e:
        raise RequestPanicError("request panicked", details=causes_details(e, with_type=True)) from e


async def _shutdown() -> None:
    current = asyncio.current_task()
    tasks = [task for task in asyncio.all_tasks() if task is not current]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await asyncio.get_running_loop().shutdown_asyncgens()


def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    try:
        loop.run_forever()
    finally:
        loop.close()


def _stop_loop(loop: asyncio.AbstractEventLoop, thread: threading.Thread) -> None:
    try:
        loop.call_soon_threadsafe(loop.stop)
    except RuntimeError:
        return  # already closed
    if thread is not threading.current_thread():
        thread.join()


def _in_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
