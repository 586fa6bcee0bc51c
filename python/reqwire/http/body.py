from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from enum import Enum
from typing import Self

from reqwire.exceptions import BodyNotReplayableError
from reqwire.types import Stream


class BodyKind(Enum):
    BYTES = "bytes"
    STREAM = "stream"


class RequestBody:
    """Request body. Either an in-memory buffer or a stream of byte chunks.

    In-memory bodies can be sent any number of times. A stream given with `from_stream` is single-pass: it can be
    sent once and a redirect or retry that needs it again fails with `BodyNotReplayableError`. Use
    `from_stream_factory` to build a stream body that can be replayed by producing a fresh stream each time.
    """

    __slots__ = ("_buffer", "_consumed", "_factory", "_kind", "_stream")

    def __init__(self) -> None:
        """Do not use directly. Instead, use the from_* constructors."""
        self._kind: BodyKind = BodyKind.BYTES
        self._buffer: bytes | None = b""
        self._stream: Stream | None = None
        self._factory: Callable[[], Stream] | None = None
        self._consumed = False

    @classmethod
    def from_bytes(cls, body: bytes | bytearray | memoryview) -> Self:
        """Body from a bytes-like buffer."""
        if not isinstance(body, (bytes, bytearray, memoryview)):
            raise TypeError(f"expected a bytes-like object, got {type(body).__name__}")
        new = cls()
        new._buffer = bytes(body)
        return new

    @classmethod
    def from_text(cls, body: str) -> Self:
        """Body from a string, encoded as UTF-8."""
        return cls.from_bytes(body.encode("utf-8"))

    @classmethod
    def from_stream(cls, stream: Stream) -> Self:
        """Single-pass body from a sync or async iterable of bytes-like chunks."""
        if not isinstance(stream, (AsyncIterable, Iterable)) or isinstance(stream, (bytes, bytearray, str)):
            raise TypeError(f"expected an iterable of bytes, got {type(stream).__name__}")
        new = cls()
        new._kind = BodyKind.STREAM
        new._buffer = None
        new._stream = stream
        return new

    @classmethod
    def from_stream_factory(cls, factory: Callable[[], Stream]) -> Self:
        """Replayable stream body. `factory` is called every time the body is sent."""
        new = cls()
        new._kind = BodyKind.STREAM
        new._buffer = None
        new._factory = factory
        return new

    @property
    def kind(self) -> BodyKind:
        return self._kind

    @property
    def is_replayable(self) -> bool:
        """Whether the body can be sent again, e.g. to follow a 307 redirect."""
        if self._kind is BodyKind.BYTES or self._factory is not None:
            return True
        return not self._consumed

    @property
    def content_length(self) -> int | None:
        """Length of an in-memory body. None for streams."""
        return len(self._buffer) if self._buffer is not None else None

    def copy_bytes(self) -> bytes | None:
        """The in-memory body. None for streams."""
        return self._buffer

    def get_stream(self) -> Stream | None:
        """The underlying stream, if this is a stream body. Does not consume the body."""
        if self._factory is not None:
            return self._factory()
        return self._stream

    def try_clone(self) -> Self | None:
        """A fresh copy for sending the body again, or None if the body can not be replayed.

        An unsent single-pass stream is moved into the copy, the original is marked consumed.
        """
        if not self.is_replayable:
            return None
        new = type(self)()
        new._kind = self._kind
        new._buffer = self._buffer
        new._stream = self._stream
        new._factory = self._factory
        if self._kind is BodyKind.STREAM and self._factory is None:
            self._consumed = True
        return new

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.aiter_chunks()

    async def aiter_chunks(self) -> AsyncIterator[bytes]:
        """Iterate the body chunks. Single-pass streams are marked consumed when iteration starts."""
        if self._buffer is not None:
            if self._buffer:
                yield self._buffer
            return

        if self._factory is not None:
            stream = self._factory()
        else:
            if self._consumed:
                raise BodyNotReplayableError("request body stream was already consumed")
            self._consumed = True
            stream = self._stream
            assert stream is not None

        if isinstance(stream, AsyncIterable):
            async for chunk in stream:
                if chunk:
                    yield bytes(chunk)
        else:
            for chunk in stream:
                if chunk:
                    yield bytes(chunk)

    def __repr__(self) -> str:
        if self._buffer is not None:
            return f"RequestBody(bytes, {len(self._buffer)} bytes)"
        return f"RequestBody(stream, replayable={self.is_replayable})"
