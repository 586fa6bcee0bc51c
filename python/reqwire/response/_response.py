import codecs
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol

import orjson

from reqwire.exceptions import JSONDecodeError, StatusError
from reqwire.http import HeaderMap, Url
from reqwire.transport.types import ResponseHead

if TYPE_CHECKING:
    from reqwire.client import Runtime

DEFAULT_READ_SIZE = 65536

_HTTP_VERSIONS = frozenset({"HTTP/0.9", "HTTP/1.0", "HTTP/1.1", "HTTP/2.0", "HTTP/3.0"})


class BodySource(Protocol):
    """Where response body chunks come from."""

    async def next_chunk(self) -> bytes | None:
        """Next chunk, or None at the end of the body."""

    async def aclose(self) -> None:
        """Release the body. Unread data is dropped."""


class BufferedBody:
    """Body that was read completely before the response was returned."""

    __slots__ = ("_chunks",)

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = deque(chunks)

    async def next_chunk(self) -> bytes | None:
        return self._chunks.popleft() if self._chunks else None

    async def aclose(self) -> None:
        self._chunks.clear()


class BaseResponse:
    """Common base for async and blocking responses."""

    def __init__(
        self,
        head: ResponseHead,
        url: Url,
        *,
        history: list[Url],
        extensions: dict[str, Any],
        body: BodySource,
    ) -> None:
        """Do not use directly. Responses are returned by sending requests."""
        self._status = head.status
        self._headers = head.headers
        self._version = head.version
        self._url = url
        self._history = history
        self._extensions = extensions
        self._body = body
        self._content: bytes | None = None
        self._chunked = False
        self._pending = b""

    @property
    def status(self) -> int:
        """Response status code."""
        return self._status

    @status.setter
    def status(self, value: int) -> None:
        if not isinstance(value, int) or not 100 <= value <= 999:
            raise ValueError("invalid status code")
        self._status = value

    @property
    def headers(self) -> HeaderMap:
        """Response headers."""
        return self._headers

    @headers.setter
    def headers(self, value: HeaderMap) -> None:
        self._headers = value if isinstance(value, HeaderMap) else HeaderMap(value)

    @property
    def version(self) -> str:
        """HTTP version of the response, e.g. "HTTP/1.1"."""
        return self._version

    @version.setter
    def version(self, value: str) -> None:
        if value not in _HTTP_VERSIONS:
            raise ValueError("invalid http version")
        self._version = value

    @property
    def url(self) -> Url:
        """Final URL of the response, after following redirects."""
        return self._url

    @property
    def history(self) -> list[Url]:
        """URLs that answered with a followed redirect before the final response, oldest first."""
        return list(self._history)

    @property
    def extensions(self) -> dict[str, Any]:
        """Extensions carried over from the request."""
        return self._extensions

    @extensions.setter
    def extensions(self, value: dict[str, Any]) -> None:
        if not isinstance(value, dict):
            raise TypeError("extensions must be a dict")
        self._extensions = value

    def error_for_status(self) -> None:
        """Raise StatusError for client (4xx) and server (5xx) error statuses."""
        raise_for_status(self._status)

    def content_charset(self) -> str | None:
        """Charset parameter of the Content-Type header."""
        content_type = self._headers.get("content-type")
        if not content_type:
            return None
        for param in content_type.split(";")[1:]:
            key, _, value = param.partition("=")
            if key.strip().lower() == "charset":
                return value.strip().strip('"') or None
        return None

    async def _read_bytes(self) -> bytes:
        if self._content is None:
            if self._chunked:
                raise RuntimeError("Response body already consumed")
            parts = [self._pending]
            self._pending = b""
            while (chunk := await self._body.next_chunk()) is not None:
                parts.append(chunk)
            self._content = b"".join(parts)
        return self._content

    async def _read_text(self) -> str:
        content = await self._read_bytes()
        encoding = self.content_charset() or "utf-8"
        try:
            codecs.lookup(encoding)
        except LookupError:
            encoding = "utf-8"
        return content.decode(encoding, errors="replace")

    async def _read_json(self) -> Any:
        content = await self._read_bytes()
        try:
            return orjson.loads(content)
        except orjson.JSONDecodeError as e:
            raise JSONDecodeError(e.msg, e.doc, e.pos) from e

    async def _read_chunk(self) -> bytes | None:
        if self._content is not None:
            return None
        self._chunked = True
        if self._pending:
            chunk, self._pending = self._pending, b""
            return chunk
        return await self._body.next_chunk()

    async def _read(self, amount: int) -> bytes:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        buffer = bytearray()
        while len(buffer) < amount:
            chunk = await self._read_chunk()
            if chunk is None:
                break
            buffer += chunk
        if len(buffer) > amount:
            self._pending = bytes(buffer[amount:])
            del buffer[amount:]
        return bytes(buffer)

    async def _aclose(self) -> None:
        await self._body.aclose()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self._status}, url={str(self._url)!r})"


class Response(BaseResponse):
    """Response of an async client."""

    async def text(self) -> str:
        """Body decoded with the Content-Type charset (UTF-8 by default). Invalid sequences are replaced."""
        return await self._read_text()

    async def json(self) -> Any:
        """Body parsed as JSON. Raises JSONDecodeError for invalid JSON."""
        return await self._read_json()

    async def next_chunk(self) -> bytes | None:
        """Next body chunk as received from the server, or None at the end of the body."""
        return await self._read_chunk()

    async def read(self, amount: int = DEFAULT_READ_SIZE) -> bytes:
        """Read up to amount bytes. Returns empty bytes at the end of the body."""
        return await self._read(amount)

    @property
    def body_reader(self) -> "ResponseBodyReader":
        """Reader for incrementally consuming the body."""
        return ResponseBodyReader(self)

    async def bytes(self) -> bytes:
        """Read the whole body. The result is cached, so it can be called multiple times."""
        return await self._read_bytes()


class ResponseBodyReader:
    """Incremental reader over a response body."""

    def __init__(self, response: BaseResponse) -> None:
        self._response = response

    async def read_chunk(self) -> bytes | None:
        return await self._response._read_chunk()

    async def read(self, amount: int = DEFAULT_READ_SIZE) -> bytes:
        return await self._response._read(amount)

    async def bytes(self) -> bytes:
        return await self._response._read_bytes()


class BlockingResponse(BaseResponse):
    """Response of a blocking client. Body reads block the calling thread."""

    def __init__(
        self,
        head: ResponseHead,
        url: Url,
        *,
        history: list[Url],
        extensions: dict[str, Any],
        body: BodySource,
        runtime: "Runtime",
    ) -> None:
        super().__init__(head, url, history=history, extensions=extensions, body=body)
        self._runtime = runtime

    def text(self) -> str:
        """Body decoded with the Content-Type charset (UTF-8 by default). Invalid sequences are replaced."""
        return self._runtime.run(self._read_text())

    def json(self) -> Any:
        """Body parsed as JSON. Raises JSONDecodeError for invalid JSON."""
        return self._runtime.run(self._read_json())

    def next_chunk(self) -> bytes | None:
        """Next body chunk as received from the server, or None at the end of the body."""
        return self._runtime.run(self._read_chunk())

    def read(self, amount: int = DEFAULT_READ_SIZE) -> bytes:
        """Read up to amount bytes. Returns empty bytes at the end of the body."""
        return self._runtime.run(self._read(amount))

    @property
    def body_reader(self) -> "BlockingResponseBodyReader":
        """Reader for incrementally consuming the body."""
        return BlockingResponseBodyReader(self)

    def bytes(self) -> bytes:
        """Read the whole body. The result is cached, so it can be called multiple times."""
        return self._runtime.run(self._read_bytes())


class BlockingResponseBodyReader:
    """Blocking incremental reader over a response body."""

    def __init__(self, response: BlockingResponse) -> None:
        self._response = response

    def read_chunk(self) -> bytes | None:
        return self._response.next_chunk()

    def read(self, amount: int = DEFAULT_READ_SIZE) -> bytes:
        return self._response.read(amount)

    def bytes(self) -> bytes:
        return self._response.bytes()


def raise_for_status(status: int) -> None:
    if 400 <= status < 500:
        raise StatusError("HTTP status client error", details={"causes": None, "status": status})
    if 500 <= status < 600:
        raise StatusError("HTTP status server error", details={"causes": None, "status": status})
