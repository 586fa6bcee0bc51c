"""Content-Encoding decoding of response bodies."""

import zlib

from reqwire.exceptions import DecodeError, causes_details
from reqwire.http import HeaderMap

GZIP_ENCODINGS = frozenset({"gzip", "x-gzip"})


def accept_encoding(*, gzip: bool, deflate: bool) -> str | None:
    """Accept-Encoding value advertising the enabled codings."""
    codings = [name for name, enabled in (("gzip", gzip), ("deflate", deflate)) if enabled]
    return ", ".join(codings) or None


class ContentDecoder:
    """Incremental decoder of a gzip or deflate coded body.

    Deflate bodies are tried as zlib wrapped first and fall back to raw deflate, as some servers send either.
    """

    def __init__(self, encoding: str) -> None:
        self.encoding = encoding
        self._raw_fallback = encoding == "deflate"
        self._seen_input = False
        wbits = zlib.MAX_WBITS if encoding == "deflate" else 16 + zlib.MAX_WBITS
        self._zlib = zlib.decompressobj(wbits)

    @classmethod
    def for_response(cls, headers: HeaderMap, *, gzip: bool, deflate: bool) -> "ContentDecoder | None":
        """Decoder for the response's Content-Encoding, if enabled.

        Strips Content-Encoding and Content-Length from `headers` as they no longer describe the decoded body.
        """
        encoding = headers.get("content-encoding", "").strip().lower()
        if not ((encoding in GZIP_ENCODINGS and gzip) or (encoding == "deflate" and deflate)):
            return None
        headers.popall("content-encoding", None)
        headers.popall("content-length", None)
        return cls(encoding)

    def decode(self, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            decoded = self._zlib.decompress(data)
        except zlib.error as e:
            if not self._raw_fallback or self._seen_input:
                raise DecodeError("error decoding response body", details=causes_details(e)) from e
            self._raw_fallback = False
            self._zlib = zlib.decompressobj(-zlib.MAX_WBITS)
            return self.decode(data)
        self._seen_input = True
        return decoded

    def flush(self) -> bytes:
        if not self._seen_input:
            return b""
        try:
            tail = self._zlib.flush()
        except zlib.error as e:
            raise DecodeError("error decoding response body", details=causes_details(e)) from e
        if not self._zlib.eof:
            raise DecodeError(
                "error decoding response body",
                details={"causes": [{"message": f"{self.encoding} stream ended unexpectedly"}]},
            )
        return tail
