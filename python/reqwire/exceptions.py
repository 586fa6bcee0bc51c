"""Exception classes."""

import json
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from reqwire.http import Url


class ConnectErrorKind(Enum):
    """Reason a connection could not be established."""

    DNS_FAILURE = "dns_failure"
    REFUSED = "refused"
    TLS_VALIDATION = "tls_validation"
    TIMEOUT = "timeout"


class TimeoutPhase(Enum):
    """Phase of the request that ran out of time."""

    CONNECT = "connect"
    POOL = "pool"
    WRITE = "write"
    READ = "read"
    TOTAL = "total"


class RequestError(Exception):
    """Base class for all errors raised by the client.

    `details` carries structured diagnostics, for example `{"causes": [...]}` describing the underlying failures.
    """

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class BuilderError(RequestError, ValueError):
    """Request or client could not be built from the given configuration."""


class ClientClosedError(RequestError):
    """The client or its runtime was closed."""


class RequestPanicError(RequestError):
    """An unexpected exception was raised while executing the request, e.g. inside a user callback."""


class StatusError(RequestError):
    """Response status indicated a client or server error (4xx or 5xx)."""


class BodyNotReplayableError(RequestError):
    """A streaming request body had to be sent again (redirect or retry) but it can only be read once."""


class NestedBlockingCallError(RequestError, RuntimeError):
    """A blocking client was called from the thread that drives its own runtime."""


class DecodeError(RequestError):
    """Response body could not be decoded."""


class JSONDecodeError(DecodeError, json.JSONDecodeError):
    """Response body is not valid JSON. Also a `json.JSONDecodeError` carrying `pos`, `lineno` and `colno`."""

    def __init__(self, message: str, doc: str, pos: int) -> None:
        json.JSONDecodeError.__init__(self, message, doc, pos)
        self.message = message
        self.details = {"causes": None}


class ConnectError(RequestError):
    """Connection could not be established."""

    kind: ConnectErrorKind = ConnectErrorKind.REFUSED

    def __init__(
        self,
        message: str,
        *,
        kind: ConnectErrorKind | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        if kind is not None:
            self.kind = kind


class DnsError(ConnectError):
    """Host name could not be resolved."""

    kind = ConnectErrorKind.DNS_FAILURE


class ConnectRefusedError(ConnectError):
    """TCP connection was refused or otherwise failed."""

    kind = ConnectErrorKind.REFUSED


class TlsValidationError(ConnectError):
    """TLS handshake failed, e.g. the peer certificate was not trusted."""

    kind = ConnectErrorKind.TLS_VALIDATION


class TransportError(RequestError):
    """I/O failed while writing the request or reading the response."""


class ProtocolError(TransportError):
    """The peer violated the HTTP protocol, e.g. a truncated response."""


class RequestTimeoutError(RequestError, TimeoutError):
    """Request ran out of time. `phase` tells which part of the request timed out."""

    phase: TimeoutPhase = TimeoutPhase.TOTAL

    def __init__(
        self,
        message: str,
        *,
        phase: TimeoutPhase | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        if phase is not None:
            self.phase = phase


class ConnectTimeoutError(ConnectError, RequestTimeoutError):
    """Connection was not established within the connect timeout."""

    kind = ConnectErrorKind.TIMEOUT
    phase = TimeoutPhase.CONNECT


class PoolTimeoutError(RequestTimeoutError):
    """No pooled connection slot became available within the pool timeout."""

    phase = TimeoutPhase.POOL


class ReadTimeoutError(RequestTimeoutError):
    """Reading the response took longer than allowed."""

    phase = TimeoutPhase.READ


class WriteTimeoutError(RequestTimeoutError):
    """Writing the request took longer than allowed."""

    phase = TimeoutPhase.WRITE


class TotalTimeoutError(RequestTimeoutError):
    """The whole request, including all redirect hops, took longer than the request timeout."""

    phase = TimeoutPhase.TOTAL


class RedirectError(RequestError):
    """Following redirects failed. `history` holds the URLs requested so far."""

    def __init__(
        self,
        message: str,
        *,
        history: "list[Url] | None" = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.history: list[Url] = list(history or [])


class TooManyRedirectsError(RedirectError):
    """Redirect chain exceeded the maximum number of hops."""

    def __init__(self, hops: int, *, history: "list[Url] | None" = None) -> None:
        super().__init__("too many redirects", history=history, details={"hops": hops})
        self.hops = hops


class InvalidRedirectLocationError(RedirectError):
    """Redirect response had a missing or malformed Location header."""


def causes_details(exc: BaseException, *, with_type: bool = False, **extra: Any) -> dict[str, Any]:
    """Build the `details` mapping describing the exception chain of `exc`.

    With `with_type` the messages are prefixed with the exception class name, e.g. "RuntimeError: failed".
    """
    causes: list[dict[str, str]] = []
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        message = str(cur) or type(cur).__name__
        causes.append({"message": f"{type(cur).__name__}: {message}" if with_type else message})
        cur = cur.__cause__ or cur.__context__
    return {"causes": causes, **extra}
