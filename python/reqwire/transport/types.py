"""Transport capability interfaces.

The request engine talks to the network only through these protocols. `reqwire.transport.Http11Transport` is the
default implementation. Custom transports (and the `client_mocker` pytest fixture) plug in via
`ClientBuilder.transport()`.
"""

import socket
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from reqwire.http import HeaderMap


@dataclass(frozen=True, slots=True)
class SocketAddress:
    """Resolved address to open a TCP connection to."""

    host: str
    port: int
    family: int = socket.AF_UNSPEC


@dataclass(frozen=True, slots=True)
class ProxyTarget:
    """Destination reached through a proxy with an HTTP CONNECT tunnel."""

    scheme: str
    host: str
    port: int
    headers: tuple[tuple[str, str], ...] = ()

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(slots=True)
class RequestHead:
    """Request line and headers of one hop. `target` is origin-form, or absolute-form when forwarding via a proxy."""

    method: str
    target: str
    headers: HeaderMap = field(default_factory=HeaderMap)


@dataclass(slots=True)
class ResponseHead:
    """Status line and headers of a response."""

    status: int
    headers: HeaderMap = field(default_factory=HeaderMap)
    version: str = "HTTP/1.1"
    reason: str = ""


class Connection(Protocol):
    """A single established connection carrying one request at a time."""

    async def send(self, head: RequestHead, body: AsyncIterator[bytes] | None) -> ResponseHead:
        """Write the request head and body, then read and return the response head."""

    def read_body(self) -> AsyncGenerator[bytes, None]:
        """Iterate the body of the response returned by the last `send`."""

    def is_reusable(self) -> bool:
        """Whether another request can be sent on this connection."""

    def close(self) -> None:
        """Close the connection. Idempotent."""


class Transport(Protocol):
    """Opens connections. Scheme decides whether TLS is used."""

    async def connect(self, scheme: str, host: str, port: int, *, tunnel: ProxyTarget | None = None) -> Connection:
        """Open a connection to host:port. With `tunnel`, host:port is a proxy and a CONNECT tunnel is established."""


class Resolver(Protocol):
    """DNS resolution."""

    async def resolve(self, host: str, port: int) -> list[SocketAddress]:
        """Resolve host into one or more addresses. Raises DnsError when the name can not be resolved."""
