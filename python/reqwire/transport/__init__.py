"""Transports: the network side of the client."""

from reqwire.transport.http11 import Http11Connection, Http11Transport
from reqwire.transport.resolver import GaiResolver, OverrideResolver
from reqwire.transport.tls import TlsConfig
from reqwire.transport.types import (
    Connection,
    ProxyTarget,
    RequestHead,
    Resolver,
    ResponseHead,
    SocketAddress,
    Transport,
)

__all__ = [
    "Connection",
    "GaiResolver",
    "Http11Connection",
    "Http11Transport",
    "OverrideResolver",
    "ProxyTarget",
    "RequestHead",
    "Resolver",
    "ResponseHead",
    "SocketAddress",
    "TlsConfig",
    "Transport",
]
