"""DNS resolvers."""

import asyncio
import logging
import socket
from collections.abc import Mapping, Sequence

from reqwire.exceptions import DnsError, causes_details
from reqwire.transport.types import Resolver, SocketAddress

logger = logging.getLogger(__name__)


class GaiResolver:
    """Resolves with the event loop's `getaddrinfo` (runs in the default executor)."""

    async def resolve(self, host: str, port: int) -> list[SocketAddress]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            raise DnsError("dns error", details=causes_details(e)) from e
        if not infos:
            raise DnsError("dns error", details={"causes": [{"message": f"no addresses found for {host}"}]})
        addrs: list[SocketAddress] = []
        for family, _, _, _, sockaddr in infos:
            addr = SocketAddress(str(sockaddr[0]), int(sockaddr[1]), family)
            if addr not in addrs:
                addrs.append(addr)
        logger.debug("Resolved %s to %d address(es)", host, len(addrs))
        return addrs


class OverrideResolver:
    """Resolver with static per-domain overrides, falling back to another resolver for other names.

    An override address with port 0 takes the port of the request.
    """

    def __init__(self, overrides: Mapping[str, Sequence[SocketAddress]], fallback: Resolver) -> None:
        self._overrides = {domain.lower(): list(addrs) for domain, addrs in overrides.items()}
        self._fallback = fallback

    async def resolve(self, host: str, port: int) -> list[SocketAddress]:
        addrs = self._overrides.get(host.lower())
        if addrs is None:
            return await self._fallback.resolve(host, port)
        return [SocketAddress(addr.host, addr.port or port, addr.family) for addr in addrs]
