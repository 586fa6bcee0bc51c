from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any

import pytest
import trustme
from reqwire.transport.http11 import Http11Connection, Http11Transport

from .servers.echo_body_parts_server import EchoBodyPartsServer
from .servers.echo_server import EchoServer
from .servers.proxy_server import TunnelProxyServer
from .servers.server import ServerConfig

pytest_plugins = ["reqwire.pytest_plugin.plugin"]


@pytest.fixture
async def echo_server() -> AsyncGenerator[EchoServer]:
    async with EchoServer().serve_context() as server:
        assert str(server.url).startswith("http://")
        yield server


@pytest.fixture
async def echo_body_parts_server() -> AsyncGenerator[EchoBodyPartsServer]:
    async with EchoBodyPartsServer().serve_context() as server:
        assert str(server.url).startswith("http://")
        yield server


@pytest.fixture
async def tunnel_proxy_server() -> AsyncGenerator[TunnelProxyServer]:
    async with TunnelProxyServer().serve_context() as server:
        yield server


@pytest.fixture(scope="session")
def cert_authority() -> trustme.CA:
    return trustme.CA()


@pytest.fixture(scope="session")
def localhost_cert(cert_authority: trustme.CA) -> trustme.LeafCert:
    return cert_authority.issue_cert("127.0.0.1", "localhost")


@pytest.fixture(scope="session")
def cert_pem_file(localhost_cert: trustme.LeafCert) -> Generator[Path, None, None]:
    with NamedTemporaryFile(suffix=".pem") as tmp:
        tmp.write(localhost_cert.cert_chain_pems[0].bytes())
        tmp.flush()
        yield Path(tmp.name)


@pytest.fixture(scope="session")
def cert_private_key_file(localhost_cert: trustme.LeafCert) -> Generator[Path, None, None]:
    with NamedTemporaryFile(suffix=".pem") as tmp:
        tmp.write(localhost_cert.private_key_pem.bytes())
        tmp.flush()
        yield Path(tmp.name)


@pytest.fixture
async def https_echo_server(cert_private_key_file: Path, cert_pem_file: Path) -> AsyncGenerator[EchoServer]:
    config = ServerConfig(ssl_key=cert_private_key_file, ssl_cert=cert_pem_file)
    async with EchoServer(config).serve_context() as server:
        assert str(server.url).startswith("https://")
        yield server


@pytest.fixture
def transport_connects(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, str, int]]:
    """Records the (scheme, host, port) of every connection the HTTP/1.1 transport opens."""
    connects: list[tuple[str, str, int]] = []
    connect = Http11Transport.connect

    async def recording_connect(
        self: Http11Transport, scheme: str, host: str, port: int, **kwargs: Any
    ) -> Http11Connection:
        connects.append((scheme, host, port))
        return await connect(self, scheme, host, port, **kwargs)

    monkeypatch.setattr(Http11Transport, "connect", recording_connect)
    return connects
