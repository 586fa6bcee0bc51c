import ipaddress
import socket
from collections.abc import Iterable
from datetime import timedelta
from typing import Any, Self

from reqwire.client._blocking import DrainPolicy, Runtime, _BlockingHandle
from reqwire.client._client import BlockingClient, Client
from reqwire.client._config import DEFAULT_USER_AGENT, ClientConfig
from reqwire.client._engine import Engine
from reqwire.cookie import CookieProvider
from reqwire.http import HeaderMap, Url
from reqwire.http.cookie import CookieStore
from reqwire.http.headers import validate_header
from reqwire.proxy import ProxyBuilder, system_proxies
from reqwire.redirect import Policy, SensitiveHeaders
from reqwire.retry import RetryPolicy
from reqwire.transport import GaiResolver, Http11Transport, OverrideResolver, Resolver, SocketAddress, TlsConfig
from reqwire.transport.types import Transport
from reqwire.types import HeadersType, UrlType


class BaseClientBuilder:
    """Common base for async and blocking client builders. A builder builds one client."""

    def __init__(self) -> None:
        self._config: dict[str, Any] = {}
        self._default_headers = HeaderMap()
        self._user_agent = DEFAULT_USER_AGENT
        self._proxies: list[ProxyBuilder] = []
        self._no_proxy = False
        self._system_proxies = False
        self._cookie_provider: CookieProvider | None = None
        self._root_certificates_pem: list[bytes] = []
        self._root_certificates_der: list[bytes] = []
        self._accept_invalid_certs = False
        self._tls_built_in_root_certs = True
        self._resolve_overrides: dict[str, list[SocketAddress]] = {}
        self._resolver: Resolver | None = None
        self._transport: Transport | None = None
        self._built = False

    def timeout(self, timeout: timedelta) -> Self:
        """Total timeout for each request, covering all redirect hops and reading the response body."""
        return self._set("timeout", _seconds(timeout))

    def connect_timeout(self, timeout: timedelta) -> Self:
        """Timeout for establishing a connection (DNS, TCP and TLS), per redirect hop."""
        return self._set("connect_timeout", _seconds(timeout))

    def read_timeout(self, timeout: timedelta) -> Self:
        """Timeout for each read from a connection."""
        return self._set("read_timeout", _seconds(timeout))

    def write_timeout(self, timeout: timedelta) -> Self:
        """Timeout for each write to a connection."""
        return self._set("write_timeout", _seconds(timeout))

    def pool_timeout(self, timeout: timedelta) -> Self:
        """Timeout for waiting on a free connection slot when max_connections is reached."""
        return self._set("pool_timeout", _seconds(timeout))

    def pool_idle_timeout(self, timeout: timedelta | None) -> Self:
        """How long idle connections are kept in the pool. None keeps them indefinitely. Default 90 seconds."""
        return self._set("pool_idle_timeout", _seconds(timeout) if timeout is not None else None)

    def pool_max_idle_per_host(self, max_idle: int) -> Self:
        """Maximum number of idle connections kept per host."""
        return self._set("pool_max_idle_per_host", _non_negative(max_idle, "pool_max_idle_per_host"))

    def max_connections(self, max_connections: int | None) -> Self:
        """Maximum number of connections per host, idle and in use. None for no limit."""
        if max_connections is not None and (not isinstance(max_connections, int) or max_connections < 1):
            raise ValueError("max_connections must be a positive integer")
        return self._set("max_connections", max_connections)

    def redirect(self, policy: Policy) -> Self:
        """Redirect policy. Default is `Policy.limited(10)`."""
        if not isinstance(policy, Policy):
            raise TypeError(f"policy must be a Policy, got {type(policy).__name__}")
        return self._set("redirect_policy", policy)

    def redirect_sensitive_headers(self, headers: SensitiveHeaders | Iterable[str]) -> Self:
        """Headers removed when a redirect goes to another origin."""
        if not isinstance(headers, SensitiveHeaders):
            headers = SensitiveHeaders(headers)
        return self._set("sensitive_headers", headers)

    def referer(self, enable: bool) -> Self:
        """Send a Referer header when following redirects. Default True."""
        return self._set("referer", enable)

    def https_only(self, enable: bool) -> Self:
        """Only allow https URLs, including redirect targets."""
        return self._set("https_only", enable)

    def error_for_status(self, enable: bool) -> Self:
        """Fail requests with StatusError for 4xx and 5xx responses."""
        return self._set("error_for_status", enable)

    def gzip(self, enable: bool) -> Self:
        """Advertise and transparently decode gzip response bodies. Default True."""
        return self._set("gzip", enable)

    def deflate(self, enable: bool) -> Self:
        """Advertise and transparently decode deflate response bodies. Default True."""
        return self._set("deflate", enable)

    def retry(self, policy: RetryPolicy | None) -> Self:
        """Retry failed connection attempts and requests on stale pooled connections. Disabled by default."""
        return self._set("retry", policy)

    def base_url(self, url: UrlType) -> Self:
        """Base URL that relative request URLs are joined to. Must end with a slash."""
        self._check_not_built()
        base = Url(url)
        if not base.path.endswith("/"):
            raise ValueError("base_url must end with a trailing slash '/'")
        return self._set("base_url", base)

    def default_headers(self, headers: HeadersType) -> Self:
        """Headers added to every request that does not set them itself."""
        self._check_not_built()
        self._default_headers = HeaderMap(headers)
        return self

    def user_agent(self, value: str) -> Self:
        """User-Agent header of requests. Default `reqwire/<version>`."""
        self._check_not_built()
        validate_header("user-agent", value)
        self._user_agent = value
        return self

    def cookie_store(self, enable: bool) -> Self:
        """Keep cookies in an in-memory CookieStore shared by all requests of the client."""
        self._check_not_built()
        self._cookie_provider = CookieStore() if enable else None
        return self

    def cookie_provider(self, provider: CookieProvider | None) -> Self:
        """Use a custom cookie provider, e.g. a CookieStore that is inspected by the caller."""
        self._check_not_built()
        if provider is not None and not isinstance(provider, CookieProvider):
            raise TypeError("provider must implement set_cookies and cookies")
        self._cookie_provider = provider
        return self

    def proxy(self, proxy: ProxyBuilder) -> Self:
        """Add a proxy. Proxies are tried in the order they were added."""
        self._check_not_built()
        if not isinstance(proxy, ProxyBuilder):
            raise TypeError(f"proxy must be a ProxyBuilder, got {type(proxy).__name__}")
        self._proxies.append(proxy)
        return self

    def no_proxy(self) -> Self:
        """Disable all proxies, including ones from the environment."""
        self._check_not_built()
        self._no_proxy = True
        return self

    def system_proxies(self, enable: bool) -> Self:
        """Use proxies from the HTTP_PROXY, HTTPS_PROXY, ALL_PROXY and NO_PROXY environment variables."""
        self._check_not_built()
        self._system_proxies = enable
        return self

    def danger_accept_invalid_certs(self, enable: bool) -> Self:
        """Accept any server certificate. Only for testing."""
        self._check_not_built()
        self._accept_invalid_certs = enable
        return self

    def add_root_certificate_pem(self, cert: bytes) -> Self:
        """Trust an additional root certificate given in PEM format."""
        self._check_not_built()
        self._root_certificates_pem.append(bytes(cert))
        return self

    def add_root_certificate_der(self, cert: bytes) -> Self:
        """Trust an additional root certificate given in DER format."""
        self._check_not_built()
        self._root_certificates_der.append(bytes(cert))
        return self

    def tls_built_in_root_certs(self, enable: bool) -> Self:
        """Trust the system's root certificates. Default True."""
        self._check_not_built()
        self._tls_built_in_root_certs = enable
        return self

    def resolve(self, domain: str, ip: str, port: int | None = None) -> Self:
        """Resolve domain to ip instead of using DNS. Without port, the port of the request URL is used."""
        self._check_not_built()
        family = socket.AF_INET6 if ipaddress.ip_address(ip).version == 6 else socket.AF_INET
        self._resolve_overrides.setdefault(domain.lower(), []).append(SocketAddress(ip, port or 0, family))
        return self

    def dns_resolver(self, resolver: Resolver) -> Self:
        """Custom DNS resolver used by the default transport."""
        self._check_not_built()
        self._resolver = resolver
        return self

    def transport(self, transport: Transport) -> Self:
        """Custom transport. TLS, DNS and read/write timeout settings only apply to the default transport."""
        self._check_not_built()
        self._transport = transport
        return self

    def _set(self, name: str, value: Any) -> Self:
        self._check_not_built()
        self._config[name] = value
        return self

    def _check_not_built(self) -> None:
        if self._built:
            raise RuntimeError("Client was already built")

    def _build_engine(self) -> Engine:
        self._check_not_built()
        self._built = True

        default_headers = self._default_headers.copy()
        if "user-agent" not in default_headers:
            default_headers["user-agent"] = self._user_agent
        proxies: list[ProxyBuilder] = []
        if not self._no_proxy:
            proxies = [*self._proxies, *(system_proxies() if self._system_proxies else [])]

        config = ClientConfig(
            **self._config,
            default_headers=default_headers,
            cookie_provider=self._cookie_provider,
            proxies=tuple(proxies),
        )
        transport = self._transport if self._transport is not None else self._default_transport(config)
        return Engine(config, transport)

    def _default_transport(self, config: ClientConfig) -> Transport:
        resolver = self._resolver or GaiResolver()
        if self._resolve_overrides:
            resolver = OverrideResolver(self._resolve_overrides, resolver)
        tls = TlsConfig(
            accept_invalid_certs=self._accept_invalid_certs,
            root_certificates_pem=tuple(self._root_certificates_pem),
            root_certificates_der=tuple(self._root_certificates_der),
            use_system_roots=self._tls_built_in_root_certs,
        )
        return Http11Transport(
            resolver=resolver,
            tls=tls,
            read_timeout=config.read_timeout,
            write_timeout=config.write_timeout,
        )


class ClientBuilder(BaseClientBuilder):
    """Builds an async Client.

    ```python
    async with ClientBuilder().timeout(timedelta(seconds=10)).error_for_status(True).build() as client:
        resp = await client.get("https://example.com").build().send()
    ```
    """

    def build(self) -> Client:
        return Client(self._build_engine())


class BlockingClientBuilder(BaseClientBuilder):
    """Builds a BlockingClient. Requests run on a Runtime thread and block the calling thread."""

    def __init__(self) -> None:
        super().__init__()
        self._runtime: Runtime | None = None
        self._drain_policy = DrainPolicy.WAIT
        self._drain_timeout: float | None = None

    def runtime(self, runtime: Runtime) -> Self:
        """Run requests on a shared runtime. The client does not close a runtime it did not create."""
        self._check_not_built()
        if not isinstance(runtime, Runtime):
            raise TypeError(f"runtime must be a Runtime, got {type(runtime).__name__}")
        self._runtime = runtime
        return self

    def drain_policy(self, policy: DrainPolicy) -> Self:
        """What closing the client does with in-flight requests. Default DrainPolicy.WAIT."""
        self._check_not_built()
        self._drain_policy = DrainPolicy(policy)
        return self

    def drain_timeout(self, timeout: timedelta | None) -> Self:
        """How long closing the client waits for in-flight requests with DrainPolicy.WAIT. None waits forever."""
        self._check_not_built()
        self._drain_timeout = _seconds(timeout) if timeout is not None else None
        return self

    def build(self) -> BlockingClient:
        engine = self._build_engine()
        owns_runtime = self._runtime is None
        runtime = self._runtime if self._runtime is not None else Runtime()
        handle = _BlockingHandle(
            engine,
            runtime,
            owns_runtime=owns_runtime,
            drain_policy=self._drain_policy,
            drain_timeout=self._drain_timeout,
        )
        return BlockingClient(handle)


def _seconds(value: timedelta) -> float:
    if not isinstance(value, timedelta):
        raise TypeError(f"expected a timedelta, got {type(value).__name__}")
    if value < timedelta(0):
        raise ValueError("duration must be non-negative")
    return value.total_seconds()


def _non_negative(value: int, name: str) -> int:
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer")
    return value
