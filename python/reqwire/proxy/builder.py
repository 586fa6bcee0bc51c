import base64
import ipaddress
import logging
import os
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Self

from reqwire.exceptions import RequestPanicError, causes_details
from reqwire.http import HeaderMap, Url
from reqwire.types import HeadersType, UrlType

logger = logging.getLogger(__name__)


class _ProxyScope(Enum):
    HTTP = "http"
    HTTPS = "https"
    ALL = "all"
    CUSTOM = "custom"


class NoProxy:
    """Hosts that bypass proxies.

    Parsed from a comma separated list like the `NO_PROXY` environment variable. Entries are domains (matching the
    domain and its subdomains, a leading dot is allowed), IP addresses, CIDR networks, or `*` to match everything.
    """

    __slots__ = ("_domains", "_match_all", "_networks")

    def __init__(self, value: str) -> None:
        self._match_all = False
        self._domains: list[str] = []
        self._networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        for entry in (part.strip().lower() for part in value.split(",")):
            if not entry:
                continue
            if entry == "*":
                self._match_all = True
                continue
            try:
                self._networks.append(ipaddress.ip_network(entry.strip("[]"), strict=False))
            except ValueError:
                self._domains.append(entry.lstrip("*").lstrip("."))

    def matches(self, url: Url) -> bool:
        """Whether requests to url should bypass the proxy."""
        host = url.host
        if host is None:
            return False
        if self._match_all:
            return True
        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            return any(host == domain or host.endswith("." + domain) for domain in self._domains)
        return any(addr in network for network in self._networks)

    def __repr__(self) -> str:
        entries = ["*"] if self._match_all else [*self._domains, *map(str, self._networks)]
        return f"NoProxy({','.join(entries)!r})"


class ProxyBuilder:
    """Proxy configuration.

    - `http` proxies plain http requests.
    - `https` proxies https requests (tunnelled with CONNECT).
    - `all` proxies both.
    - `custom` chooses the proxy per request with a function.

    Plain http requests are forwarded to the proxy in absolute form. https requests open a CONNECT tunnel through the
    proxy and negotiate TLS with the destination inside it.
    """

    __slots__ = ("_custom", "_headers", "_no_proxy", "_scope", "_url")

    def __init__(self, scope: _ProxyScope, url: Url | None, custom: Callable[[Url], UrlType | None] | None) -> None:
        """Do not use directly. Instead, use http(), https(), all() or custom()."""
        self._scope = scope
        self._url = url
        self._custom = custom
        self._headers = HeaderMap()
        self._no_proxy: NoProxy | None = None

    @classmethod
    def http(cls, url: UrlType) -> Self:
        """Proxy all http requests through url."""
        return cls(_ProxyScope.HTTP, _proxy_url(url), None)

    @classmethod
    def https(cls, url: UrlType) -> Self:
        """Proxy all https requests through url."""
        return cls(_ProxyScope.HTTPS, _proxy_url(url), None)

    @classmethod
    def all(cls, url: UrlType) -> Self:
        """Proxy all requests through url."""
        return cls(_ProxyScope.ALL, _proxy_url(url), None)

    @classmethod
    def custom(cls, fun: Callable[[Url], UrlType | None]) -> Self:
        """Proxy requests through the URL returned by fun. Returning None sends the request directly."""
        if not callable(fun):
            raise TypeError("proxy function must be callable")
        return cls(_ProxyScope.CUSTOM, None, fun)

    def basic_auth(self, username: str, password: str) -> Self:
        """Set the Proxy-Authorization header using Basic auth."""
        token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        self._headers.insert("proxy-authorization", f"Basic {token}")
        return self

    def custom_http_auth(self, header_value: str) -> Self:
        """Set the value of the Proxy-Authorization header."""
        self._headers.insert("proxy-authorization", header_value)
        return self

    def headers(self, headers: HeadersType) -> Self:
        """Add headers sent to the proxy."""
        self._headers.extend(headers)
        return self

    def no_proxy(self, no_proxy: str | None) -> Self:
        """Hosts that bypass this proxy, in `NO_PROXY` format."""
        self._no_proxy = NoProxy(no_proxy) if no_proxy else None
        return self

    @property
    def proxy_headers(self) -> HeaderMap:
        return self._headers.copy()

    def intercept(self, url: Url) -> Url | None:
        """The proxy URL for a request to url, or None to connect directly."""
        if self._no_proxy is not None and self._no_proxy.matches(url):
            return None
        if self._scope is _ProxyScope.CUSTOM:
            return self._call_custom(url)
        if self._scope is _ProxyScope.ALL or self._scope.value == url.scheme:
            return self._url
        return None

    def _call_custom(self, url: Url) -> Url | None:
        assert self._custom is not None
        try:
            res = self._custom(url)
            return _proxy_url(res) if res is not None else None
        except Exception as e:
            raise RequestPanicError("proxy function failed", details=causes_details(e, with_type=True)) from e

    def __repr__(self) -> str:
        target = getattr(self._custom, "__name__", "custom") if self._custom else str(self._url)
        return f"ProxyBuilder.{self._scope.value}({target!r})"


def system_proxies(environ: Mapping[str, str] | None = None) -> list[ProxyBuilder]:
    """Proxies configured with the HTTP_PROXY, HTTPS_PROXY, ALL_PROXY and NO_PROXY environment variables."""
    env = os.environ if environ is None else environ

    def get(name: str) -> str | None:
        return env.get(name) or env.get(name.lower())

    no_proxy = get("NO_PROXY")
    proxies: list[ProxyBuilder] = []
    for name, factory in (("HTTP_PROXY", ProxyBuilder.http), ("HTTPS_PROXY", ProxyBuilder.https)):
        if value := get(name):
            proxies.append(factory(value).no_proxy(no_proxy))
    if value := get("ALL_PROXY"):
        proxies.append(ProxyBuilder.all(value).no_proxy(no_proxy))
    if proxies:
        logger.debug("Using %d proxies from environment", len(proxies))
    return proxies


def _proxy_url(url: UrlType) -> Url:
    res = Url(url)
    if not res.is_http:
        raise ValueError(f"unsupported proxy scheme: {res.scheme}")
    return res
