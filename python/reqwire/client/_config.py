from dataclasses import dataclass, field

from reqwire import __version__
from reqwire.cookie import CookieProvider
from reqwire.http import HeaderMap, Url
from reqwire.proxy import ProxyBuilder
from reqwire.redirect import Policy, SensitiveHeaders
from reqwire.retry import RetryPolicy

DEFAULT_USER_AGENT = f"reqwire/{__version__}"


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Settings of a built client. Durations are in seconds."""

    timeout: float | None = None
    connect_timeout: float | None = None
    read_timeout: float | None = None
    write_timeout: float | None = None
    pool_timeout: float | None = None
    pool_idle_timeout: float | None = 90.0
    pool_max_idle_per_host: int | None = None
    max_connections: int | None = None
    redirect_policy: Policy = field(default_factory=Policy.default)
    sensitive_headers: SensitiveHeaders = field(default_factory=SensitiveHeaders)
    referer: bool = True
    https_only: bool = False
    error_for_status: bool = False
    gzip: bool = True
    deflate: bool = True
    default_headers: HeaderMap = field(default_factory=lambda: HeaderMap({"user-agent": DEFAULT_USER_AGENT}))
    base_url: Url | None = None
    cookie_provider: CookieProvider | None = None
    proxies: tuple[ProxyBuilder, ...] = ()
    retry: RetryPolicy | None = None
