import ipaddress
from collections.abc import Mapping
from typing import Any, Self
from urllib.parse import SplitResult, parse_qsl, quote, urlencode, urljoin, urlsplit, urlunsplit

from reqwire.types import QueryParams

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}


class Url:
    """Immutable parsed absolute URL."""

    __slots__ = ("_parts", "_serialized")

    def __init__(self, url: "str | Url") -> None:
        """Parse an absolute URL from a string."""
        if isinstance(url, Url):
            self._parts: SplitResult = url._parts
            self._serialized: str = url._serialized
            return
        if not isinstance(url, str):
            raise TypeError(f"expected str or Url, got {type(url).__name__}")
        parts = _normalize(url.strip())
        self._parts = parts
        self._serialized = urlunsplit(parts)

    @staticmethod
    def parse(url: str) -> "Url":
        """Parse an absolute URL from a string. Same as Url(url)."""
        return Url(url)

    @staticmethod
    def parse_with_params(url: str, params: QueryParams) -> "Url":
        """Parse an absolute URL from a string and add params to its query string."""
        return Url(url).extend_query(params)

    def join(self, join_input: str) -> Self:
        """Parse a string as an URL, with this URL as the base URL.

        A trailing slash is significant. Without it, the last path component is considered to be a "file" name to be
        removed to get at the "directory" that is used as the base.
        """
        return type(self)(urljoin(self._serialized, join_input))

    def __truediv__(self, join_input: str) -> Self:
        """Path join shorthand: url / 'segment' == url.join('segment')."""
        return self.join(join_input)

    @property
    def scheme(self) -> str:
        """Return the scheme of this URL, lower-cased, without the ':' delimiter."""
        return self._parts.scheme

    @property
    def is_http(self) -> bool:
        return self.scheme in ("http", "https")

    @property
    def username(self) -> str:
        return self._parts.username or ""

    @property
    def password(self) -> str | None:
        return self._parts.password

    @property
    def host(self) -> str | None:
        """Host name or IP address without IPv6 brackets, lower-cased."""
        return self._parts.hostname

    @property
    def host_str(self) -> str | None:
        """Host name or IP address of this URL. IPv6 addresses are given between [ and ] brackets."""
        host = self._parts.hostname
        if host is not None and ":" in host:
            return f"[{host}]"
        return host

    @property
    def domain(self) -> str | None:
        """The host if it is a domain name (not an IP address)."""
        host = self.host
        if host is None or _is_ip_address(host):
            return None
        return host

    @property
    def port(self) -> int | None:
        """Explicit port number of this URL, if any."""
        return self._parts.port

    @property
    def port_or_known_default(self) -> int | None:
        """Port number of this URL, or the default port number of the scheme."""
        port = self._parts.port
        return port if port is not None else DEFAULT_PORTS.get(self.scheme)

    @property
    def authority(self) -> str:
        """Host and explicit non-default port, as used in the Host header."""
        host = self.host_str or ""
        port = self._parts.port
        if port is None or port == DEFAULT_PORTS.get(self.scheme):
            return host
        return f"{host}:{port}"

    @property
    def origin(self) -> tuple[str, str | None, int | None]:
        """(scheme, host, port) tuple of this URL with the port defaulted."""
        return self.scheme, self.host, self.port_or_known_default

    @property
    def origin_ascii(self) -> str:
        """Return the origin of this URL serialized as `scheme://authority`."""
        return f"{self.scheme}://{self.authority}"

    @property
    def path(self) -> str:
        """Return the percent-encoded path of this URL, always starting with '/' for http URLs."""
        return self._parts.path

    @property
    def query_string(self) -> str | None:
        """Return this URL's query string, if any."""
        return self._parts.query or None

    @property
    def path_and_query(self) -> str:
        """Request target in origin-form, e.g. `/search?q=1`."""
        query = self._parts.query
        return f"{self.path or '/'}?{query}" if query else (self.path or "/")

    @property
    def query_pairs(self) -> list[tuple[str, str]]:
        """Parse the URL's query string as urlencoded and return list of (key, value) pairs."""
        return parse_qsl(self._parts.query, keep_blank_values=True)

    @property
    def query_dict_multi_value(self) -> dict[str, str | list[str]]:
        """Parse the query string into a dict where repeated keys become a list preserving order."""
        res: dict[str, str | list[str]] = {}
        for key, value in self.query_pairs:
            if key not in res:
                res[key] = value
            elif isinstance(cur := res[key], list):
                cur.append(value)
            else:
                res[key] = [cur, value]
        return res

    @property
    def fragment(self) -> str | None:
        """Return this URL's fragment identifier, if any."""
        return self._parts.fragment or None

    def with_query(self, query: QueryParams | None) -> Self:
        """Replace the entire query with provided params (None removes query)."""
        return self._replace(query=_encode_query(query) if query is not None else "")

    def extend_query(self, query: QueryParams) -> Self:
        """Append additional key/value pairs to existing query keeping original order."""
        extra = _encode_query(query)
        if not extra:
            return self
        current = self._parts.query
        return self._replace(query=f"{current}&{extra}" if current else extra)

    def with_query_string(self, query: str | None) -> Self:
        """Replace query using a preformatted string (no leading '?'). None removes it."""
        return self._replace(query=query or "")

    def with_path(self, path: str) -> Self:
        """Return a copy with a new path. Accepts with/without leading '/'."""
        return self._replace(path="/" + quote(path.lstrip("/"), safe="/%:@!$&'()*+,;=-._~"))

    def with_fragment(self, fragment: str | None) -> Self:
        """Change this URL's fragment identifier."""
        return self._replace(fragment=fragment or "")

    def without_credentials(self) -> Self:
        """Return a copy without username and password."""
        if not self._parts.username and self._parts.password is None:
            return self
        netloc = self._parts.netloc.rpartition("@")[2]
        return self._replace(netloc=netloc)

    def _replace(self, **kwargs: Any) -> Self:
        return type(self)(urlunsplit(self._parts._replace(**kwargs)))

    def __str__(self) -> str:
        return self._serialized

    def __repr__(self) -> str:
        return f"Url({self._serialized!r})"

    def __hash__(self) -> int:
        return hash(self._serialized)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Url):
            return self._serialized == other._serialized
        if isinstance(other, str):
            return self._serialized == other
        return NotImplemented

    def __lt__(self, other: "Url") -> bool:
        return self._serialized < str(other)

    def __copy__(self) -> Self:
        return self


def _normalize(url: str) -> SplitResult:
    try:
        parts = urlsplit(url)
        port = parts.port  # validates the port
    except ValueError as e:
        raise ValueError(f"invalid URL: {e}") from None
    if not parts.scheme:
        raise ValueError("relative URL without a base")
    scheme = parts.scheme.lower()
    if scheme in DEFAULT_PORTS and not parts.hostname:
        raise ValueError("empty host")

    netloc = parts.netloc
    if parts.hostname is not None:
        host = parts.hostname
        host = f"[{host}]" if ":" in host else host
        userinfo = netloc.rpartition("@")[0] if "@" in netloc else ""
        netloc = f"{userinfo}@{host}" if userinfo else host
        if port is not None:
            netloc = f"{netloc}:{port}"

    path = parts.path
    if scheme in DEFAULT_PORTS and not path:
        path = "/"
    return SplitResult(scheme, netloc, path, parts.query, parts.fragment)


def _encode_query(query: QueryParams) -> str:
    items = query.items() if isinstance(query, Mapping) else query
    pairs: list[tuple[str, str]] = []
    for key, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _query_value(v)) for v in value)
        else:
            pairs.append((key, _query_value(value)))
    return urlencode(pairs)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True
