import ipaddress
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from reqwire.http.cookie.cookie import Cookie
from reqwire.http.url import Url

logger = logging.getLogger(__name__)

_creation_counter = itertools.count()


@dataclass(slots=True)
class _StoredCookie:
    cookie: Cookie
    domain: str
    host_only: bool
    path: str
    expires_at: datetime | None
    creation: int = field(default_factory=lambda: next(_creation_counter))

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(slots=True)
class _DomainBucket:
    lock: threading.Lock = field(default_factory=threading.Lock)
    cookies: dict[tuple[str, str], _StoredCookie] = field(default_factory=dict)


class CookieStore:
    """Thread-safe in-memory cookie store (domain/path aware).

    Cookies are bucketed by the domain they belong to and every bucket has its own lock, so concurrent requests to
    unrelated domains never contend. Expired cookies are purged whenever their bucket is accessed.

    A `Domain` attribute with a leading dot (`Domain=.example.com`) makes the cookie available to subdomains. Without
    the dot the cookie is pinned to exactly that host. Pass `subdomains_require_leading_dot=False` to always extend
    domain cookies to subdomains as RFC 6265 does.
    """

    def __init__(self, *, subdomains_require_leading_dot: bool = True) -> None:
        """Create an empty cookie store."""
        self._subdomains_require_leading_dot = subdomains_require_leading_dot
        self._buckets: dict[str, _DomainBucket] = {}
        self._buckets_lock = threading.Lock()

    # CookieProvider interface

    def set_cookies(self, cookie_headers: list[str], url: str) -> None:
        """Store cookies from Set-Cookie header values received from url."""
        request_url = Url(url)
        for header in cookie_headers:
            try:
                cookie = Cookie.parse(header)
            except ValueError:
                logger.debug("Ignoring unparseable Set-Cookie header from %s", request_url.origin_ascii)
                continue
            self._store(cookie, request_url)

    def cookies(self, url: str) -> str | None:
        """Cookie header value for a request to url, or None if no cookies match."""
        matched = self._matching(Url(url))
        if not matched:
            return None
        return "; ".join(stored.cookie.stripped() for stored in matched)

    # Store API

    def insert(self, cookie: Cookie | str, request_url: Url | str) -> None:
        """Insert a cookie as if set by a response for request_url."""
        if isinstance(cookie, str):
            cookie = Cookie.parse(cookie)
        if not self._store(cookie, Url(request_url)):
            raise ValueError(f"cookie {cookie.name!r} is not allowed for {request_url}")

    def matches(self, url: Url | str) -> list[Cookie]:
        """Returns unexpired cookies that path- and domain-match url and are compatible with its scheme."""
        return [stored.cookie for stored in self._matching(Url(url))]

    def contains(self, domain: str, path: str, name: str) -> bool:
        """Returns true if the store contains an unexpired cookie with the domain, path and name."""
        return self.get(domain, path, name) is not None

    def contains_any(self, domain: str, path: str, name: str) -> bool:
        """Returns true if the store contains any (even an expired) cookie with the domain, path and name."""
        return self.get_any(domain, path, name) is not None

    def get(self, domain: str, path: str, name: str) -> Cookie | None:
        """Returns the unexpired cookie with the domain, path and name."""
        stored = self._lookup(domain, path, name)
        if stored is None or stored.is_expired(_now()):
            return None
        return stored.cookie

    def get_any(self, domain: str, path: str, name: str) -> Cookie | None:
        """Returns the (possibly expired) cookie with the domain, path and name."""
        stored = self._lookup(domain, path, name)
        return stored.cookie if stored is not None else None

    def remove(self, domain: str, path: str, name: str) -> Cookie | None:
        """Removes a cookie from the store, returning it if it was in the store."""
        bucket = self._buckets.get(domain.lower())
        if bucket is None:
            return None
        with bucket.lock:
            stored = bucket.cookies.pop((path, name), None)
        return stored.cookie if stored is not None else None

    def clear(self) -> None:
        """Remove all cookies from the store."""
        with self._buckets_lock:
            self._buckets = {}

    def get_all_unexpired(self) -> list[Cookie]:
        """Return all unexpired cookies currently stored."""
        now = _now()
        return [stored.cookie for stored in self._all() if not stored.is_expired(now)]

    def get_all_any(self) -> list[Cookie]:
        """Return all cookies in the store, including expired ones."""
        return [stored.cookie for stored in self._all()]

    # Internals

    def _store(self, cookie: Cookie, request_url: Url) -> bool:
        host = request_url.host
        if host is None:
            return False

        if cookie.secure and request_url.scheme != "https":
            logger.debug("Rejecting secure cookie %r set over %s", cookie.name, request_url.scheme)
            return False

        if cookie.domain:
            domain_attr = cookie.domain.lower()
            dotted = domain_attr.startswith(".")
            domain = domain_attr.lstrip(".")
            if not _domain_match(host, domain):
                logger.debug("Rejecting cookie %r, domain %r does not match %r", cookie.name, domain, host)
                return False
            host_only = _is_ip(domain) or (self._subdomains_require_leading_dot and not dotted)
        else:
            domain = host
            host_only = True

        path = cookie.path if cookie.path and cookie.path.startswith("/") else _default_path(request_url.path)
        expires_at = _expiry(cookie)
        stored = _StoredCookie(cookie=cookie, domain=domain, host_only=host_only, path=path, expires_at=expires_at)

        bucket = self._bucket(domain, create=True)
        assert bucket is not None
        with bucket.lock:
            if stored.is_expired(_now()):
                bucket.cookies.pop((path, cookie.name), None)
            else:
                previous = bucket.cookies.get((path, cookie.name))
                if previous is not None:
                    stored.creation = previous.creation
                bucket.cookies[(path, cookie.name)] = stored
        return True

    def _matching(self, url: Url) -> list[_StoredCookie]:
        host = url.host
        if host is None:
            return []
        path = url.path or "/"
        secure = url.scheme == "https"
        now = _now()

        matched: list[_StoredCookie] = []
        for domain in _candidate_domains(host):
            bucket = self._bucket(domain, create=False)
            if bucket is None:
                continue
            with bucket.lock:
                expired = [key for key, stored in bucket.cookies.items() if stored.is_expired(now)]
                for key in expired:
                    del bucket.cookies[key]
                for stored in bucket.cookies.values():
                    if stored.host_only and domain != host:
                        continue
                    if stored.cookie.secure and not secure:
                        continue
                    if not _path_match(path, stored.path):
                        continue
                    matched.append(stored)

        matched.sort(key=lambda stored: (-len(stored.path), stored.creation))
        return matched

    def _bucket(self, domain: str, *, create: bool) -> _DomainBucket | None:
        bucket = self._buckets.get(domain)
        if bucket is None and create:
            with self._buckets_lock:
                bucket = self._buckets.setdefault(domain, _DomainBucket())
        return bucket

    def _lookup(self, domain: str, path: str, name: str) -> _StoredCookie | None:
        bucket = self._buckets.get(domain.lower())
        if bucket is None:
            return None
        with bucket.lock:
            return bucket.cookies.get((path, name))

    def _all(self) -> list[_StoredCookie]:
        res: list[_StoredCookie] = []
        for bucket in list(self._buckets.values()):
            with bucket.lock:
                res.extend(bucket.cookies.values())
        res.sort(key=lambda stored: stored.creation)
        return res

    def __repr__(self) -> str:
        return f"CookieStore({len(self._all())} cookies)"


def _now() -> datetime:
    return datetime.now(UTC)


def _expiry(cookie: Cookie) -> datetime | None:
    # Max-Age takes precedence over Expires
    if cookie.max_age is not None:
        return _now() + cookie.max_age
    return cookie.expires_datetime


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _domain_match(host: str, domain: str) -> bool:
    if host == domain:
        return True
    return not _is_ip(host) and host.endswith("." + domain)


def _candidate_domains(host: str) -> list[str]:
    if _is_ip(host):
        return [host]
    labels = host.split(".")
    return [".".join(labels[i:]) for i in range(len(labels))]


def _default_path(request_path: str) -> str:
    if not request_path.startswith("/") or request_path.count("/") == 1:
        return "/"
    return request_path[: request_path.rindex("/")]


def _path_match(request_path: str, cookie_path: str) -> bool:
    if request_path == cookie_path:
        return True
    if request_path.startswith(cookie_path):
        return cookie_path.endswith("/") or request_path[len(cookie_path)] == "/"
    return False
