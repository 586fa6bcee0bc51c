from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime, parsedate_to_datetime
from typing import Literal, Self, TypeAlias
from urllib.parse import quote, unquote

SameSite: TypeAlias = Literal["Strict", "Lax", "None"]

_SAME_SITE_VALUES: dict[str, SameSite] = {"strict": "Strict", "lax": "Lax", "none": "None"}


@dataclass(frozen=True, slots=True, eq=False)
class Cookie:
    """An immutable HTTP cookie (name, value, and optional attributes)."""

    name: str
    value: str
    path: str | None = None
    domain: str | None = None
    expires_datetime: datetime | None = None
    max_age: timedelta | None = None
    secure: bool = False
    http_only: bool = False
    same_site: SameSite | None = None
    partitioned: bool = False

    @classmethod
    def parse(cls, cookie: str) -> Self:
        """Parses a Cookie from a Set-Cookie header value string."""
        return cls._parse(cookie, decode=False)

    @classmethod
    def parse_encoded(cls, cookie: str) -> Self:
        """Like parse, but does percent-decoding of keys and values."""
        return cls._parse(cookie, decode=True)

    @classmethod
    def split_parse(cls, cookie: str) -> list[Self]:
        """Parses the HTTP Cookie header, a series of cookie names and value separated by `;`."""
        return [cls._parse(part, decode=False) for part in cookie.split(";") if part.strip()]

    @classmethod
    def split_parse_encoded(cls, cookie: str) -> list[Self]:
        """Like split_parse, but does percent-decoding of keys and values."""
        return [cls._parse(part, decode=True) for part in cookie.split(";") if part.strip()]

    @classmethod
    def _parse(cls, cookie: str, *, decode: bool) -> Self:
        pair, *attrs = cookie.split(";")
        name, sep, value = pair.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"invalid cookie: {cookie!r}")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        if decode:
            name, value = unquote(name), unquote(value)

        kwargs: dict[str, object] = {}
        for attr in attrs:
            key, _, attr_value = attr.partition("=")
            key = key.strip().lower()
            attr_value = attr_value.strip()
            if key == "path":
                kwargs["path"] = attr_value or None
            elif key == "domain":
                kwargs["domain"] = attr_value.lower() or None
            elif key == "expires":
                kwargs["expires_datetime"] = _parse_http_date(attr_value)
            elif key == "max-age":
                try:
                    kwargs["max_age"] = timedelta(seconds=int(attr_value))
                except ValueError:
                    continue
            elif key == "secure":
                kwargs["secure"] = True
            elif key == "httponly":
                kwargs["http_only"] = True
            elif key == "samesite":
                kwargs["same_site"] = _SAME_SITE_VALUES.get(attr_value.lower())
            elif key == "partitioned":
                kwargs["partitioned"] = True
        return cls(name, value, **kwargs)  # type: ignore[arg-type]

    @property
    def value_trimmed(self) -> str:
        """Value with surrounding whitespace trimmed."""
        return self.value.strip()

    def stripped(self) -> str:
        """Return just the 'name=value' pair."""
        return f"{self.name}={self.value}"

    def encode(self) -> str:
        """Returns cookie string with percent-encoding applied to name and value."""
        return self._format(quote(self.name, safe=""), quote(self.value, safe=""))

    def with_name(self, name: str) -> Self:
        return replace(self, name=name)

    def with_value(self, value: str) -> Self:
        return replace(self, value=value)

    def with_http_only(self, http_only: bool) -> Self:
        return replace(self, http_only=http_only)

    def with_secure(self, secure: bool) -> Self:
        return replace(self, secure=secure)

    def with_same_site(self, same_site: SameSite | None) -> Self:
        if same_site is not None and same_site not in _SAME_SITE_VALUES.values():
            raise ValueError(f"invalid SameSite: {same_site!r}")
        return replace(self, same_site=same_site)

    def with_partitioned(self, partitioned: bool) -> Self:
        return replace(self, partitioned=partitioned)

    def with_max_age(self, max_age: timedelta | None) -> Self:
        return replace(self, max_age=max_age)

    def with_path(self, path: str | None) -> Self:
        return replace(self, path=path)

    def with_domain(self, domain: str | None) -> Self:
        return replace(self, domain=domain.lower() if domain is not None else None)

    def with_expires_datetime(self, expires: datetime | None) -> Self:
        return replace(self, expires_datetime=expires)

    def _format(self, name: str, value: str) -> str:
        parts = [f"{name}={value}"]
        if self.http_only:
            parts.append("HttpOnly")
        if self.same_site is not None:
            parts.append(f"SameSite={self.same_site}")
        if self.partitioned:
            parts.append("Partitioned")
        if self.secure:
            parts.append("Secure")
        if self.path is not None:
            parts.append(f"Path={self.path}")
        if self.domain is not None:
            parts.append(f"Domain={self.domain}")
        if self.max_age is not None:
            parts.append(f"Max-Age={int(self.max_age.total_seconds())}")
        if self.expires_datetime is not None:
            parts.append(f"Expires={format_datetime(self.expires_datetime, usegmt=True)}")
        return "; ".join(parts)

    def __str__(self) -> str:
        return self._format(self.name, self.value)

    def __repr__(self) -> str:
        return f"Cookie({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Cookie):
            return str(self) == str(other)
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))

    def __copy__(self) -> Self:
        return self


def _parse_http_date(value: str) -> datetime | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
