"""Cookie related classes."""

from reqwire.http.cookie.cookie import Cookie
from reqwire.http.cookie.store import CookieStore

__all__ = ["Cookie", "CookieStore"]
