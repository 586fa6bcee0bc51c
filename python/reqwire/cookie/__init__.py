"""Cookie jar interfaces."""

from reqwire.cookie.types import CookieProvider

__all__ = ["CookieProvider"]
