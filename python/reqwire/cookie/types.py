"""Cookie types and interfaces."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class CookieProvider(Protocol):
    """Cookie provider that allows custom cookie handling.

    `reqwire.http.cookie.CookieStore` is the default implementation. Providers are called from the event loop
    executing the request, and from the runtime thread for blocking clients, so they must be thread-safe when shared.
    """

    def set_cookies(self, cookie_headers: list[str], url: str) -> None:
        """Set cookies for a given URL.

        This method is called when the HTTP client receives a Set-Cookie header
        from a server response, including intermediate redirect responses.

        Args:
            cookie_headers: List of Set-Cookie header values received from url
            url: The URL that sent the Set-Cookie headers
        """

    def cookies(self, url: str) -> str | None:
        """Get cookies for a given URL.

        This method is called before every request hop, so each redirect target
        gets the cookies that belong to it.

        Args:
            url: The URL for which cookies are requested

        Returns:
            A string containing the Cookie header value, or None if no cookies
        """
