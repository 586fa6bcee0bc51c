import logging
from dataclasses import dataclass

from reqwire.exceptions import (
    BodyNotReplayableError,
    BuilderError,
    InvalidRedirectLocationError,
    RedirectError,
    RequestError,
    RequestPanicError,
    causes_details,
)
from reqwire.http import HeaderMap, RequestBody, Url
from reqwire.redirect.policy import Action, ActionKind, Attempt, Policy, SensitiveHeaders

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

_BODY_HEADERS = ("content-type", "content-length", "content-encoding", "transfer-encoding")


@dataclass(slots=True)
class Hop:
    """One request of a logical request's redirect chain."""

    method: str
    url: Url
    headers: HeaderMap
    body: RequestBody | None


def redirect_method(status: int, method: str) -> tuple[str, bool]:
    """Method of the next hop and whether the body is kept."""
    if status == 303:
        return "GET", False
    if status in (301, 302) and method == "POST":
        return "GET", False
    return method, True


def make_referer(next_url: Url, previous: Url) -> str | None:
    """Referer value for a hop from previous to next_url. None when the redirect downgrades https to http."""
    if previous.scheme == "https" and next_url.scheme == "http":
        return None
    return str(previous.without_credentials().with_fragment(None))


class RedirectEngine:
    """Decides whether and how a logical request continues after a redirect response."""

    def __init__(
        self,
        policy: Policy,
        *,
        sensitive_headers: SensitiveHeaders,
        referer: bool = True,
        https_only: bool = False,
    ) -> None:
        self._policy = policy
        self._sensitive_headers = sensitive_headers
        self._referer = referer
        self._https_only = https_only

    def next_hop(self, status: int, location: str | None, hop: Hop, history: list[Url]) -> Hop | None:
        """The hop to send next, or None when the response is final.

        `history` lists the URLs requested so far, ending with `hop.url`.
        """
        if status not in REDIRECT_STATUSES or not self._policy.follows:
            return None

        next_url = self._location_url(location, hop.url, history)
        action = self._apply_policy(Attempt(status, next_url, list(history)))
        if action.kind is ActionKind.STOP:
            logger.debug("Redirect policy stopped at %d redirect to %s", status, next_url.origin_ascii)
            return None
        if action.kind is ActionKind.ERROR:
            assert action.error is not None
            raise self._redirect_error(action.error, history)

        if self._https_only and next_url.scheme != "https":
            raise BuilderError("URL scheme is not allowed")

        method, keep_body = redirect_method(status, hop.method)
        headers = hop.headers.copy()
        body: RequestBody | None = None
        if keep_body:
            if hop.body is not None and (body := hop.body.try_clone()) is None:
                raise BodyNotReplayableError(
                    "request body stream can not be replayed for redirect", details={"status": status}
                )
        else:
            for name in _BODY_HEADERS:
                headers.popall(name, None)

        if next_url.origin != hop.url.origin:
            if stripped := self._sensitive_headers.strip(headers):
                logger.debug("Removed %s from cross-origin redirect", ", ".join(stripped))

        if self._referer:
            headers.popall("referer", None)
            if (referer := make_referer(next_url, hop.url)) is not None:
                headers["referer"] = referer

        logger.debug("Following %d redirect %s %s -> %s %s", status, hop.method, hop.url, method, next_url)
        return Hop(method, next_url, headers, body)

    def _apply_policy(self, attempt: Attempt) -> Action:
        try:
            return self._policy.redirect(attempt)
        except RequestError:
            raise
        except Exception as e:
            raise RequestPanicError("redirect policy failed", details=causes_details(e, with_type=True)) from e

    def _location_url(self, location: str | None, current: Url, history: list[Url]) -> Url:
        if location is None or not location.strip():
            raise InvalidRedirectLocationError("redirect response has no Location header", history=history)
        try:
            url = current.join(location.strip())
        except ValueError as e:
            raise InvalidRedirectLocationError(
                f"invalid redirect location: {location!r}", history=history, details=causes_details(e)
            ) from e
        if not url.is_http:
            raise InvalidRedirectLocationError(f"unsupported redirect location scheme: {url.scheme}", history=history)
        if url.fragment is None and current.fragment is not None:
            url = url.with_fragment(current.fragment)
        return url

    def _redirect_error(self, error: Exception | str, history: list[Url]) -> RedirectError:
        if isinstance(error, RedirectError):
            error.history = list(history)
            return error
        if isinstance(error, Exception):
            res = RedirectError(str(error) or type(error).__name__, history=history, details=causes_details(error))
            res.__cause__ = error
            return res
        return RedirectError(str(error), history=history)
