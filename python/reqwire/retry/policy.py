from dataclasses import dataclass
from datetime import timedelta

from reqwire.exceptions import ConnectError, ConnectTimeoutError, RequestError, TransportError

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE", "PUT", "DELETE"})


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Opt-in retries for requests that failed before a response was received.

    Retries connection failures and I/O failures on reused (stale) pooled connections. Only the listed methods are
    retried, idempotent ones by default. A request whose body is a single-pass stream that was already sent fails with
    BodyNotReplayableError instead of being retried.
    """

    max_retries: int = 2
    methods: frozenset[str] = IDEMPOTENT_METHODS
    retry_connect_errors: bool = True
    retry_connect_timeouts: bool = False
    retry_stale_connections: bool = True
    backoff: timedelta = timedelta(0)
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        object.__setattr__(self, "methods", frozenset(method.upper() for method in self.methods))

    def should_retry(self, method: str, error: BaseException, *, reused_connection: bool, retries: int) -> bool:
        """Whether a request that failed with error after `retries` retries is sent again."""
        if retries >= self.max_retries or method.upper() not in self.methods:
            return False
        if isinstance(error, ConnectTimeoutError):
            return self.retry_connect_timeouts
        if isinstance(error, ConnectError):
            return self.retry_connect_errors
        if isinstance(error, TransportError):
            return self.retry_stale_connections and reused_connection
        return False

    def backoff_delay(self, retries: int) -> float:
        """Seconds to sleep before retry number `retries` (1-based)."""
        base = self.backoff.total_seconds()
        return base * self.backoff_multiplier ** (retries - 1) if base > 0 else 0.0
