"""Custom exceptions for the rate limiter."""


class RateLimiterError(Exception):
    """Base class for rate limiter exceptions.

    Callers of the public limiter operations receive either a populated
    result or one of the subclasses below.
    """

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(RateLimiterError, ValueError):
    """Raised when a Limit or limiter setting is invalid.

    Indicates a programming error; not retryable.
    """

    def __init__(self, message: str = "Invalid rate limit configuration"):
        super().__init__(message)


class BackendUnavailable(RateLimiterError):
    """Raised when a Redis round trip fails.

    Covers connection errors, timeouts, script execution errors and
    malformed replies. Never mapped to an allow or deny decision; the
    caller chooses a fail-open or fail-closed policy.

    Attributes:
        operation: The limiter operation that failed ("allow", "reset", "publish")
    """

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        message = f"Rate limit backend unavailable during {operation}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ListenerFailure(RateLimiterError):
    """Raised when the invalidation listener loses its subscription.

    Attributes:
        channel: The pub/sub channel being consumed
    """

    def __init__(self, channel: str, detail: str | None = None):
        self.channel = channel
        message = f"Invalidation listener on '{channel}' failed"
        if detail:
            message += f": {detail}"
        super().__init__(message)
