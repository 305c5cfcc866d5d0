"""Provider error taxonomy.

Adapters normalize every raw provider failure into one of these classes so
nothing past the adapter boundary sees HTTP codes or SDK exceptions.
"""
from __future__ import annotations


class ProviderError(Exception):
    """Base class for normalized provider failures."""

    kind = "Provider"
    transient = False
    fatal = False

    def __init__(self, message: str = "", *, operation: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.kind} during {self.operation}: {self.message}"
        return f"{self.kind}: {self.message}"


class NotFound(ProviderError):
    kind = "NotFound"


class Conflict(ProviderError):
    kind = "Conflict"


class Throttled(ProviderError):
    kind = "Throttled"
    transient = True

    def __init__(self, message: str = "", *, operation: str = "", retry_after: float | None = None) -> None:
        super().__init__(message, operation=operation)
        self.retry_after = retry_after


class Unavailable(ProviderError):
    kind = "Unavailable"
    transient = True


class Unauthorized(ProviderError):
    kind = "Unauthorized"
    fatal = True


class InvalidArgument(ProviderError):
    kind = "InvalidArgument"
    fatal = True


class RetryExhausted(ProviderError):
    """Transient failures outlasted the retry policy."""

    kind = "RetryExhausted"

    def __init__(self, last_error: ProviderError, attempts: int, *, operation: str = "") -> None:
        super().__init__(f"gave up after {attempts} attempts, last error: {last_error}", operation=operation)
        self.last_error = last_error
        self.attempts = attempts

