"""
Typed provider errors.

Each error carries an HTTP-status-like code and whether retrying the same
call could plausibly succeed.
"""

from typing import Any, Optional


class ProviderError(Exception):
    """Base class for failures talking to the generation provider."""

    def __init__(
        self,
        message: str,
        status_code: int,
        retryable: bool,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.details = details

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(status_code={self.status_code}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )


def is_retryable_status(status_code: int) -> bool:
    """5xx and 429 are worth retrying; any other 4xx is not."""
    return status_code >= 500 or status_code == 429


class ProviderHTTPError(ProviderError):
    """Provider answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, details: Optional[Any] = None):
        super().__init__(message, status_code, is_retryable_status(status_code), details)


class ProviderTimeoutError(ProviderError):
    """An attempt exceeded the request timeout."""

    def __init__(self, message: str = "Provider request timed out"):
        super().__init__(message, status_code=504, retryable=True)


class ProviderNetworkError(ProviderError):
    """Connection could not be established or was dropped."""

    def __init__(self, message: str):
        super().__init__(message, status_code=503, retryable=True)


class ProviderResponseError(ProviderError):
    """2xx response whose body reports failure or cannot be understood."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, status_code=502, retryable=False, details=details)
