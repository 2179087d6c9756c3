"""Exceptions raised by provider adapters."""


class ProviderError(Exception):
    """
    Base exception for provider failures.

    Parameters
    ----------
    message : str
        Human-readable error message
    provider : str
        Name of the provider that failed (e.g., 'zerion', 'defillama')

    """

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class AuthenticationError(ProviderError):
    """Raised when the provider rejects the credentials (HTTP 401/403)."""


class RateLimitExceededError(ProviderError):
    """
    Raised when a rate budget is exhausted, locally or at the provider.

    Parameters
    ----------
    message : str
        Human-readable error message
    provider : str
        Provider name
    retry_after : float | None
        Seconds until a new request may succeed, when known
    remaining : int | None
        Remaining request budget reported by the provider, when known

    """

    def __init__(
        self,
        message: str,
        provider: str = "",
        retry_after: float | None = None,
        remaining: int | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after
        self.remaining = remaining


class ProviderUnavailableError(ProviderError):
    """Raised when transient failures persist after all retries."""


class ProviderRequestError(ProviderError):
    """Raised for non-retryable client errors and malformed payloads."""

    def __init__(self, message: str, provider: str = "", status_code: int | None = None) -> None:
        super().__init__(message, provider)
        self.status_code = status_code


class MetadataUnavailableError(ProviderError):
    """Raised when the metadata provider has no data for a token."""
