"""Error taxonomy shared by the dataset engine, gateway and orchestrator."""

from __future__ import annotations

from typing import Optional


class WebsetError(Exception):
    """Base class for all engine errors."""


class ValidationError(WebsetError):
    """Bad input rejected at submission time; never retried."""


class NotFoundError(ValidationError):
    """Referenced webset, version, job or provider does not exist."""


class RateLimited(WebsetError):
    """A rate budget (local or provider-side) denied the call; retry later."""

    def __init__(self, message: str = "rate limited", *, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(WebsetError):
    """Failure reported by, or while talking to, an external provider."""

    def __init__(self, message: str, *, provider_id: Optional[str] = None, status: int = 0):
        super().__init__(message)
        self.provider_id = provider_id
        self.status = status


class TransientProviderError(ProviderError):
    """Network error, timeout or 5xx: eligible for bounded automatic retry."""


class PermanentProviderError(ProviderError):
    """Invalid request or provider rejection: recorded against the row."""


class OrchestrationFailure(WebsetError):
    """The job itself cannot proceed."""


class NoProviderAvailable(OrchestrationFailure):
    """No active provider of the required kind."""


class ConflictError(WebsetError):
    """Version race in the dataset store that outlasted the retry budget."""
