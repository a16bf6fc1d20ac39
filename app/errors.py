"""Failure taxonomy shared by providers, handlers and the job queue.

The job queue decides between retrying and failing a job purely from the
class of the raised exception (``retryable``) and the job's retry counter.
Circuit breakers only count failures flagged with ``counts_toward_breaker``.
"""

from __future__ import annotations


class CuratorError(Exception):
    """Base class for all failures raised by the core."""

    retryable: bool = False
    counts_toward_breaker: bool = False

    def __init__(self, message: str, *, resource: str | None = None):
        super().__init__(message)
        self.resource = resource


class ValidationFailure(CuratorError):
    """Bad job input. Terminal immediately, never retried."""


class TransientProviderFailure(CuratorError):
    """Network error, timeout or throttling from an external provider."""

    retryable = True
    counts_toward_breaker = True

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, resource=resource)
        self.status_code = status_code


class RateLimitedFailure(TransientProviderFailure):
    """The provider rejected the call with HTTP 429."""

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, resource=resource, status_code=429)
        self.retry_after = retry_after


class CircuitOpenFailure(TransientProviderFailure):
    """Rejected by an open circuit breaker without reaching the resource."""

    # Rejections while open are not new failures of the resource.
    counts_toward_breaker = False


class PermanentProviderFailure(CuratorError):
    """The provider authoritatively rejected the request (not found, invalid)."""

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, resource=resource)
        self.status_code = status_code


class InfrastructureFailure(CuratorError):
    """Local persistence is unavailable."""

    retryable = True
    counts_toward_breaker = True


class JobCancelled(CuratorError):
    """Raised at a checkpoint when cancellation of the running job was requested."""
