"""Service error hierarchy for generation orchestration.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (rate limits, upstream failures, storage outages)
- PermanentError: Non-retryable errors (validation, access, missing data)
"""

from enum import Enum

RATE_LIMIT_SIGNALS = ("429", "rate_limit", "rate limit", "resource_exhausted", "quota")


def is_rate_limit_message(message: str) -> bool:
    """Return True if an upstream error message carries a rate-limit signal."""
    lowered = message.lower()
    return any(signal in lowered for signal in RATE_LIMIT_SIGNALS)


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Rate limit windows exhausted
    - Upstream generation failures
    - Object storage or database outages
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Invalid grid config or variation count
    - Access denied / not found
    - Unknown model configuration
    """

    pass


# Caller-facing errors
class ValidationError(PermanentError):
    """Bad input (unknown grid config, malformed request)."""

    pass


class NotFoundError(PermanentError):
    """Requested job or image does not exist."""

    pass


class AccessDeniedError(PermanentError):
    """Caller is neither the owner nor the originating session."""

    pass


class QuotaExceededError(PermanentError):
    """Anonymous session used up its free preview allowance."""

    code = "QUOTA_EXCEEDED"


class JobNotReadyError(PermanentError):
    """Result requested for a job that has not completed."""

    pass


class UnknownGridConfigError(ValidationError):
    """Grid config id is not in the catalog."""

    pass


class UnknownModelError(PermanentError):
    """Model has no configured rate limits."""

    pass


# Rate limiting
class RateLimitErrorCode(str, Enum):
    """Codes carried by RateLimitExceededError."""

    RPM_EXCEEDED = "RPM_EXCEEDED"
    TPM_EXCEEDED = "TPM_EXCEEDED"
    RPD_EXCEEDED = "RPD_EXCEEDED"
    ALL_MODELS_EXHAUSTED = "ALL_MODELS_EXHAUSTED"


class RateLimitExceededError(TransientError):
    """No configured model has capacity left in its current windows.

    ``code`` tells callers whether to retry soon (ALL_MODELS_EXHAUSTED,
    minute windows) or stop for the day (RPD_EXCEEDED).
    """

    def __init__(self, code: RateLimitErrorCode, message: str, model: str = "all"):
        super().__init__(message)
        self.code = code
        self.model = model


# Upstream generation
class UpstreamGenerationError(TransientError):
    """External image generation call failed or returned no image."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limit(self) -> bool:
        """True when the upstream signalled throttling (HTTP 429 / quota wording)."""
        return self.status_code == 429 or is_rate_limit_message(str(self))


# Collaborator failures
class StorageError(TransientError):
    """Object storage read/write failed."""

    pass


class JobStoreError(TransientError):
    """Job persistence failed."""

    pass


class RecoveryError(ServiceError):
    """Startup queue reconciliation failed (logged, never fatal)."""

    pass
