"""Service error hierarchy for the batch generation engine.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- ValidationError / NotFoundError / InvalidStateError: Caller mistakes, no side effects
- InsufficientCreditsError: Expected business condition (user must buy credits)
- InfrastructureError: Storage or network fault on our side (retry later)
- ProviderError: Classified failures of third-party generation APIs
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors.

    Attributes:
        error_kind: Stable machine-readable kind recorded on items and returned to clients
        code: Error code used in HTTP error bodies
        http_status: Status code used by the API exception handler
    """

    error_kind: str = "error"
    code: str = "ERROR"
    http_status: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ServiceError):
    """Bad input, rejected before any side effect."""

    error_kind = "validation"
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(ServiceError):
    """Requested job does not exist or is not visible to the caller."""

    error_kind = "not_found"
    code = "NOT_FOUND"
    http_status = 404


class InvalidStateError(ServiceError):
    """Illegal state transition request (e.g. starting a non-pending job)."""

    error_kind = "invalid_state"
    code = "INVALID_STATE"
    http_status = 409


class InsufficientCreditsError(ServiceError):
    """Account balance is lower than the requested reservation."""

    error_kind = "insufficient_credits"
    code = "INSUFFICIENT_CREDITS"
    http_status = 402

    def __init__(self, user_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient credits: requested {requested}, available {available}",
            details={"user_id": user_id, "requested": requested, "available": available},
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class InfrastructureError(ServiceError):
    """Storage or network fault on our side.

    Retried at the orchestrator level; fatal for the job once retries are exhausted.
    """

    error_kind = "infrastructure"
    code = "INFRASTRUCTURE_ERROR"
    http_status = 503


class ProviderError(ServiceError):
    """Base exception for classified generation provider failures."""

    error_kind = "provider"
    code = "PROVIDER_ERROR"
    http_status = 502
    retryable: bool = False


class TransientProviderError(ProviderError):
    """Transient failure that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """

    error_kind = "transient"
    retryable = True


class PermanentProviderError(ProviderError):
    """Permanent failure that will not succeed on retry.

    Examples:
    - Invalid prompt or parameters (400, 422)
    - Content policy violations
    - Authentication failures (401, 403)
    """

    error_kind = "permanent"


class QuotaExceededError(ProviderError):
    """Provider account exhausted (billing or quota). Needs operator attention."""

    error_kind = "quota"
