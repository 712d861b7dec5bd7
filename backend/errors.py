# backend/errors.py
"""
Error taxonomy for the generation pipeline.

Every failure that can end a job is a GenerationError carrying a stable
code, whether the queue may retry it, and a remediation hint for the user.
"""

from typing import Optional

from .model import ErrorDetail


class GenerationError(Exception):
    code: str = "GENERATION_FAILED"
    retryable: bool = False
    http_status: int = 500
    suggested_fix: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        suggested_fix: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        if suggested_fix is not None:
            self.suggested_fix = suggested_fix

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            suggested_fix=self.suggested_fix,
        )


class InvalidInput(GenerationError):
    code = "INVALID_INPUT"
    http_status = 400
    suggested_fix = "Check the sketch image and prompt"


class InvalidRequest(GenerationError):
    code = "INVALID_REQUEST"
    http_status = 422


class RateLimited(GenerationError):
    code = "RATE_LIMITED"
    retryable = True
    http_status = 429
    suggested_fix = "Wait a moment and try again"

    def __init__(self, message: str, *, retry_after: float = 60.0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderUnavailable(GenerationError):
    code = "PROVIDER_UNAVAILABLE"
    retryable = True
    http_status = 503
    suggested_fix = "Try again later or choose another provider"


class GenerationTimeout(GenerationError):
    code = "TIMEOUT"
    retryable = True
    http_status = 504
    suggested_fix = "Try again, or lower the step count"


class NoProviderAvailable(GenerationError):
    code = "NO_PROVIDER_AVAILABLE"
    http_status = 503
    suggested_fix = "Configure a provider or wait for one to come back online"


class CacheUnavailable(GenerationError):
    code = "CACHE_UNAVAILABLE"
    http_status = 503


class StoreUnavailable(GenerationError):
    code = "STORE_UNAVAILABLE"
    http_status = 503


class QueueFull(GenerationError):
    code = "QUEUE_FULL"
    retryable = True
    http_status = 429
    suggested_fix = "The queue is at capacity, submit again shortly"


class JobNotFound(GenerationError):
    code = "JOB_NOT_FOUND"
    http_status = 404


class ProviderNotFound(GenerationError):
    code = "PROVIDER_NOT_FOUND"
    http_status = 404


class InvalidTransition(GenerationError):
    code = "INVALID_TRANSITION"
    http_status = 409


class JobStalled(GenerationError):
    code = "STALLED"
    suggested_fix = "Submit the request again"


class InternalError(GenerationError):
    code = "INTERNAL_ERROR"


class ConfigError(Exception):
    """Raised when a provider configuration cannot be registered."""
