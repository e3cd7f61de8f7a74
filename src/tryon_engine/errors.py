from __future__ import annotations

import math
from typing import Optional

from .types import FailureCategory


class TryOnError(Exception):
    """Base class for every error raised by the engine."""

    kind = "error"


class MissingImageError(TryOnError, ValueError):
    """An avatar or garment image was not supplied."""

    kind = "missing_image"


class ImageDecodeError(TryOnError):
    """Input bytes are empty or cannot be parsed as an image."""

    kind = "image_decode"


class ProviderError(TryOnError):
    kind = "provider"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """5xx responses and transport failures; safe to retry."""

    kind = "transient"


class ProviderRateLimitedError(ProviderError):
    """The provider answered 429."""

    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ProviderValidationError(ProviderError):
    """Non-retryable 4xx: malformed image, unsupported format or category."""

    kind = "validation"


class GateRejectedError(TryOnError):
    """Admission denied before the provider was contacted."""

    kind = "gate_rejected"


class CircuitOpenError(GateRejectedError):
    kind = "circuit_open"

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Try-on temporarily paused after repeated rate limits; retry in {_format_wait(remaining_seconds)}"
        )


class RateLimitedError(GateRejectedError):
    kind = "rate_limited"

    def __init__(self, wait_seconds: float) -> None:
        self.wait_seconds = wait_seconds
        super().__init__(
            f"Please wait {_format_wait(wait_seconds)} before requesting another try-on"
        )


class JobFailedError(TryOnError):
    """The provider reported the job as failed."""

    kind = "job_failed"

    def __init__(self, reason: str, category: FailureCategory = FailureCategory.UNKNOWN) -> None:
        super().__init__(reason)
        self.category = category


class TryOnTimeoutError(TryOnError):
    """The try-on did not finish within its time budget."""

    kind = "timeout"


class InvalidResultError(TryOnError):
    """The provider returned an image reference that cannot be displayed."""

    kind = "invalid_result"


def _format_wait(seconds: float) -> str:
    total = max(0, math.ceil(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"
