from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..clock import Clock, SystemClock
from ..config import ProviderConfig
from ..errors import ProviderError, TransientProviderError
from ..types import FailureCategory, JobHandle, JobStatus, TryOnRequest

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "starting": JobStatus.QUEUED,
    "queued": JobStatus.QUEUED,
    "in_queue": JobStatus.QUEUED,
    "pending": JobStatus.QUEUED,
    "processing": JobStatus.PROCESSING,
    "in_progress": JobStatus.PROCESSING,
    "running": JobStatus.PROCESSING,
    "completed": JobStatus.COMPLETED,
    "succeeded": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.FAILED,
    "cancelled": JobStatus.FAILED,
}

# (category, trigger words, user-facing message); first match wins.
FAILURE_RULES: Tuple[Tuple[FailureCategory, Tuple[str, ...], str], ...] = (
    (
        FailureCategory.GARMENT_NOT_DETECTED,
        ("garment", "clothing"),
        "Unable to detect clothing in the uploaded image. Please upload a clear image of the garment.",
    ),
    (
        FailureCategory.POSE_NOT_DETECTED,
        ("pose",),
        "Unable to detect a body pose in the avatar image. The avatar needs a clear, full-body standing pose.",
    ),
    (
        FailureCategory.PERSON_NOT_DETECTED,
        ("person", "model"),
        "Unable to detect a person in the avatar image. Please make sure the avatar shows a full body view.",
    ),
    (
        FailureCategory.LOW_QUALITY,
        ("quality", "resolution"),
        "Image quality too low for processing. Please upload higher resolution images.",
    ),
)


class TryOnProvider(Protocol):
    async def run(self, body: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def status(self, job_id: str) -> Dict[str, Any]:
        ...


def normalize_status(raw: Any) -> Optional[JobStatus]:
    """Map a provider status string onto :class:`JobStatus`; unknown values give ``None``."""
    if not isinstance(raw, str):
        return None
    return _STATUS_MAP.get(raw.strip().lower())


def extract_outputs(payload: Dict[str, Any]) -> List[str]:
    output = payload.get("output")
    if isinstance(output, str) and output:
        return [output]
    if isinstance(output, list):
        return [item for item in output if isinstance(item, str) and item]
    # Legacy shape: {"result": {"image_url": ...}}
    result = payload.get("result")
    if isinstance(result, dict) and isinstance(result.get("image_url"), str) and result["image_url"]:
        return [result["image_url"]]
    return []


def extract_error(payload: Dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if isinstance(error, dict):
        for key in ("message", "error", "detail", "description"):
            value = error.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return json.dumps(error, sort_keys=True)
    return "Processing error occurred"


def normalize_failure(reason: str) -> Tuple[FailureCategory, str]:
    """Classify a provider failure reason and return a user-facing message."""
    lowered = reason.lower()
    for category, triggers, message in FAILURE_RULES:
        if any(trigger in lowered for trigger in triggers):
            return category, message
    return (
        FailureCategory.UNKNOWN,
        f"Processing failed: {reason}. Try a different garment image or regenerate the avatar.",
    )


def apply_payload(handle: JobHandle, payload: Dict[str, Any]) -> JobHandle:
    """Fold a ``/run`` or ``/status`` response into ``handle`` and return it."""
    status = normalize_status(payload.get("status"))
    outputs = extract_outputs(payload)

    if status is JobStatus.FAILED:
        reason = extract_error(payload)
        category, message = normalize_failure(reason)
        handle.status = JobStatus.FAILED
        handle.error = message
        handle.failure_category = category
        return handle

    if outputs and status in (None, JobStatus.COMPLETED):
        handle.status = JobStatus.COMPLETED
        handle.outputs = outputs
        return handle

    if status is JobStatus.COMPLETED:
        handle.status = JobStatus.FAILED
        handle.error = "Provider reported completion without any output image"
        handle.failure_category = FailureCategory.UNKNOWN
        return handle

    if status is not None:
        handle.status = status
    return handle


class TryOnSubmitter:
    """Builds the ``/run`` body and submits it, retrying transient failures."""

    def __init__(
        self,
        provider: TryOnProvider,
        config: ProviderConfig,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._clock = clock or SystemClock()

    def build_payload(self, request: TryOnRequest) -> Dict[str, Any]:
        return {
            "model_name": self._config.model_name,
            "inputs": {
                "model_image": request.avatar_image,
                "garment_image": request.garment_image,
                "category": request.category,
                "segmentation_free": request.skip_segmentation,
                "mode": request.mode,
                "seed": request.seed,
                "num_samples": max(1, min(4, request.sample_count)),
                "output_format": request.output_format,
                "garment_photo_type": request.photo_type,
            },
        }

    async def submit(self, request: TryOnRequest) -> JobHandle:
        """
        Submit ``request`` and return a handle in its first observed state.

        Raises
        ------
        TransientProviderError
            When every attempt failed with a retryable error.
        ProviderRateLimitedError, ProviderValidationError
            Immediately; neither is retried here.
        ProviderError
            When the response carries neither output nor a job id.
        """
        body = self.build_payload(request)
        attempts = 0
        logger.info(
            "🚀 Submitting try-on (category=%s, samples=%d, segmentation_free=%s)",
            request.category,
            body["inputs"]["num_samples"],
            request.skip_segmentation,
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.submit_attempts),
            wait=wait_exponential(multiplier=2, min=1, max=20),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._clock.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                attempts += 1
                payload = await self._provider.run(body)

        job_id = payload.get("id")
        handle = JobHandle(id=str(job_id) if job_id else None, submit_attempts=attempts)
        apply_payload(handle, payload)

        if handle.id is None and not handle.status.is_terminal:
            raise ProviderError("Provider response carried neither output nor a job id")
        if handle.status is JobStatus.COMPLETED:
            logger.info("⚡ Provider returned %d output(s) synchronously", len(handle.outputs))
        elif handle.status is JobStatus.FAILED:
            logger.warning("❌ Provider rejected job at submission: %s", handle.error)
        else:
            logger.info("📨 Job %s accepted (%s)", handle.id, handle.status.value)
        return handle


def _log_retry(retry_state: Any) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("🔁 Submit attempt %d failed (%s); retrying", retry_state.attempt_number, exc)
