from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

ImageInput = Union[bytes, str]

GarmentCategory = Literal["tops", "bottoms", "one-pieces", "auto"]
FittingType = Literal["fitted", "loose", "layered", "accessory"]
Complexity = Literal["simple", "moderate", "complex"]
PhotoType = Literal["flat-lay", "model", "auto"]


class ImageKind(str, Enum):
    AVATAR = "avatar"
    GARMENT = "garment"


class JobStatus(str, Enum):
    """Lifecycle of a provider job as seen by the client."""

    SUBMITTED = "submitted"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT}


class BackgroundOutcome(str, Enum):
    """Result of the optional background isolation stage."""

    APPLIED = "applied"
    SKIPPED_LOW_QUALITY = "skipped_low_quality"
    SKIPPED_ERROR = "skipped_error"


class FailureCategory(str, Enum):
    GARMENT_NOT_DETECTED = "garment_not_detected"
    POSE_NOT_DETECTED = "pose_not_detected"
    PERSON_NOT_DETECTED = "person_not_detected"
    LOW_QUALITY = "low_quality"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class GarmentProfile:
    """Provider parameters derived from a garment hint."""

    category: GarmentCategory
    fitting_type: FittingType
    complexity: Complexity
    skip_segmentation: bool


@dataclass(slots=True)
class PreprocessedImage:
    """Provider-ready asset plus the record of what was done to it."""

    data: bytes
    format_token: str
    modifications_applied: List[str]
    original_size: Tuple[int, int]
    final_size: Tuple[int, int]
    max_bytes: int
    background: Optional[BackgroundOutcome] = None
    source_url: Optional[str] = None

    DEGRADATION_MARKERS = ("over_byte_budget", "remote_url_unverified")

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def within_budget(self) -> bool:
        return self.source_url is None and self.size_bytes <= self.max_bytes

    @property
    def degraded(self) -> bool:
        return any(marker in self.modifications_applied for marker in self.DEGRADATION_MARKERS)

    def as_data_url(self) -> str:
        """Return the value sent to the provider (a remote URL or a base64 data URL)."""
        if self.source_url is not None:
            return self.source_url
        encoded = base64.b64encode(self.data).decode("utf-8")
        return f"data:image/{self.format_token};base64,{encoded}"


@dataclass(frozen=True, slots=True)
class TryOnRequest:
    """Immutable payload description for one provider submission."""

    avatar_image: str
    garment_image: str
    category: GarmentCategory
    fitting_type: FittingType
    complexity: Complexity
    skip_segmentation: bool
    sample_count: int
    seed: int
    output_format: str
    mode: str = "quality"
    photo_type: PhotoType = "auto"


@dataclass(slots=True)
class JobHandle:
    id: Optional[str]
    status: JobStatus = JobStatus.SUBMITTED
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failure_category: Optional[FailureCategory] = None
    submit_attempts: int = 1
    poll_count: int = 0


@dataclass(slots=True)
class SampleCandidate:
    url: str
    score: float
    reasoning: str
    index: int = 0


@dataclass(slots=True)
class TryOnOptions:
    """Caller-supplied hints for a single try-on."""

    garment_description: Optional[str] = None
    garment_type: Optional[str] = None
    source: Optional[str] = None
    photo_type: Optional[PhotoType] = None
    timeout_ms: Optional[int] = None
    seed: Optional[int] = None
    sample_count: Optional[int] = None
    output_format: Optional[str] = None


@dataclass(slots=True)
class TryOnDiagnostics:
    category: Optional[str] = None
    fitting_type: Optional[str] = None
    attempts: int = 0
    processing_time_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    failure_category: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    job_id: Optional[str] = None
    status: Optional[str] = None
    avatar_modifications: List[str] = field(default_factory=list)
    garment_modifications: List[str] = field(default_factory=list)
    sample_scores: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "category": self.category,
            "fitting_type": self.fitting_type,
            "attempts": self.attempts,
            "processing_time_ms": self.processing_time_ms,
            "job_id": self.job_id,
            "status": self.status,
            "avatar_modifications": list(self.avatar_modifications),
            "garment_modifications": list(self.garment_modifications),
            "sample_scores": list(self.sample_scores),
        }
        if self.error is not None:
            data["error"] = self.error
            data["error_kind"] = self.error_kind
        if self.failure_category is not None:
            data["failure_category"] = self.failure_category
        if self.retry_after_seconds is not None:
            data["retry_after_seconds"] = self.retry_after_seconds
        return data


@dataclass(slots=True)
class TryOnResult:
    """Outcome returned to callers; always carries a displayable image."""

    success: bool
    image_url: str
    fallback_used: bool
    diagnostics: TryOnDiagnostics = field(default_factory=TryOnDiagnostics)
