from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class ProviderConfig(BaseModel):
    """Settings required to reach the try-on inference provider."""

    api_url: str = Field(
        default="https://api.fashn.ai/v1",
        description="Base URL exposing the /run and /status/{id} endpoints",
    )
    api_key: str | None = Field(default=None, description="Bearer token for the provider")
    model_name: str = Field(default="tryon-v1.6", description="Provider model identifier")
    mode: Literal["performance", "balanced", "quality"] = Field(
        default="quality",
        description="Provider speed/quality trade-off",
    )
    num_samples: int = Field(
        default=4,
        ge=1,
        le=4,
        description="Candidate images requested per job",
    )
    output_format: Literal["png", "jpeg"] = Field(
        default="png",
        description="Encoding the provider uses for generated images",
    )
    jpeg_format_token: str = Field(
        default="jpg",
        description="Literal MIME subtype the provider accepts for JPEG data URLs",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        ge=1.0,
        le=600.0,
        description="HTTP timeout applied to every provider call",
    )
    submit_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a submission that fails with a transient error",
    )


class PollingConfig(BaseModel):
    """Job polling cadence and budget."""

    poll_interval_ms: int = Field(default=2000, ge=10, le=60000)
    max_poll_budget_ms: int = Field(default=90000, ge=100, le=900000)
    max_poll_backoff_ms: int = Field(
        default=10000,
        ge=10,
        le=120000,
        description="Cap applied to the backoff after failed status checks",
    )


class GateConfig(BaseModel):
    """Admission control: progressive backoff and circuit breaker."""

    min_request_interval_ms: int = Field(
        default=10000,
        ge=0,
        description="Base unit of the exponential backoff applied after rate-limit responses",
    )
    max_backoff_ms: int = Field(default=120000, ge=0)
    circuit_breaker_threshold: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Consecutive rate-limit responses before the circuit opens",
    )
    circuit_breaker_base_ms: int = Field(default=30000, ge=0)
    max_circuit_breaker_ms: int = Field(default=300000, ge=0)


class PreprocessConfig(BaseModel):
    """Image preparation limits."""

    max_avatar_bytes: int = Field(default=3 * 1024 * 1024, ge=1024)
    max_garment_bytes: int = Field(default=8 * 1024 * 1024, ge=1024)
    garment_max_edge: int = Field(default=2048, ge=64, le=8192)
    avatar_target_width: int = Field(default=1024, ge=64, le=8192)
    avatar_target_height: int = Field(default=1365, ge=64, le=8192)
    quality_ladder: List[int] = Field(
        default_factory=lambda: [95, 90, 85, 80, 75, 70, 65, 60],
        description="Descending JPEG qualities tried until the byte budget is met",
    )
    background_min_score: float = Field(
        default=40.0,
        ge=0.0,
        le=100.0,
        description="Minimum cleanliness score for accepting a background-removed garment",
    )
    avatar_contrast: float = Field(
        default=1.15,
        ge=0.5,
        le=2.0,
        description="Contrast factor applied to avatars before upload; 1.0 disables the stage",
    )

    @field_validator("quality_ladder")
    @classmethod
    def _validate_ladder(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("quality_ladder must not be empty")
        if any(q < 1 or q > 100 for q in value):
            raise ValueError("quality_ladder entries must lie in 1..100")
        return sorted(set(value), reverse=True)


class ScoringConfig(BaseModel):
    """Secondary image-quality scoring service."""

    url: str | None = Field(default=None, description="Endpoint accepting {image_url}")
    api_key: str | None = None
    neutral_score: float = Field(
        default=50.0,
        ge=0.0,
        le=100.0,
        description="Score assigned to a candidate whose scoring call failed",
    )
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)


class BackgroundRemovalConfig(BaseModel):
    """External background-removal capability."""

    url: str = Field(..., description="Endpoint accepting {image: data-url}")
    api_key: str | None = None
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)


class EngineConfig(BaseModel):
    """Top-level configuration consumed by the orchestrator."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    preprocess: PreprocessConfig = Field(default_factory=PreprocessConfig)
    scoring: ScoringConfig | None = None
    background_removal: BackgroundRemovalConfig | None = None
    enable_quality_scoring: bool = Field(
        default=False,
        description="Score multiple provider samples before picking one",
    )
    enable_background_removal: bool = Field(
        default=False,
        description="Attempt background isolation on garment images",
    )

    @model_validator(mode="after")
    def _validate_services(self) -> "EngineConfig":
        if self.enable_quality_scoring and (self.scoring is None or not self.scoring.url):
            raise ValueError("Scoring URL is required when enable_quality_scoring is True")
        if self.enable_background_removal and self.background_removal is None:
            raise ValueError(
                "Background removal configuration is required when enable_background_removal is True"
            )
        return self


def _bool_from_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _float_from_env(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value: {value}") from exc


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value: {value}") from exc


def load_config(dotenv_path: str | Path | None = None) -> EngineConfig:
    """
    Load configuration from environment variables (optionally seeded by a .env file).

    Parameters
    ----------
    dotenv_path:
        Optional override for the .env file location. Defaults to ``.env`` in the
        working directory.

    Raises
    ------
    RuntimeError
        If values are malformed or required service settings are missing.
    """
    env_path = Path(dotenv_path) if dotenv_path else Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    enable_scoring = _bool_from_env(os.getenv("ENABLE_QUALITY_SCORING"), False)
    enable_background = _bool_from_env(os.getenv("ENABLE_BACKGROUND_REMOVAL"), False)

    scoring_data: dict[str, object] | None
    if enable_scoring or os.getenv("QUALITY_SCORING_URL"):
        scoring_data = {
            "url": os.getenv("QUALITY_SCORING_URL"),
            "api_key": os.getenv("QUALITY_SCORING_API_KEY"),
            "neutral_score": _float_from_env(os.getenv("QUALITY_SCORING_NEUTRAL_SCORE"), 50.0),
        }
    else:
        scoring_data = None

    background_data: dict[str, object] | None
    if enable_background:
        background_data = {
            "url": os.getenv("BACKGROUND_REMOVAL_URL"),
            "api_key": os.getenv("BACKGROUND_REMOVAL_API_KEY"),
        }
    else:
        background_data = None

    data = {
        "provider": {
            "api_url": os.getenv("TRYON_API_URL", "https://api.fashn.ai/v1"),
            "api_key": os.getenv("TRYON_API_KEY"),
            "model_name": os.getenv("TRYON_MODEL_NAME", "tryon-v1.6"),
            "mode": os.getenv("TRYON_MODE", "quality"),
            "num_samples": _int_from_env(os.getenv("TRYON_NUM_SAMPLES"), 4),
            "output_format": os.getenv("TRYON_OUTPUT_FORMAT", "png"),
            "jpeg_format_token": os.getenv("TRYON_JPEG_FORMAT_TOKEN", "jpg"),
            "request_timeout_seconds": _float_from_env(os.getenv("TRYON_REQUEST_TIMEOUT"), 60.0),
            "submit_attempts": _int_from_env(os.getenv("TRYON_SUBMIT_ATTEMPTS"), 3),
        },
        "polling": {
            "poll_interval_ms": _int_from_env(os.getenv("TRYON_POLL_INTERVAL_MS"), 2000),
            "max_poll_budget_ms": _int_from_env(os.getenv("TRYON_MAX_POLL_BUDGET_MS"), 90000),
            "max_poll_backoff_ms": _int_from_env(os.getenv("TRYON_MAX_POLL_BACKOFF_MS"), 10000),
        },
        "gate": {
            "min_request_interval_ms": _int_from_env(
                os.getenv("TRYON_MIN_REQUEST_INTERVAL_MS"), 10000
            ),
            "max_backoff_ms": _int_from_env(os.getenv("TRYON_MAX_BACKOFF_MS"), 120000),
            "circuit_breaker_threshold": _int_from_env(
                os.getenv("TRYON_CIRCUIT_BREAKER_THRESHOLD"), 3
            ),
            "circuit_breaker_base_ms": _int_from_env(
                os.getenv("TRYON_CIRCUIT_BREAKER_BASE_MS"), 30000
            ),
            "max_circuit_breaker_ms": _int_from_env(
                os.getenv("TRYON_MAX_CIRCUIT_BREAKER_MS"), 300000
            ),
        },
        "preprocess": {
            "max_avatar_bytes": _int_from_env(os.getenv("TRYON_MAX_AVATAR_BYTES"), 3 * 1024 * 1024),
            "max_garment_bytes": _int_from_env(
                os.getenv("TRYON_MAX_GARMENT_BYTES"), 8 * 1024 * 1024
            ),
            "background_min_score": _float_from_env(
                os.getenv("TRYON_BACKGROUND_MIN_SCORE"), 40.0
            ),
            "avatar_contrast": _float_from_env(os.getenv("TRYON_AVATAR_CONTRAST"), 1.15),
        },
        "scoring": scoring_data,
        "background_removal": background_data,
        "enable_quality_scoring": enable_scoring,
        "enable_background_removal": enable_background,
    }

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as exc:
        invalid = {"/".join(str(part) for part in err["loc"]) or err["msg"] for err in exc.errors()}
        invalid_str = ", ".join(sorted(invalid))
        raise RuntimeError(f"Invalid or missing configuration values: {invalid_str}") from exc
