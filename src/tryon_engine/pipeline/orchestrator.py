from __future__ import annotations

import asyncio
import base64
import logging
import random
from typing import Any, Callable, List

from ..clients.background import BackgroundRemovalClient
from ..clients.provider import TryOnProviderClient
from ..clients.scoring import QualityScoringClient
from ..clock import Clock, SystemClock
from ..config import EngineConfig
from ..errors import (
    JobFailedError,
    MissingImageError,
    ProviderRateLimitedError,
    TryOnError,
    TryOnTimeoutError,
)
from ..types import (
    FailureCategory,
    ImageInput,
    ImageKind,
    JobHandle,
    JobStatus,
    TryOnDiagnostics,
    TryOnOptions,
    TryOnRequest,
    TryOnResult,
)
from .garment import GarmentAnalyzer, build_hint, detect_photo_type
from .gate import GateState, RequestGate, Ticket
from .poller import JobPoller
from .preprocess import BackgroundRemover, ImagePreprocessor
from .selector import QualityScorer, SampleSelector, validate_result_image
from .submitter import TryOnProvider, TryOnSubmitter

logger = logging.getLogger(__name__)

_SEED_SPACE = 2**32


class TryOnOrchestrator:
    """
    Runs one virtual try-on end to end.

    Only a missing avatar or garment raises. Every other failure (gate
    rejection, corrupt input, provider errors, job failure, timeout or an
    unusable result) produces ``TryOnResult(fallback_used=True)`` carrying
    the original avatar so callers always have something to display.

    ``gate_state`` is process-wide: pass the same instance to every
    orchestrator that shares a provider account.
    """

    def __init__(
        self,
        config: EngineConfig,
        gate_state: GateState,
        *,
        provider: TryOnProvider | None = None,
        scorer: QualityScorer | None = None,
        background_remover: BackgroundRemover | None = None,
        clock: Clock | None = None,
        jitter: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._owned: List[Any] = []

        if provider is None:
            provider = TryOnProviderClient(config.provider)
            self._owned.append(provider)
        if scorer is None and config.enable_quality_scoring and config.scoring is not None:
            scorer = QualityScoringClient(config.scoring)
            self._owned.append(scorer)
        if (
            background_remover is None
            and config.enable_background_removal
            and config.background_removal is not None
        ):
            background_remover = BackgroundRemovalClient(config.background_removal)
            self._owned.append(background_remover)

        self._gate = RequestGate(config.gate, gate_state, clock=self._clock, jitter=jitter)
        self._preprocessor = ImagePreprocessor(
            config.preprocess,
            jpeg_format_token=config.provider.jpeg_format_token,
            background_remover=background_remover,
        )
        self._analyzer = GarmentAnalyzer()
        self._submitter = TryOnSubmitter(provider, config.provider, clock=self._clock)
        self._poller = JobPoller(provider, config.polling, clock=self._clock)
        neutral = config.scoring.neutral_score if config.scoring is not None else 50.0
        self._selector = SampleSelector(scorer, neutral_score=neutral)

    @property
    def gate(self) -> RequestGate:
        return self._gate

    @property
    def analyzer(self) -> GarmentAnalyzer:
        return self._analyzer

    async def close(self) -> None:
        for client in self._owned:
            await client.close()
        self._owned.clear()

    async def __aenter__(self) -> "TryOnOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()

    async def try_on(
        self,
        avatar: ImageInput | None,
        garment: ImageInput | None,
        options: TryOnOptions | None = None,
    ) -> TryOnResult:
        """
        Run one try-on within ``options.timeout_ms`` (default: the polling budget).

        The budget covers the whole operation, from waiting for admission to
        validating the result; running out of it yields the ``timeout`` fallback.
        """
        if not avatar:
            raise MissingImageError("An avatar image is required for try-on")
        if not garment:
            raise MissingImageError("A garment image is required for try-on")

        options = options or TryOnOptions()
        diagnostics = TryOnDiagnostics()
        started = self._clock.monotonic()
        budget_ms = options.timeout_ms if options.timeout_ms is not None else self._config.polling.max_poll_budget_ms
        deadline = started + budget_ms / 1000.0

        try:
            image_url = await asyncio.wait_for(
                self._attempt(avatar, garment, options, diagnostics, deadline),
                timeout=budget_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            diagnostics.status = JobStatus.TIMED_OUT.value
            return self._fallback(
                avatar,
                diagnostics,
                started,
                f"Try-on did not finish within {budget_ms / 1000.0:.1f}s",
                TryOnTimeoutError.kind,
            )
        except JobFailedError as exc:
            diagnostics.failure_category = exc.category.value
            return self._fallback(avatar, diagnostics, started, str(exc), exc.kind)
        except ProviderRateLimitedError as exc:
            diagnostics.retry_after_seconds = exc.retry_after
            return self._fallback(avatar, diagnostics, started, str(exc), exc.kind)
        except TryOnError as exc:
            return self._fallback(avatar, diagnostics, started, str(exc), exc.kind)

        diagnostics.processing_time_ms = self._elapsed_ms(started)
        logger.info("🎉 Try-on completed in %.1fs", diagnostics.processing_time_ms / 1000.0)
        return TryOnResult(success=True, image_url=image_url, fallback_used=False, diagnostics=diagnostics)

    async def _attempt(
        self,
        avatar: ImageInput,
        garment: ImageInput,
        options: TryOnOptions,
        diagnostics: TryOnDiagnostics,
        deadline: float,
    ) -> str:
        async with self._gate.admit() as ticket:
            handle = await self._generate(ticket, avatar, garment, options, diagnostics, deadline)

            if handle.status is JobStatus.TIMED_OUT:
                raise TryOnTimeoutError(handle.error or "Try-on timed out")
            if handle.status is JobStatus.FAILED:
                raise JobFailedError(
                    handle.error or "Provider reported a failure",
                    handle.failure_category or FailureCategory.UNKNOWN,
                )

            ticket.record_success()
            best = await self._selector.select_best(handle.outputs)
            diagnostics.sample_scores = [
                {"index": c.index, "score": c.score, "reasoning": c.reasoning}
                for c in self._selector.last_scores
            ]
            return validate_result_image(best)

    async def _generate(
        self,
        ticket: Ticket,
        avatar: ImageInput,
        garment: ImageInput,
        options: TryOnOptions,
        diagnostics: TryOnDiagnostics,
        deadline: float,
    ) -> JobHandle:
        hint = build_hint(options.garment_description, options.garment_type, garment)
        profile = self._analyzer.classify(hint)
        diagnostics.category = profile.category
        diagnostics.fitting_type = profile.fitting_type
        logger.info(
            "🧵 Garment: %s / %s / %s (segmentation_free=%s)",
            profile.category,
            profile.fitting_type,
            profile.complexity,
            profile.skip_segmentation,
        )

        avatar_image, garment_image = await asyncio.gather(
            self._preprocessor.process(avatar, ImageKind.AVATAR),
            self._preprocessor.process(garment, ImageKind.GARMENT),
        )
        diagnostics.avatar_modifications = list(avatar_image.modifications_applied)
        diagnostics.garment_modifications = list(garment_image.modifications_applied)

        provider_config = self._config.provider
        request = TryOnRequest(
            avatar_image=avatar_image.as_data_url(),
            garment_image=garment_image.as_data_url(),
            category=profile.category,
            fitting_type=profile.fitting_type,
            complexity=profile.complexity,
            skip_segmentation=profile.skip_segmentation,
            sample_count=max(1, min(4, options.sample_count or provider_config.num_samples)),
            seed=options.seed if options.seed is not None else self._rng.randrange(_SEED_SPACE),
            output_format=options.output_format or provider_config.output_format,
            mode=provider_config.mode,
            photo_type=detect_photo_type(
                garment if isinstance(garment, str) else None,
                options.source,
                options.photo_type,
            ),
        )

        try:
            handle = await self._submitter.submit(request)
        except ProviderRateLimitedError:
            ticket.record_rate_limited()
            raise
        diagnostics.attempts = handle.submit_attempts
        diagnostics.job_id = handle.id

        remaining_ms = max(0, int((deadline - self._clock.monotonic()) * 1000))
        handle = await self._poller.poll(handle, remaining_ms)
        diagnostics.status = handle.status.value
        return handle

    def _fallback(
        self,
        avatar: ImageInput,
        diagnostics: TryOnDiagnostics,
        started: float,
        message: str,
        kind: str,
    ) -> TryOnResult:
        diagnostics.error = message
        diagnostics.error_kind = kind
        diagnostics.processing_time_ms = self._elapsed_ms(started)
        logger.warning("↩️  Falling back to the original avatar (%s): %s", kind, message)
        return TryOnResult(
            success=True,
            image_url=avatar_reference(avatar),
            fallback_used=True,
            diagnostics=diagnostics,
        )

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock.monotonic() - started) * 1000))


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def avatar_reference(avatar: ImageInput) -> str:
    """Return the original avatar in a form callers can display."""
    if isinstance(avatar, str):
        return avatar
    data = bytes(avatar)
    return f"data:{_sniff_mime(data)};base64,{base64.b64encode(data).decode('utf-8')}"
