"""
Best-effort preparation of avatar and garment images for the provider.

The stages run in order. Each stage either succeeds and appends a marker to
``modifications_applied`` or fails, appends ``<stage>_failed`` and hands the
previous stage's output to the next one. Only input that cannot be decoded
at all raises :class:`~tryon_engine.errors.ImageDecodeError`.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

import numpy as np
from PIL import Image, ImageEnhance, ImageOps, UnidentifiedImageError

from ..config import PreprocessConfig
from ..errors import ImageDecodeError
from ..types import BackgroundOutcome, ImageInput, ImageKind, PreprocessedImage

logger = logging.getLogger(__name__)

LANCZOS = Image.Resampling.LANCZOS

_DATA_URL_PATTERN = re.compile(r"^data:image/([a-z0-9.+-]+);base64,(.*)$", re.IGNORECASE | re.DOTALL)
_EXIF_ORIENTATION = 0x0112
_TRANSPARENT_ALPHA = 16
_OPAQUE_ALPHA = 240


class BackgroundRemover(Protocol):
    async def remove_background(self, image_bytes: bytes) -> bytes:
        ...


@dataclass(slots=True)
class _Working:
    image: Image.Image
    raw: bytes
    original_size: Tuple[int, int]
    modifications: List[str] = field(default_factory=list)
    background: Optional[BackgroundOutcome] = None


def _has_alpha(image: Image.Image) -> bool:
    if image.mode in ("RGBA", "LA", "PA"):
        return True
    return image.mode == "P" and "transparency" in image.info


def _encode(image: Image.Image, fmt: str, **params: object) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def _flatten(image: Image.Image) -> Image.Image:
    """Composite onto white and return an RGB image suitable for JPEG."""
    if _has_alpha(image):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, (255, 255, 255))
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    return image if image.mode == "RGB" else image.convert("RGB")


def background_cleanliness(image: Image.Image) -> float:
    """
    Score 0-100 for how cleanly a cut-out isolates its subject.

    Sixty points reward a transparent border, forty reward a foreground that
    covers a plausible share of the frame; a large semi-transparent fringe
    costs twenty. Images without an alpha channel score zero.
    """
    if not _has_alpha(image):
        return 0.0
    alpha = np.asarray(image.convert("RGBA").getchannel("A"), dtype=np.uint8)
    if alpha.size == 0:
        return 0.0

    border = np.concatenate([alpha[0, :], alpha[-1, :], alpha[:, 0], alpha[:, -1]])
    border_clear = float((border < _TRANSPARENT_ALPHA).mean())
    coverage = float((alpha >= _TRANSPARENT_ALPHA).mean())
    fringe = float(((alpha >= _TRANSPARENT_ALPHA) & (alpha < _OPAQUE_ALPHA)).mean())

    score = 60.0 * border_clear
    if 0.05 <= coverage <= 0.95:
        score += 40.0
    if fringe > 0.2:
        score -= 20.0
    return float(np.clip(score, 0.0, 100.0))


class ImagePreprocessor:
    """Turns raw avatar/garment input into a provider-ready :class:`PreprocessedImage`."""

    def __init__(
        self,
        config: PreprocessConfig,
        *,
        jpeg_format_token: str = "jpg",
        background_remover: BackgroundRemover | None = None,
    ) -> None:
        self._config = config
        self._jpeg_token = jpeg_format_token
        self._remover = background_remover

    def budget_for(self, kind: ImageKind) -> int:
        if kind is ImageKind.AVATAR:
            return self._config.max_avatar_bytes
        return self._config.max_garment_bytes

    async def process(self, raw: ImageInput, kind: ImageKind) -> PreprocessedImage:
        budget = self.budget_for(kind)

        if isinstance(raw, str) and raw.lower().startswith(("http://", "https://")):
            logger.info("🔗 %s is a remote URL; passing through unverified", kind.value)
            return PreprocessedImage(
                data=b"",
                format_token=self._token_from_url(raw),
                modifications_applied=["remote_url_unverified"],
                original_size=(0, 0),
                final_size=(0, 0),
                max_bytes=budget,
                source_url=raw,
            )

        data = _bytes_from_input(raw)
        working = await asyncio.to_thread(self._decode_and_orient, data)

        if kind is ImageKind.GARMENT and self._remover is not None:
            await self._isolate_background(working)

        result = await asyncio.to_thread(self._finish, working, kind, budget)
        logger.info(
            "🖼️  %s prepared: %dx%d -> %dx%d, %d KB [%s]",
            kind.value,
            *result.original_size,
            *result.final_size,
            result.size_bytes // 1024,
            ", ".join(result.modifications_applied),
        )
        return result

    # Stage 1
    def _decode_and_orient(self, data: bytes) -> _Working:
        image = _open_image(data)
        working = _Working(image=image, raw=data, original_size=image.size)
        try:
            orientation = image.getexif().get(_EXIF_ORIENTATION, 1)
            working.image = ImageOps.exif_transpose(image)
            working.modifications.append(
                "orientation_corrected" if orientation not in (None, 1) else "metadata_stripped"
            )
        except Exception as exc:  # noqa: BLE001 - best-effort stage
            logger.warning("⚠️  Orientation normalisation failed (%s); keeping pixels as decoded", exc)
            working.modifications.append("orientation_failed")
        return working

    # Stage 2
    async def _isolate_background(self, working: _Working) -> None:
        assert self._remover is not None
        try:
            payload = await asyncio.to_thread(_encode, working.image, "PNG")
            cutout_bytes = await self._remover.remove_background(payload)
            cutout = _open_image(cutout_bytes)
        except Exception as exc:  # noqa: BLE001 - best-effort stage
            logger.warning("⚠️  Background removal failed (%s); using original garment", exc)
            working.background = BackgroundOutcome.SKIPPED_ERROR
            working.modifications.append("background_removal_failed")
            return

        score = background_cleanliness(cutout)
        if score < self._config.background_min_score:
            logger.warning(
                "⚠️  Background removal scored %.0f (< %.0f); using original garment",
                score,
                self._config.background_min_score,
            )
            working.background = BackgroundOutcome.SKIPPED_LOW_QUALITY
            working.modifications.append("background_removal_rejected")
            return

        logger.info("✂️  Background removed (cleanliness %.0f)", score)
        working.image = cutout
        working.background = BackgroundOutcome.APPLIED
        working.modifications.append("background_removed")

    def _finish(self, working: _Working, kind: ImageKind, budget: int) -> PreprocessedImage:
        self._clamp_dimensions(working, kind)
        if kind is ImageKind.AVATAR:
            self._enhance_contrast(working)
        data, fmt = self._compress(working, budget)
        token = self._normalise_token(fmt, working)
        self._validate(data, working)
        return PreprocessedImage(
            data=data,
            format_token=token,
            modifications_applied=working.modifications,
            original_size=working.original_size,
            final_size=working.image.size,
            max_bytes=budget,
            background=working.background,
        )

    # Stage 3
    def _clamp_dimensions(self, working: _Working, kind: ImageKind) -> None:
        if kind is ImageKind.AVATAR:
            bounds = (self._config.avatar_target_width, self._config.avatar_target_height)
        else:
            edge = self._config.garment_max_edge
            bounds = (edge, edge)

        width, height = working.image.size
        if width <= bounds[0] and height <= bounds[1]:
            return
        try:
            if kind is ImageKind.AVATAR:
                # Cover the target box and centre-crop: avatars always leave at the target aspect.
                resized = ImageOps.fit(working.image, bounds, method=LANCZOS)
            else:
                resized = ImageOps.contain(working.image, bounds, method=LANCZOS)
        except Exception as exc:  # noqa: BLE001 - best-effort stage
            logger.warning("⚠️  Resize failed (%s); keeping %dx%d", exc, width, height)
            working.modifications.append("resize_failed")
            return
        working.image = resized
        working.modifications.append(f"resized_to_{resized.width}x{resized.height}")

    # Stage 3b, avatars only
    def _enhance_contrast(self, working: _Working) -> None:
        factor = self._config.avatar_contrast
        if factor == 1.0:
            return
        try:
            enhanced = ImageEnhance.Contrast(working.image).enhance(factor)
        except Exception as exc:  # noqa: BLE001 - best-effort stage
            logger.warning("⚠️  Contrast enhancement failed (%s); keeping original contrast", exc)
            working.modifications.append("contrast_failed")
            return
        working.image = enhanced
        working.modifications.append("contrast_enhanced")

    # Stage 4
    def _compress(self, working: _Working, budget: int) -> Tuple[bytes, str]:
        try:
            data, fmt = self._encode_within_budget(working.image, budget)
        except Exception as exc:  # noqa: BLE001 - best-effort stage
            logger.warning("⚠️  Compression failed (%s); sending decoded input bytes", exc)
            working.modifications.append("compression_failed")
            data = working.raw
            # The decoded input bytes carry none of the earlier stages.
            working.image = _open_image(data)
            fmt = (working.image.format or "png").lower()
        if len(data) > budget:
            logger.warning("⚠️  %d KB still exceeds the %d KB budget", len(data) // 1024, budget // 1024)
            working.modifications.append("over_byte_budget")
        working.modifications.append(f"compressed_to_{max(1, round(len(data) / 1024))}KB")
        return data, fmt

    def _encode_within_budget(self, image: Image.Image, budget: int) -> Tuple[bytes, str]:
        smallest: Optional[Tuple[bytes, str]] = None

        if _has_alpha(image):
            png = _encode(image.convert("RGBA"), "PNG", optimize=True)
            if len(png) <= budget:
                return png, "png"
            smallest = (png, "png")

        rgb = _flatten(image)
        for quality in self._config.quality_ladder:
            jpeg = _encode(rgb, "JPEG", quality=quality, optimize=True)
            if len(jpeg) <= budget:
                return jpeg, "jpeg"
            if smallest is None or len(jpeg) < len(smallest[0]):
                smallest = (jpeg, "jpeg")

        assert smallest is not None
        return smallest

    # Stage 5
    def _normalise_token(self, fmt: str, working: _Working) -> str:
        token = self._jpeg_token if fmt in ("jpeg", "jpg") else fmt
        working.modifications.append(f"format_token_{token}")
        return token

    # Stage 6
    @staticmethod
    def _validate(data: bytes, working: _Working) -> None:
        if not data:
            raise ImageDecodeError("Encoded image is empty")
        try:
            with Image.open(io.BytesIO(data)) as check:
                check.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
            raise ImageDecodeError(f"Encoded image failed validation: {exc}") from exc
        working.modifications.append("validated")

    def _token_from_url(self, url: str) -> str:
        path = url.split("?", 1)[0].lower()
        if path.endswith(".png"):
            return "png"
        if path.endswith(".webp"):
            return "webp"
        return self._jpeg_token


def _bytes_from_input(raw: ImageInput) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        if not raw:
            raise ImageDecodeError("Image input is empty")
        return bytes(raw)

    match = _DATA_URL_PATTERN.match(raw.strip())
    if match is None:
        raise ImageDecodeError("Image input is neither bytes, a data URL nor an http(s) URL")
    try:
        data = base64.b64decode("".join(match.group(2).split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError(f"Data URL payload is not valid base64: {exc}") from exc
    if not data:
        raise ImageDecodeError("Data URL payload is empty")
    return data


def _open_image(data: bytes) -> Image.Image:
    if not data:
        raise ImageDecodeError("Image data is empty")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"Could not decode image: {exc}") from exc
    return image
