from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
from typing import List, Optional, Protocol, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from ..errors import InvalidResultError
from ..types import SampleCandidate

logger = logging.getLogger(__name__)


class QualityScorer(Protocol):
    async def score(self, image_url: str) -> Tuple[float, str]:
        ...


class SampleSelector:
    """Picks the best of several provider samples using an external quality scorer."""

    def __init__(self, scorer: QualityScorer | None = None, *, neutral_score: float = 50.0) -> None:
        self._scorer = scorer
        self._neutral_score = neutral_score
        self.last_scores: List[SampleCandidate] = []

    async def score_candidates(self, urls: Sequence[str]) -> Tuple[List[SampleCandidate], int]:
        """Score every URL concurrently. Returns the candidates and how many calls failed."""
        assert self._scorer is not None
        results = await asyncio.gather(*(self._scorer.score(url) for url in urls), return_exceptions=True)

        candidates: List[SampleCandidate] = []
        failures = 0
        for index, (url, result) in enumerate(zip(urls, results)):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures += 1
                logger.warning("⚠️  Scoring sample %d failed (%s); using neutral score", index + 1, result)
                candidates.append(
                    SampleCandidate(
                        url=url,
                        score=self._neutral_score,
                        reasoning=f"scoring failed: {result}",
                        index=index,
                    )
                )
            else:
                score, reasoning = result
                candidates.append(SampleCandidate(url=url, score=score, reasoning=reasoning, index=index))
        return candidates, failures

    async def select_best(self, urls: Sequence[str]) -> str:
        if not urls:
            raise InvalidResultError("No candidate images to select from")
        self.last_scores = []
        if len(urls) == 1:
            return urls[0]
        if self._scorer is None:
            logger.info("🎯 No quality scorer configured; using the first of %d samples", len(urls))
            return urls[0]

        logger.info("🎯 Scoring %d samples", len(urls))
        candidates, failures = await self.score_candidates(urls)
        self.last_scores = candidates
        if failures == len(urls):
            logger.warning("⚠️  All scoring calls failed; using the first sample")
            return urls[0]

        # sorted() is stable: equal scores keep provider order.
        ranked = sorted(candidates, key=lambda candidate: candidate.score, reverse=True)
        best = ranked[0]
        logger.info("🏆 Selected sample %d (score %.0f): %s", best.index + 1, best.score, best.reasoning)
        return best.url


def validate_result_image(url: Optional[str]) -> str:
    """
    Check that a provider image reference can be shown to the user.

    Accepts http(s) URLs and ``data:image/...;base64`` payloads that decode
    to an image. Raises :class:`InvalidResultError` otherwise.
    """
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidResultError("Provider returned an empty image reference")
    value = url.strip()
    if value.lower().startswith(("http://", "https://")):
        return value
    if value.lower().startswith("data:image/") and "," in value:
        header, encoded = value.split(",", 1)
        if ";base64" not in header.lower():
            raise InvalidResultError("Data URL result is not base64 encoded")
        try:
            data = base64.b64decode(encoded, validate=True)
            with Image.open(io.BytesIO(data)) as image:
                image.verify()
        except (binascii.Error, ValueError, UnidentifiedImageError, OSError, SyntaxError) as exc:
            raise InvalidResultError(f"Data URL result is not a decodable image: {exc}") from exc
        return value
    raise InvalidResultError(f"Unsupported image reference: {value[:60]}")
