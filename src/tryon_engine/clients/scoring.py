from __future__ import annotations

import re
from typing import Any, Dict, Tuple

import httpx

from ..config import ScoringConfig
from ..errors import ProviderError, TransientProviderError

_SCORE_PATTERN = re.compile(r"score:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_REASON_PATTERN = re.compile(r"reason(?:ing)?:\s*(.+)", re.IGNORECASE)


class QualityScoringClient:
    """Client for the secondary image-quality scoring service."""

    def __init__(self, config: ScoringConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not config.url:
            raise RuntimeError("Quality scoring client requires a URL")
        self._config = config
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._url = config.url
        self._session = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        await self._session.aclose()

    async def score(self, image_url: str) -> Tuple[float, str]:
        """Return ``(score, reasoning)`` with the score clamped to 0-100."""
        try:
            response = await self._session.post(self._url, json={"image_url": image_url})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Scoring service error ({exc.response.status_code})",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(f"Scoring request failed: {exc!r}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Scoring service returned a non-JSON body") from exc
        return self._parse(payload)

    @staticmethod
    def _parse(payload: Dict[str, Any]) -> Tuple[float, str]:
        if not isinstance(payload, dict):
            raise ProviderError(f"Unexpected scoring payload: {type(payload).__name__}")

        raw_score = payload.get("score")
        reasoning = str(payload.get("reasoning") or payload.get("reason") or "").strip()

        # Some scorers answer with free text ("Score: 87\nReason: ...").
        if raw_score is None and isinstance(payload.get("text"), str):
            text = payload["text"]
            score_match = _SCORE_PATTERN.search(text)
            reason_match = _REASON_PATTERN.search(text)
            raw_score = score_match.group(1) if score_match else None
            if not reasoning and reason_match:
                reasoning = reason_match.group(1).strip()

        if raw_score is None:
            raise ProviderError("Scoring response did not include a score")
        try:
            score = float(raw_score)
        except (TypeError, ValueError) as exc:
            raise ProviderError(f"Scoring response had a non-numeric score: {raw_score!r}") from exc
        return max(0.0, min(100.0, score)), reasoning or "no reasoning supplied"

    async def __aenter__(self) -> "QualityScoringClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()
