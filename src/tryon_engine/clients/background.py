from __future__ import annotations

import base64
import binascii

import httpx

from ..config import BackgroundRemovalConfig
from ..errors import ProviderError, TransientProviderError


class BackgroundRemovalClient:
    """Client for the external background-removal capability."""

    def __init__(
        self,
        config: BackgroundRemovalConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._session = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        await self._session.aclose()

    async def remove_background(self, image_bytes: bytes) -> bytes:
        """Send a PNG and return the cut-out image bytes (expected PNG with alpha)."""
        encoded = base64.b64encode(image_bytes).decode("utf-8")
        body = {"image": f"data:image/png;base64,{encoded}"}
        try:
            response = await self._session.post(self._config.url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Background removal failed ({exc.response.status_code})",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(f"Background removal request failed: {exc!r}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Background removal returned a non-JSON body") from exc

        image_value = None
        if isinstance(payload, dict):
            image_value = payload.get("image") or payload.get("b64_json") or payload.get("image_base64")
        if not isinstance(image_value, str) or not image_value:
            raise ProviderError("Background removal response missing image data")

        if image_value.startswith("data:"):
            image_value = image_value.split(",", 1)[-1]
        try:
            return base64.b64decode(image_value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProviderError(f"Failed to decode background removal output: {exc}") from exc

    async def __aenter__(self) -> "BackgroundRemovalClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()
