from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from ..config import ProviderConfig
from ..errors import (
    ProviderError,
    ProviderRateLimitedError,
    ProviderValidationError,
    TransientProviderError,
)


class TryOnProviderClient:
    """Client for the try-on provider's ``/run`` and ``/status/{id}`` endpoints."""

    def __init__(self, config: ProviderConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        url = httpx.URL(config.api_url)
        self._base_path = (url.path or "").rstrip("/")

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._session = httpx.AsyncClient(
            base_url=str(url.copy_with(path="/", query=None, fragment=None)),
            headers=headers,
            timeout=httpx.Timeout(config.request_timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        await self._session.aclose()

    async def run(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a try-on job. Returns either ``{output: [...]}`` or ``{id, status}``."""
        return await self._request("POST", f"{self._base_path}/run", json=body)

    async def status(self, job_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"{self._base_path}/status/{job_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._session.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Provider request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Provider unreachable: {exc}") from exc
        except httpx.RequestError as exc:
            # Undecodable bodies, redirect loops and other request-level failures.
            raise TransientProviderError(f"Provider request failed: {exc!r}") from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise _map_status_error(exc.response) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientProviderError(
                f"Provider returned a non-JSON body ({response.status_code})",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise TransientProviderError(
                f"Provider returned an unexpected payload type: {type(data).__name__}",
                status_code=response.status_code,
            )
        return data

    async def __aenter__(self) -> "TryOnProviderClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()


def _map_status_error(response: httpx.Response) -> ProviderError:
    status = response.status_code
    detail = _error_detail(response)

    if status == 429:
        return ProviderRateLimitedError(
            f"Provider rate limit reached (429).{detail}",
            retry_after=_retry_after(response),
        )
    if status >= 500:
        return TransientProviderError(
            f"Provider temporarily unavailable ({status}).{detail}", status_code=status
        )
    if status == 401 or status == 403:
        return ProviderValidationError(
            f"Provider authentication failed ({status}); check the API key.{detail}",
            status_code=status,
        )
    return ProviderValidationError(
        f"Provider rejected the request ({status}).{detail}", status_code=status
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return f" Body: {text[:300]}" if text else ""
    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message") or payload.get("detail")
        if isinstance(message, dict):
            message = message.get("message") or message.get("detail")
        if message:
            return f" Provider message: {str(message)[:300]}"
    return ""


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
