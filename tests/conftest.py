# Test fixtures and fakes shared across the suite
import asyncio
import io
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pytest
from PIL import Image

from tryon_engine.config import EngineConfig, GateConfig, PollingConfig
from tryon_engine.pipeline.gate import GateState


class FakeClock:
    """Simulated time: ``sleep`` advances ``now`` instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.now += seconds


Scripted = Union[Dict[str, Any], Exception]


class FakeProvider:
    """Scripted stand-in for the provider client; records every call."""

    def __init__(
        self,
        run_responses: Sequence[Scripted] = (),
        status_responses: Sequence[Scripted] = (),
        *,
        default_status: Optional[Dict[str, Any]] = None,
        block: Optional[asyncio.Event] = None,
    ) -> None:
        self.run_responses = list(run_responses)
        self.status_responses = list(status_responses)
        self.default_status = default_status or {"status": "processing"}
        self.block = block
        self.run_calls: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []

    async def run(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.run_calls.append(body)
        if self.block is not None:
            await self.block.wait()
        item: Scripted = self.run_responses.pop(0) if self.run_responses else {"id": "job-1", "status": "queued"}
        if isinstance(item, Exception):
            raise item
        return item

    async def status(self, job_id: str) -> Dict[str, Any]:
        self.status_calls.append(job_id)
        item: Scripted = self.status_responses.pop(0) if self.status_responses else self.default_status
        if isinstance(item, Exception):
            raise item
        return item


class FakeScorer:
    """Scores URLs from a lookup table; table values may be exceptions."""

    def __init__(self, scores: Dict[str, Union[float, Exception]]) -> None:
        self.scores = scores
        self.calls: List[str] = []

    async def score(self, image_url: str):
        self.calls.append(image_url)
        value = self.scores[image_url]
        if isinstance(value, Exception):
            raise value
        return float(value), f"scored {image_url}"


class FakeRemover:
    def __init__(self, result: Union[bytes, Exception]) -> None:
        self.result = result
        self.calls = 0

    async def remove_background(self, image_bytes: bytes) -> bytes:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def make_image_bytes(
    size=(64, 64),
    *,
    mode: str = "RGB",
    fmt: str = "PNG",
    color=(200, 30, 30),
    **save_params: Any,
) -> bytes:
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_params)
    return buffer.getvalue()


def make_noise_bytes(size=(256, 256), seed: int = 7) -> bytes:
    """Random pixels compress badly, which makes byte budgets easy to exceed."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels, mode="RGB").save(buffer, format="PNG")
    return buffer.getvalue()


def make_cutout_bytes(size=(64, 64)) -> bytes:
    """Transparent canvas with an opaque square covering a quarter of it."""
    image = Image.new("RGBA", size, (0, 0, 0, 0))
    inner = Image.new("RGBA", (size[0] // 2, size[1] // 2), (10, 120, 200, 255))
    image.paste(inner, (size[0] // 4, size[1] // 4))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate_state():
    return GateState()


@pytest.fixture
def png_bytes():
    """Small valid RGB PNG."""
    return make_image_bytes((48, 64))


@pytest.fixture
def engine_config():
    """Engine settings with short, test-friendly gate and polling windows."""
    return EngineConfig(
        gate=GateConfig(min_request_interval_ms=1000, max_backoff_ms=60000),
        polling=PollingConfig(poll_interval_ms=2000, max_poll_budget_ms=90000),
    )
