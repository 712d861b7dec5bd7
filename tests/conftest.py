import asyncio
import io
from typing import Iterable, List, Optional

import pytest
from PIL import Image, ImageDraw

from backend.broadcaster import ProgressBroadcaster
from backend.cache import CacheStore
from backend.errors import StoreUnavailable
from backend.invoker import ProviderInvoker
from backend.model import (
    GenerationParams,
    GenerationRequest,
    Priority,
    SketchData,
    StylePreset,
)
from backend.provider_clients import ProviderAdapter, ProviderOutput
from backend.registry import ProviderRegistry
from backend.store import MemoryStore
from backend.worker import GenerationQueueManager, RetryPolicy


def png_bytes(width: int = 64, height: int = 48, color=(255, 255, 255), line=(0, 0, 0)) -> bytes:
    img = Image.new("RGB", (width, height), color)
    draw = ImageDraw.Draw(img)
    draw.line((0, 0, width - 1, height - 1), fill=line, width=3)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_request(
    prompt: str = "a red house on a hill",
    sketch: Optional[bytes] = None,
    width: int = 64,
    height: int = 48,
    priority: Priority = Priority.NORMAL,
    provider: Optional[str] = None,
    style: Optional[StylePreset] = None,
    params: Optional[GenerationParams] = None,
    negative_prompt: Optional[str] = None,
    max_cost: Optional[float] = None,
    request_id: Optional[str] = None,
) -> GenerationRequest:
    kwargs = {}
    if request_id is not None:
        kwargs["id"] = request_id
    return GenerationRequest(
        sketch=SketchData(image=sketch or png_bytes(width, height), width=width, height=height),
        prompt=prompt,
        negative_prompt=negative_prompt,
        style_preset=style,
        params=params or GenerationParams(seed=42),
        provider=provider,
        priority=priority,
        max_cost=max_cost,
        **kwargs,
    )


class FakeAdapter(ProviderAdapter):
    """
    Scriptable provider. `errors` are raised one per call (None means
    succeed); `gate` holds every call until it is set.
    """

    def __init__(
        self,
        errors: Iterable[Optional[BaseException]] = (),
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
        healthy: bool = True,
    ) -> None:
        self.errors: List[Optional[BaseException]] = list(errors)
        self.delay = delay
        self.gate = gate
        self.healthy = healthy
        self.calls: List[str] = []
        self.prompts: List[str] = []
        self.closed = False

    async def generate(self, request, prompt):
        self.calls.append(request.id)
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return ProviderOutput(
            data=png_bytes(request.target_width, request.target_height, color=(10, 120, 200)),
            model="fake-model",
            width=request.target_width,
            height=request.target_height,
            parameters={"prompt": prompt},
        )

    async def probe(self):
        return self.healthy

    async def aclose(self):
        self.closed = True


class BrokenStore(MemoryStore):
    """A backing store whose server is gone."""

    async def get(self, key):
        raise StoreUnavailable("connection refused")

    async def set(self, key, value, ttl=None):
        raise StoreUnavailable("connection refused")


def fake_config(provider_id: str = "fake", **overrides) -> dict:
    config = {"type": "mock", "id": provider_id, "name": provider_id}
    config.update(overrides)
    return config


def build_registry(adapter: FakeAdapter, **config_overrides) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(fake_config(**config_overrides), adapter=adapter)
    return registry


def build_manager(
    adapter: FakeAdapter,
    *,
    store=None,
    cache: Optional[CacheStore] = None,
    retry_policy: RetryPolicy = RetryPolicy(max_attempts=3, backoff_seconds=0.01, max_backoff_seconds=0.05),
    provider_config: Optional[dict] = None,
    invoker_timeout: float = 5.0,
    **kwargs,
) -> GenerationQueueManager:
    registry = build_registry(adapter, **(provider_config or {}))
    cache = cache or CacheStore(MemoryStore(), capacity=50)
    return GenerationQueueManager(
        cache,
        registry,
        ProviderInvoker(registry, timeout=invoker_timeout),
        ProgressBroadcaster(),
        store=store,
        retry_policy=retry_policy,
        **kwargs,
    )


async def wait_for_state(manager: GenerationQueueManager, job_id: str, *states: str, timeout: float = 5.0):
    async def poll():
        while manager.status(job_id).state not in states:
            await asyncio.sleep(0.01)
        return manager.status(job_id)

    return await asyncio.wait_for(poll(), timeout)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def sketch_png() -> bytes:
    return png_bytes()
