# backend/provider_clients.py
"""
Wire-level adapters, one per provider type.

Adapters only talk to their backend and return raw image bytes. Prompt
limits, rate limits, timeouts and error classification are handled by the
invoker, so adapters let httpx / aiohttp errors propagate.
"""

import asyncio
import base64
import hashlib
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp
import httpx
from PIL import Image, ImageFilter, ImageOps

from . import comfy_client
from .errors import ProviderUnavailable
from .model import (
    Capabilities,
    ComfyUIProviderConfig,
    GenerationRequest,
    MockProviderConfig,
    OpenAIProviderConfig,
    PollinationsProviderConfig,
    Pricing,
    RateLimits,
    ReplicateProviderConfig,
)
from .utils import negative_prompt_for
from .workflow_builder import build_sketch_workflow, workflow_seed

logger = logging.getLogger(__name__)


@dataclass
class ProviderOutput:
    data: bytes
    model: str
    format: str = "png"
    width: Optional[int] = None
    height: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None


class ProviderAdapter(ABC):
    provider_type: str = "custom"
    default_capabilities = Capabilities()
    default_pricing = Pricing()
    default_rate_limits = RateLimits()

    @abstractmethod
    async def generate(self, request: GenerationRequest, prompt: str) -> ProviderOutput:
        """Run one generation. `prompt` already includes the style modifier."""
        raise NotImplementedError

    async def probe(self) -> bool:
        """Cheap liveness check used by the registry's health checks."""
        return True

    async def aclose(self) -> None:
        pass


def _data_url(image: bytes, fmt: str = "png") -> str:
    return f"data:image/{fmt};base64,{base64.b64encode(image).decode('ascii')}"


class ComfyUIAdapter(ProviderAdapter):
    provider_type = "comfyui"
    default_capabilities = Capabilities(
        max_width=2048,
        max_height=2048,
        supported_formats=["png"],
        max_prompt_length=2000,
        supports_img2img=True,
        supports_inpainting=True,
    )
    default_rate_limits = RateLimits(requests_per_minute=60, requests_per_hour=3600, concurrent_requests=5)

    def __init__(self, config: ComfyUIProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float = 300) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def generate(self, request: GenerationRequest, prompt: str) -> ProviderOutput:
        params = request.params
        async with self._client() as client:
            sketch_name = await comfy_client.upload_sketch(client, self.base_url, request.sketch.image)
            workflow = build_sketch_workflow(
                prompt,
                sketch_name,
                width=request.target_width,
                height=request.target_height,
                steps=params.steps,
                guidance=params.guidance,
                strength=params.strength,
                seed=params.seed,
                negative_prompt=negative_prompt_for(request),
                checkpoint=self.config.checkpoint,
            )
            logger.info("Sending workflow to ComfyUI for request %s (%d nodes)", request.id, len(workflow))
            prompt_id = await comfy_client.send_workflow_to_comfy(
                client, self.base_url, workflow, client_id=request.id
            )
            history_item = await comfy_client.wait_for_result(
                client, self.base_url, prompt_id, poll_interval=self.config.poll_interval
            )
            img_info = comfy_client.extract_first_image_from_history(history_item)
            if not img_info:
                raise ProviderUnavailable("No output image in ComfyUI history", retryable=False)

            image_url = comfy_client.build_image_url(self.base_url, *img_info)
            data = await comfy_client.download_image(client, image_url)

        return ProviderOutput(
            data=data,
            model=self.config.checkpoint,
            width=request.target_width,
            height=request.target_height,
            parameters={
                "prompt": prompt,
                "steps": params.steps,
                "cfg": params.guidance,
                "denoise": params.strength,
                "seed": workflow_seed(workflow),
            },
            url=image_url,
        )

    async def probe(self) -> bool:
        async with self._client(timeout=10) as client:
            r = await client.get(f"{self.base_url}/system_stats")
            return r.status_code == 200


class ReplicateAdapter(ProviderAdapter):
    provider_type = "replicate"
    default_capabilities = Capabilities(
        max_width=1024,
        max_height=1024,
        supported_formats=["png", "jpg", "webp"],
        max_prompt_length=500,
        supports_img2img=True,
    )
    default_pricing = Pricing(cost_per_generation=0.0023)
    default_rate_limits = RateLimits(requests_per_minute=50, requests_per_hour=1000, concurrent_requests=10)

    def __init__(self, config: ReplicateProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float = 300) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.config.api_token}"},
        )

    async def generate(self, request: GenerationRequest, prompt: str) -> ProviderOutput:
        params = request.params
        model_input: Dict[str, Any] = {
            "prompt": prompt,
            "image": _data_url(request.sketch.image),
            "prompt_strength": params.strength,
            "num_inference_steps": params.steps,
            "guidance_scale": params.guidance,
            "width": request.target_width,
            "height": request.target_height,
        }
        if params.seed is not None:
            model_input["seed"] = params.seed
        negative = negative_prompt_for(request)
        if negative:
            model_input["negative_prompt"] = negative

        async with self._client() as client:
            r = await client.post(
                f"{self.base_url}/predictions",
                json={"version": self.config.model_version, "input": model_input},
            )
            r.raise_for_status()
            prediction = r.json()

            while prediction.get("status") not in ("succeeded", "failed", "canceled"):
                await asyncio.sleep(self.config.poll_interval)
                r = await client.get(prediction["urls"]["get"])
                r.raise_for_status()
                prediction = r.json()

            if prediction["status"] != "succeeded":
                raise ProviderUnavailable(
                    f"Replicate prediction {prediction.get('id')} {prediction['status']}: "
                    f"{prediction.get('error') or 'no detail'}"
                )

            output = prediction.get("output")
            image_url = output[0] if isinstance(output, list) else output
            if not image_url:
                raise ProviderUnavailable("Replicate returned no output", retryable=False)
            img = await client.get(image_url)
            img.raise_for_status()

        model_input.pop("image")
        return ProviderOutput(
            data=img.content,
            model=f"stability-ai/stable-diffusion:{self.config.model_version[:12]}",
            width=request.target_width,
            height=request.target_height,
            parameters=model_input,
            url=image_url,
        )

    async def probe(self) -> bool:
        async with self._client(timeout=10) as client:
            r = await client.get(f"{self.base_url}/account")
            return r.status_code == 200


class OpenAIAdapter(ProviderAdapter):
    """Text-to-image only; the sketch contributes through the prompt alone."""

    provider_type = "openai"
    default_capabilities = Capabilities(
        max_width=1792,
        max_height=1792,
        supported_formats=["png"],
        max_prompt_length=1000,
        supports_img2img=False,
    )
    default_pricing = Pricing(cost_per_generation=0.04)
    default_rate_limits = RateLimits(requests_per_minute=5, requests_per_hour=100, concurrent_requests=3)

    def __init__(self, config: OpenAIProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float = 300) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        if self.config.organization:
            headers["OpenAI-Organization"] = self.config.organization
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, headers=headers)

    @staticmethod
    def _size(width: int, height: int) -> str:
        if width > height * 1.2:
            return "1792x1024"
        if height > width * 1.2:
            return "1024x1792"
        return "1024x1024"

    async def generate(self, request: GenerationRequest, prompt: str) -> ProviderOutput:
        size = self._size(request.target_width, request.target_height)
        payload = {
            "model": self.config.model,
            "prompt": prompt,
            "n": 1,
            "size": size,
            "response_format": "b64_json",
        }
        async with self._client() as client:
            r = await client.post(f"{self.base_url}/images/generations", json=payload)
            r.raise_for_status()
            body = r.json()

        items = body.get("data") or []
        if not items or not items[0].get("b64_json"):
            raise ProviderUnavailable("No image returned from OpenAI", retryable=False)

        width, height = (int(v) for v in size.split("x"))
        parameters = {"prompt": prompt, "size": size}
        if items[0].get("revised_prompt"):
            parameters["revised_prompt"] = items[0]["revised_prompt"]
        return ProviderOutput(
            data=base64.b64decode(items[0]["b64_json"]),
            model=self.config.model,
            width=width,
            height=height,
            parameters=parameters,
        )

    async def probe(self) -> bool:
        async with self._client(timeout=10) as client:
            r = await client.get(f"{self.base_url}/models")
            return r.status_code == 200


class PollinationsAdapter(ProviderAdapter):
    provider_type = "pollinations"
    default_capabilities = Capabilities(
        max_width=1024,
        max_height=1024,
        supported_formats=["png", "jpg"],
        max_prompt_length=1000,
        supports_img2img=False,
    )
    default_pricing = Pricing(cost_per_generation=0.0, free_quota=1000)
    default_rate_limits = RateLimits(requests_per_minute=10, requests_per_hour=100, concurrent_requests=2)

    def __init__(self, config: PollinationsProviderConfig, request_timeout: float = 120.0) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.request_timeout = request_timeout

    async def generate(self, request: GenerationRequest, prompt: str) -> ProviderOutput:
        query: Dict[str, Any] = {
            "width": request.target_width,
            "height": request.target_height,
            "nologo": "true",
        }
        if request.params.seed is not None:
            query["seed"] = request.params.seed
        url = f"{self.base_url}/prompt/{quote(prompt, safe='')}"

        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, params=query) as resp:
                resp.raise_for_status()
                content_type = resp.headers.get("Content-Type", "image/jpeg")
                data = await resp.read()

        if len(data) < self.config.min_image_bytes:
            raise ProviderUnavailable(f"Pollinations returned only {len(data)} bytes")

        fmt = "png" if "png" in content_type else "jpeg"
        return ProviderOutput(
            data=data,
            model="pollinations",
            format=fmt,
            parameters={"prompt": prompt, **query},
            url=str(resp.url),
        )

    async def probe(self) -> bool:
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.base_url) as resp:
                return resp.status < 500


class MockAdapter(ProviderAdapter):
    """
    Offline generator: stylizes the sketch itself. Output depends only on
    the sketch, prompt and parameters.
    """

    provider_type = "mock"
    default_capabilities = Capabilities(
        max_width=2048,
        max_height=2048,
        supported_formats=["png"],
        max_prompt_length=2000,
        supports_img2img=True,
    )
    default_rate_limits = RateLimits(requests_per_minute=600, requests_per_hour=36000, concurrent_requests=10)

    def __init__(self, config: MockProviderConfig) -> None:
        self.config = config

    async def generate(self, request: GenerationRequest, prompt: str) -> ProviderOutput:
        if self.config.latency:
            await asyncio.sleep(self.config.latency)
        width, height = request.target_width, request.target_height
        data = await asyncio.to_thread(self._render, request.sketch.image, prompt, width, height, request.params.strength)
        return ProviderOutput(
            data=data,
            model="mock-stylizer",
            width=width,
            height=height,
            parameters={"prompt": prompt, "strength": request.params.strength},
        )

    @staticmethod
    def _render(sketch: bytes, prompt: str, width: int, height: int, strength: float) -> bytes:
        tint = hashlib.sha256(prompt.encode("utf-8")).digest()[:3]
        base = Image.open(io.BytesIO(sketch)).convert("RGB").resize((width, height))
        smooth = base.filter(ImageFilter.SMOOTH_MORE)
        overlay = Image.new("RGB", (width, height), tuple(tint))
        out = Image.blend(smooth, overlay, alpha=min(0.6, max(0.1, strength * 0.5)))
        out = ImageOps.autocontrast(out)
        buf = io.BytesIO()
        out.save(buf, format="PNG")
        return buf.getvalue()


ADAPTERS = {
    "comfyui": ComfyUIAdapter,
    "replicate": ReplicateAdapter,
    "openai": OpenAIAdapter,
    "pollinations": PollinationsAdapter,
    "mock": MockAdapter,
}


def build_adapter(config) -> ProviderAdapter:
    try:
        adapter_cls = ADAPTERS[config.type]
    except KeyError:
        raise ValueError(f"No adapter for provider type '{config.type}'") from None
    return adapter_cls(config)
