# backend/invoker.py
"""
Calls one provider for one request.

Limits declared by the provider are enforced before any network call so a
request that cannot succeed never costs money. Every failure leaves as a
classified GenerationError.
"""

import asyncio
import io
import logging
import time
from typing import Mapping, Optional

import aiohttp
import httpx
from PIL import Image, UnidentifiedImageError

from .errors import (
    GenerationError,
    GenerationTimeout,
    InvalidRequest,
    ProviderUnavailable,
    RateLimited,
)
from .model import GeneratedImage, GenerationRequest, GenerationResult, ProviderDescriptor
from .provider_clients import ProviderOutput
from .registry import ProviderRegistry
from .utils import enhance_prompt

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60.0


def parse_retry_after(headers: Optional[Mapping[str, str]], default: float = DEFAULT_RETRY_AFTER) -> float:
    if not headers:
        return default
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


def classify_status(
    provider_id: str, status: int, headers: Optional[Mapping[str, str]] = None, detail: str = ""
) -> GenerationError:
    suffix = f": {detail}" if detail else ""
    if status == 429:
        return RateLimited(
            f"{provider_id} rate limit reached{suffix}", retry_after=parse_retry_after(headers)
        )
    if status in (401, 403):
        return ProviderUnavailable(
            f"{provider_id} rejected the credentials (HTTP {status})",
            retryable=False,
            suggested_fix="Check the provider API credentials",
        )
    if status in (408, 504):
        return GenerationTimeout(f"{provider_id} timed out (HTTP {status})")
    if 400 <= status < 500:
        return InvalidRequest(
            f"{provider_id} rejected the request (HTTP {status}){suffix}",
            suggested_fix="Adjust the prompt or generation parameters",
        )
    return ProviderUnavailable(f"{provider_id} returned HTTP {status}{suffix}")


def classify_exception(provider_id: str, exc: BaseException) -> GenerationError:
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, aiohttp.ServerTimeoutError)):
        return GenerationTimeout(f"{provider_id} did not answer in time")
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(
            provider_id, exc.response.status_code, exc.response.headers, exc.response.text[:200]
        )
    if isinstance(exc, aiohttp.ClientResponseError):
        return classify_status(provider_id, exc.status, exc.headers, exc.message)
    if isinstance(exc, (httpx.TransportError, aiohttp.ClientError, OSError)):
        return ProviderUnavailable(f"{provider_id} unreachable: {exc}")
    return ProviderUnavailable(f"{provider_id} failed: {exc}", retryable=False)


def _image_size(data: bytes):
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.width, img.height, (img.format or "png").lower()
    except (UnidentifiedImageError, OSError):
        return None


class ProviderInvoker:
    def __init__(self, registry: ProviderRegistry, timeout: float = 120.0) -> None:
        self.registry = registry
        self.timeout = timeout

    def validate(self, descriptor: ProviderDescriptor, request: GenerationRequest) -> str:
        """Check the request against the provider's declared limits; returns the prompt to send."""
        caps = descriptor.capabilities
        prompt = enhance_prompt(request.prompt, request.style_preset)

        if len(prompt) > caps.max_prompt_length:
            raise InvalidRequest(
                f"Prompt is {len(prompt)} characters, {descriptor.id} accepts at most {caps.max_prompt_length}",
                suggested_fix=f"Reduce prompt length to {caps.max_prompt_length} characters",
            )
        width, height = request.target_width, request.target_height
        if width > caps.max_width or height > caps.max_height:
            raise InvalidRequest(
                f"Resolution {width}x{height} exceeds {descriptor.id} maximum "
                f"{caps.max_width}x{caps.max_height}",
                suggested_fix=f"Use a size up to {caps.max_width}x{caps.max_height}",
            )
        cost = descriptor.pricing.cost_per_generation
        if request.max_cost is not None and cost > request.max_cost:
            raise InvalidRequest(
                f"{descriptor.id} costs {cost} {descriptor.pricing.currency}, above the ceiling of {request.max_cost}",
                suggested_fix="Raise the cost ceiling or pick a cheaper provider",
            )
        return prompt

    async def invoke(self, provider_id: str, request: GenerationRequest) -> GenerationResult:
        provider = self.registry.entry(provider_id)
        descriptor = provider.descriptor
        prompt = self.validate(descriptor, request)

        if not provider.limiter.try_acquire():
            raise RateLimited(
                f"Local rate limit for {provider_id} exhausted",
                retry_after=provider.limiter.retry_after(),
            )

        started = time.perf_counter()
        try:
            output = await asyncio.wait_for(provider.adapter.generate(request, prompt), self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_exception(provider_id, e)
            logger.warning(
                "Provider %s failed for request %s: %s (%s)", provider_id, request.id, error.message, error.code
            )
            if error is e:
                raise
            raise error from e
        finally:
            provider.limiter.release()

        elapsed = time.perf_counter() - started
        logger.info("Provider %s finished request %s in %.2fs", provider_id, request.id, elapsed)
        return self._normalize(descriptor, request, output, elapsed)

    def _normalize(
        self,
        descriptor: ProviderDescriptor,
        request: GenerationRequest,
        output: ProviderOutput,
        elapsed: float,
    ) -> GenerationResult:
        if not output.data:
            raise ProviderUnavailable(f"{descriptor.id} returned an empty image")

        width, height, fmt = output.width, output.height, output.format
        if width is None or height is None:
            detected = _image_size(output.data)
            if detected is None:
                raise ProviderUnavailable(f"{descriptor.id} returned data that is not an image")
            width, height, fmt = detected

        return GenerationResult(
            request_id=request.id,
            status="completed",
            image=GeneratedImage(data=output.data, format=fmt, width=width, height=height, url=output.url),
            provider=descriptor.id,
            model=output.model,
            parameters=output.parameters,
            processing_time=elapsed,
            cost=descriptor.pricing.cost_per_generation,
            cache_hit=False,
        )
