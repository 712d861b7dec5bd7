# backend/registry.py
"""
Provider registry: descriptors, adapters and rate limiters per provider.

Configurations are validated against their provider type when registered,
so a bad credential or unknown type fails at startup rather than on the
first job.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import TypeAdapter, ValidationError

from .errors import ConfigError, InvalidRequest, NoProviderAvailable, ProviderNotFound
from .model import BaseProviderConfig, CostEstimateResponse, ProviderConfig, ProviderDescriptor, ProviderStatus
from .provider_clients import ProviderAdapter, build_adapter
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

_config_adapter = TypeAdapter(ProviderConfig)


@dataclass
class RegisteredProvider:
    descriptor: ProviderDescriptor
    adapter: ProviderAdapter
    limiter: RateLimiter

    def view(self) -> ProviderDescriptor:
        desc = self.descriptor.model_copy(deep=True)
        if desc.status is ProviderStatus.ONLINE and not self.limiter.has_capacity():
            desc.status = ProviderStatus.RATE_LIMITED
        return desc

    @property
    def online(self) -> bool:
        return self.descriptor.status is ProviderStatus.ONLINE

    @property
    def available(self) -> bool:
        return self.online and self.limiter.has_capacity()


class ProviderRegistry:
    def __init__(
        self,
        default_provider: Optional[str] = None,
        health_timeout: float = 5.0,
        minute_window: float = 60.0,
        hour_window: float = 3600.0,
    ) -> None:
        self.default_provider = default_provider
        self.health_timeout = health_timeout
        self.minute_window = minute_window
        self.hour_window = hour_window
        self._providers: Dict[str, RegisteredProvider] = {}

    @staticmethod
    def validate_config(raw: Union[Mapping[str, Any], BaseProviderConfig]) -> BaseProviderConfig:
        if isinstance(raw, BaseProviderConfig):
            return raw
        try:
            return _config_adapter.validate_python(dict(raw))
        except ValidationError as e:
            pid = raw.get("id", "?") if isinstance(raw, Mapping) else "?"
            raise ConfigError(f"Invalid configuration for provider '{pid}': {e}") from e

    def register(
        self,
        config: Union[Mapping[str, Any], BaseProviderConfig],
        adapter: Optional[ProviderAdapter] = None,
    ) -> ProviderDescriptor:
        cfg = self.validate_config(config)
        if cfg.id in self._providers:
            raise ConfigError(f"Provider '{cfg.id}' is already registered")

        if adapter is None:
            adapter = build_adapter(cfg)

        descriptor = ProviderDescriptor(
            id=cfg.id,
            name=cfg.name or cfg.id,
            type=cfg.type,
            capabilities=(cfg.capabilities or adapter.default_capabilities).model_copy(deep=True),
            pricing=(cfg.pricing or adapter.default_pricing).model_copy(deep=True),
            rate_limits=(cfg.rate_limits or adapter.default_rate_limits).model_copy(deep=True),
            status=ProviderStatus.ONLINE if cfg.enabled else ProviderStatus.MAINTENANCE,
        )
        limiter = RateLimiter(
            descriptor.rate_limits,
            minute_window=self.minute_window,
            hour_window=self.hour_window,
        )
        self._providers[cfg.id] = RegisteredProvider(descriptor, adapter, limiter)
        logger.info(
            "Registered provider %s (%s), cost %.4f %s",
            cfg.id,
            cfg.type,
            descriptor.pricing.cost_per_generation,
            descriptor.pricing.currency,
        )
        return descriptor

    def list(self) -> List[ProviderDescriptor]:
        return [p.view() for p in self._providers.values()]

    def get(self, provider_id: str) -> ProviderDescriptor:
        return self.entry(provider_id).view()

    def entry(self, provider_id: str) -> RegisteredProvider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFound(
                f"Provider '{provider_id}' not found. Available providers: {sorted(self._providers)}"
            ) from None

    def set_status(self, provider_id: str, status: ProviderStatus) -> None:
        self.entry(provider_id).descriptor.status = status

    async def check_health(self, provider_id: str) -> bool:
        provider = self.entry(provider_id)
        if provider.descriptor.status is ProviderStatus.MAINTENANCE:
            return False
        try:
            healthy = await asyncio.wait_for(provider.adapter.probe(), self.health_timeout)
        except asyncio.TimeoutError:
            logger.warning("Health check for %s timed out after %.1fs", provider_id, self.health_timeout)
            healthy = False
        except Exception as e:
            logger.warning("Health check for %s failed: %s", provider_id, e)
            healthy = False

        provider.descriptor.status = ProviderStatus.ONLINE if healthy else ProviderStatus.OFFLINE
        return healthy

    async def check_all(self) -> Dict[str, bool]:
        ids = list(self._providers)
        results = await asyncio.gather(*(self.check_health(pid) for pid in ids))
        return dict(zip(ids, results))

    def _affordable(self, provider: RegisteredProvider, max_cost: Optional[float]) -> bool:
        return max_cost is None or provider.descriptor.pricing.cost_per_generation <= max_cost

    def select_default(self, requested_id: Optional[str] = None, max_cost: Optional[float] = None) -> str:
        """
        Pick the provider for a job: the requested one if it is online and
        within its rate limit, else the configured default, else the cheapest
        online provider (free ones first).

        When every online provider is out of budget the cheapest of them is
        still returned, so the invoker rejects the call with a retryable
        RateLimited instead of the job failing outright.
        """
        for candidate in (requested_id, self.default_provider):
            if not candidate:
                continue
            provider = self._providers.get(candidate)
            if provider and provider.available and self._affordable(provider, max_cost):
                return candidate
            if candidate == requested_id:
                logger.info("Requested provider %s unavailable, falling back", candidate)

        online = [p for p in self._providers.values() if p.online and self._affordable(p, max_cost)]
        if not online:
            raise NoProviderAvailable("No generation provider is online within the cost ceiling")

        online.sort(key=lambda p: p.descriptor.pricing.cost_per_generation)
        for provider in online:
            if provider.limiter.has_capacity():
                return provider.descriptor.id
        logger.info("All online providers are rate limited, routing to %s", online[0].descriptor.id)
        return online[0].descriptor.id

    def estimate_cost(
        self, provider_id: Optional[str] = None, max_cost: Optional[float] = None
    ) -> CostEstimateResponse:
        """
        Cost of one generation on `provider_id`, or on whichever provider
        `select_default` would pick when none is named.
        """
        if provider_id is None:
            provider_id = self.select_default(max_cost=max_cost)
        pricing = self.entry(provider_id).descriptor.pricing
        if max_cost is not None and pricing.cost_per_generation > max_cost:
            raise InvalidRequest(
                f"{provider_id} costs {pricing.cost_per_generation} {pricing.currency}, above the ceiling of {max_cost}",
                suggested_fix="Raise the cost ceiling or pick a cheaper provider",
            )
        return CostEstimateResponse(
            provider=provider_id,
            cost=pricing.cost_per_generation,
            currency=pricing.currency,
        )

    async def aclose(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.adapter.aclose()
            except Exception as e:
                logger.warning("Error closing provider %s: %s", provider.descriptor.id, e)

    def __len__(self) -> int:
        return len(self._providers)
