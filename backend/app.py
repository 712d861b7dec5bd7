# backend/app.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from config.settings import Settings, settings, setup_logging

from .broadcaster import ProgressBroadcaster
from .cache import CacheStore
from .errors import GenerationError, InvalidInput, QueueFull, RateLimited
from .fingerprint import decode_sketch, describe_sketch
from .invoker import ProviderInvoker
from .jobs import JobState
from .model import (
    CleanupResponse,
    CompositionHints,
    CostEstimateRequest,
    CostEstimateResponse,
    GenerateRequest,
    GenerateResponse,
    GenerationRequest,
    HealthCheckResponse,
    JobStatusResponse,
    ProvidersResponse,
    ResultSummary,
    StatsResponse,
)
from .registry import ProviderRegistry
from .store import create_store
from .worker import GenerationQueueManager, RetryPolicy

logger = logging.getLogger(__name__)


def build_registry(cfg: Settings) -> ProviderRegistry:
    registry = ProviderRegistry(
        default_provider=cfg.DEFAULT_AI_PROVIDER,
        health_timeout=cfg.HEALTH_CHECK_TIMEOUT_SECONDS,
        minute_window=cfg.RATE_LIMIT_MINUTE_WINDOW,
        hour_window=cfg.RATE_LIMIT_HOUR_WINDOW,
    )
    for raw in cfg.provider_configs():
        registry.register(raw)
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = app.state.settings

    store = create_store(cfg.REDIS_URL)
    if not await store.ping():
        logger.warning("Key-value store is not reachable, cache and job records will degrade")
    cache = CacheStore(store, capacity=cfg.CACHE_CAPACITY, default_ttl=cfg.CACHE_TTL_SECONDS)
    registry = build_registry(cfg)
    invoker = ProviderInvoker(registry, timeout=cfg.PROVIDER_TIMEOUT_SECONDS)
    broadcaster = ProgressBroadcaster()
    manager = GenerationQueueManager(
        cache,
        registry,
        invoker,
        broadcaster,
        store=store,
        max_concurrent=cfg.MAX_CONCURRENT_GENERATIONS,
        max_queue_depth=cfg.MAX_QUEUE_DEPTH,
        retry_policy=RetryPolicy(
            max_attempts=cfg.MAX_ATTEMPTS,
            backoff_seconds=cfg.BACKOFF_BASE_SECONDS,
            max_backoff_seconds=cfg.BACKOFF_MAX_SECONDS,
        ),
        stall_timeout=cfg.STALL_TIMEOUT_SECONDS,
        completed_retention=cfg.COMPLETED_RETENTION_SECONDS,
        failed_retention=cfg.FAILED_RETENTION_SECONDS,
    )

    app.state.store = store
    app.state.cache = cache
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.manager = manager

    await manager.start()
    logger.info("Generation service ready with %d provider(s)", len(registry))
    try:
        yield
    finally:
        await manager.stop()
        broadcaster.close()
        await registry.aclose()
        await store.close()


async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(int(exc.retry_after))}
    elif isinstance(exc, QueueFull):
        headers = {"Retry-After": "5"}
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.to_detail().model_dump()},
        headers=headers,
    )


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    cfg = app_settings or settings
    setup_logging(cfg.LOG_LEVEL, cfg.LOG_FORMAT)

    app = FastAPI(title="Sketch Render Service", lifespan=lifespan)
    app.state.settings = cfg
    app.add_exception_handler(GenerationError, generation_error_handler)

    @app.post("/generate", response_model=GenerateResponse, status_code=202)
    async def generate(req: GenerateRequest, request: Request):
        if not req.prompt.strip():
            raise InvalidInput("Prompt cannot be empty", suggested_fix="Describe what the sketch should become")

        registry: ProviderRegistry = request.app.state.registry
        if req.provider:
            registry.get(req.provider)

        cfg: Settings = request.app.state.settings
        sketch = describe_sketch(
            decode_sketch(req.sketch),
            max_pixels=cfg.MAX_SKETCH_PIXELS,
            max_bytes=cfg.MAX_SKETCH_BYTES,
        )
        try:
            gen_request = GenerationRequest(
                sketch=sketch,
                prompt=req.prompt,
                negative_prompt=req.negative_prompt,
                style_preset=req.style_preset,
                composition=req.composition or CompositionHints(dominant_colors=sketch.color_palette),
                params=req.params,
                provider=req.provider,
                priority=req.priority,
                max_cost=req.max_cost,
            )
        except ValidationError as e:
            raise InvalidInput(f"Invalid generation request: {e.errors()[0]['msg']}") from e

        manager: GenerationQueueManager = request.app.state.manager
        job_id = await manager.enqueue(gen_request)
        return GenerateResponse(job_id=job_id, status=JobState.QUEUED.value)

    @app.get("/status/{job_id}", response_model=JobStatusResponse)
    async def get_status(job_id: str, request: Request):
        """
        Job state, progress and queue position. The result is summarized
        without image bytes; fetch those from /result/{job_id}.
        """
        status = request.app.state.manager.status(job_id)
        return JobStatusResponse(
            job_id=status.job_id,
            state=status.state,
            progress=status.progress,
            attempts=status.attempts,
            position=status.position,
            estimated_wait=status.estimated_wait,
            result=ResultSummary.from_result(status.result) if status.result else None,
            error=status.error,
        )

    @app.get("/result/{job_id}")
    async def get_result(job_id: str, request: Request):
        job = request.app.state.manager.get_job(job_id)
        if job.state is not JobState.COMPLETED or job.result is None or job.result.image is None:
            raise HTTPException(status_code=400, detail=f"Job {job_id} is {job.state.value}, no image yet")
        image = job.result.image
        return Response(
            content=image.data,
            media_type=f"image/{image.format}",
            headers={
                "X-Provider": job.result.provider,
                "X-Cache-Hit": str(job.result.cache_hit).lower(),
            },
        )

    @app.delete("/generation/{job_id}")
    async def delete_generation(job_id: str, request: Request):
        manager: GenerationQueueManager = request.app.state.manager
        manager.get_job(job_id)
        if await manager.cancel(job_id):
            return {"job_id": job_id, "status": JobState.CANCELLED.value}
        await manager.discard(job_id)
        return {"job_id": job_id, "status": "discarded"}

    @app.get("/providers", response_model=ProvidersResponse)
    async def list_providers(request: Request):
        registry: ProviderRegistry = request.app.state.registry
        return ProvidersResponse(providers=registry.list(), default_provider=registry.default_provider)

    @app.post("/estimate-cost", response_model=CostEstimateResponse)
    async def estimate_cost(req: CostEstimateRequest, request: Request):
        registry: ProviderRegistry = request.app.state.registry
        return registry.estimate_cost(req.provider, req.max_cost)

    @app.get("/stats", response_model=StatsResponse)
    async def stats(request: Request):
        state = request.app.state
        return StatsResponse(
            cache=await state.cache.stats(),
            queue=state.manager.stats(),
            connected_clients=state.broadcaster.subscriber_count,
        )

    @app.post("/health-check/{provider_id}", response_model=HealthCheckResponse)
    async def health_check(provider_id: str, request: Request):
        registry: ProviderRegistry = request.app.state.registry
        healthy = await registry.check_health(provider_id)
        return HealthCheckResponse(
            provider=provider_id,
            healthy=healthy,
            status=registry.get(provider_id).status,
        )

    @app.post("/cleanup", response_model=CleanupResponse)
    async def cleanup(request: Request):
        state = request.app.state
        jobs_removed = await state.manager.cleanup()
        cache_removed = await state.cache.sweep()
        return CleanupResponse(jobs_removed=jobs_removed, cache_entries_removed=cache_removed)

    @app.websocket("/ws")
    async def progress_stream(websocket: WebSocket):
        await websocket.accept()
        broadcaster: ProgressBroadcaster = websocket.app.state.broadcaster
        sub = broadcaster.subscribe()

        async def watch_disconnect() -> None:
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
            finally:
                broadcaster.unsubscribe(sub)

        watcher = asyncio.create_task(watch_disconnect())
        try:
            async for message in sub:
                await websocket.send_json(message)
        except WebSocketDisconnect:
            pass
        finally:
            watcher.cancel()
            broadcaster.unsubscribe(sub)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.app:app", host="0.0.0.0", port=8000)
