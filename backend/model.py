# backend/model.py
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import gen_job_id


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ProviderStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"
    RATE_LIMITED = "rate-limited"


Complexity = Literal["simple", "moderate", "complex"]

EventType = Literal["started", "progress", "completed", "error"]


# ==========================
# Requests
# ==========================

class SketchData(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: bytes = Field(repr=False)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    color_palette: List[str] = Field(default_factory=list)


class TechnicalParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    strength: float = 0.8
    guidance: float = 7.5
    negative_prompt: str = ""


class StylePreset(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    prompt_modifier: str = ""
    technical_params: TechnicalParams = Field(default_factory=TechnicalParams)


class ElementBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    width: int
    height: int
    type: Literal["shape", "line", "text"] = "shape"


class CompositionHints(BaseModel):
    model_config = ConfigDict(frozen=True)

    dominant_colors: List[str] = Field(default_factory=list)
    element_positions: List[ElementBox] = Field(default_factory=list)
    complexity: Complexity = "simple"


class GenerationParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    strength: float = Field(default=0.8, ge=0.0, le=1.0)
    steps: int = Field(default=20, gt=0, le=150)
    guidance: float = Field(default=7.5, ge=0.0, le=30.0)
    seed: Optional[int] = None
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)


class GenerationRequest(BaseModel):
    """Immutable generation request as owned by the queue once submitted."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=gen_job_id)
    sketch: SketchData
    prompt: str
    negative_prompt: Optional[str] = None
    style_preset: Optional[StylePreset] = None
    composition: CompositionHints = Field(default_factory=CompositionHints)
    params: GenerationParams = Field(default_factory=GenerationParams)
    provider: Optional[str] = None
    priority: Priority = Priority.NORMAL
    max_cost: Optional[float] = Field(default=None, ge=0.0)
    created_at: float = Field(default_factory=time.time)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt cannot be empty")
        return v.strip()

    @property
    def target_width(self) -> int:
        return self.params.width or self.sketch.width

    @property
    def target_height(self) -> int:
        return self.params.height or self.sketch.height


# ==========================
# Results
# ==========================

class ErrorDetail(BaseModel):
    code: str
    message: str
    retryable: bool = False
    suggested_fix: Optional[str] = None


class GeneratedImage(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    data: bytes = Field(repr=False)
    format: str = "png"
    width: int
    height: int
    url: Optional[str] = None


ResultStatus = Literal["completed", "failed", "cancelled"]


class GenerationResult(BaseModel):
    request_id: str
    status: ResultStatus = "completed"
    image: Optional[GeneratedImage] = None
    error: Optional[ErrorDetail] = None
    provider: str
    model: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    processing_time: float = 0.0
    cost: float = 0.0
    cache_hit: bool = False
    quality: Optional[float] = None
    completed_at: float = Field(default_factory=time.time)


class ResultSummary(BaseModel):
    """GenerationResult without the image payload, for status responses."""

    provider: str
    model: str
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    processing_time: float
    cost: float
    cache_hit: bool
    quality: Optional[float] = None
    completed_at: float

    @classmethod
    def from_result(cls, result: GenerationResult) -> "ResultSummary":
        image = result.image
        return cls(
            provider=result.provider,
            model=result.model,
            format=image.format if image else None,
            width=image.width if image else None,
            height=image.height if image else None,
            processing_time=result.processing_time,
            cost=result.cost,
            cache_hit=result.cache_hit,
            quality=result.quality,
            completed_at=result.completed_at,
        )


# ==========================
# Cache
# ==========================

class RequestSummary(BaseModel):
    prompt: str
    style_preset: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    fingerprint: str
    image: GeneratedImage
    request: RequestSummary
    provider: str
    quality: float
    hit_count: int = 0
    created_at: float
    last_accessed: float
    expires_at: float
    tags: List[str] = Field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheStats(BaseModel):
    entry_count: int
    hit_rate: float
    total_hits: int
    average_quality: float


# ==========================
# Providers
# ==========================

class Capabilities(BaseModel):
    max_width: int = 1024
    max_height: int = 1024
    supported_formats: List[str] = Field(default_factory=lambda: ["png"])
    max_prompt_length: int = 1000
    supports_img2img: bool = False
    supports_inpainting: bool = False


class Pricing(BaseModel):
    cost_per_generation: float = 0.0
    currency: str = "USD"
    free_quota: Optional[int] = None


class RateLimits(BaseModel):
    requests_per_minute: int = 60
    requests_per_hour: int = 3600
    concurrent_requests: int = 5


class ProviderDescriptor(BaseModel):
    id: str
    name: str
    type: str
    capabilities: Capabilities
    pricing: Pricing
    rate_limits: RateLimits
    status: ProviderStatus = ProviderStatus.ONLINE


class BaseProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    enabled: bool = True
    capabilities: Optional[Capabilities] = None
    pricing: Optional[Pricing] = None
    rate_limits: Optional[RateLimits] = None

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("provider id cannot be empty")
        return v.strip()


class ComfyUIProviderConfig(BaseProviderConfig):
    type: Literal["comfyui"] = "comfyui"
    base_url: str = "http://127.0.0.1:8188"
    poll_interval: float = 0.5
    checkpoint: str = "v1-5-pruned-emaonly.safetensors"


class ReplicateProviderConfig(BaseProviderConfig):
    type: Literal["replicate"] = "replicate"
    api_token: str = Field(min_length=1, repr=False)
    model_version: str
    base_url: str = "https://api.replicate.com/v1"
    poll_interval: float = 1.0


class OpenAIProviderConfig(BaseProviderConfig):
    type: Literal["openai"] = "openai"
    api_key: str = Field(min_length=1, repr=False)
    model: str = "dall-e-3"
    base_url: str = "https://api.openai.com/v1"
    organization: Optional[str] = None


class PollinationsProviderConfig(BaseProviderConfig):
    type: Literal["pollinations"] = "pollinations"
    base_url: str = "https://image.pollinations.ai"
    min_image_bytes: int = 10000


class MockProviderConfig(BaseProviderConfig):
    type: Literal["mock"] = "mock"
    latency: float = 0.0


ProviderConfig = Annotated[
    Union[
        ComfyUIProviderConfig,
        ReplicateProviderConfig,
        OpenAIProviderConfig,
        PollinationsProviderConfig,
        MockProviderConfig,
    ],
    Field(discriminator="type"),
]


# ==========================
# Queue
# ==========================

class JobStatus(BaseModel):
    job_id: str
    state: str
    progress: int = 0
    attempts: int = 0
    position: Optional[int] = None
    estimated_wait: Optional[float] = None
    result: Optional[GenerationResult] = None
    error: Optional[ErrorDetail] = None


class QueueStats(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    cancelled: int


class ProgressEvent(BaseModel):
    type: EventType
    job_id: str
    message: str
    progress: int = Field(ge=0, le=100)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ==========================
# HTTP schemas
# ==========================

class GenerateRequest(BaseModel):
    prompt: str
    sketch: str  # base64 encoded image
    negative_prompt: Optional[str] = None
    style_preset: Optional[StylePreset] = None
    composition: Optional[CompositionHints] = None
    params: GenerationParams = Field(default_factory=GenerationParams)
    provider: Optional[str] = None
    priority: Priority = Priority.NORMAL
    max_cost: Optional[float] = Field(default=None, ge=0.0)


class GenerateResponse(BaseModel):
    job_id: str
    status: str


class JobStatusResponse(BaseModel):
    job_id: str
    state: str
    progress: int
    attempts: int
    position: Optional[int] = None
    estimated_wait: Optional[float] = None
    result: Optional[ResultSummary] = None
    error: Optional[ErrorDetail] = None


class ProvidersResponse(BaseModel):
    providers: List[ProviderDescriptor]
    default_provider: Optional[str] = None


class CostEstimateRequest(BaseModel):
    provider: Optional[str] = None
    max_cost: Optional[float] = Field(default=None, ge=0.0)


class CostEstimateResponse(BaseModel):
    provider: str
    cost: float
    currency: str


class StatsResponse(BaseModel):
    cache: CacheStats
    queue: QueueStats
    connected_clients: int


class HealthCheckResponse(BaseModel):
    provider: str
    healthy: bool
    status: ProviderStatus


class CleanupResponse(BaseModel):
    jobs_removed: int
    cache_entries_removed: int
