import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# Load environment overrides from config/.env
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL") or None

    MAX_CONCURRENT_GENERATIONS: int = _env_int("MAX_CONCURRENT_GENERATIONS", 5)
    MAX_ATTEMPTS: int = _env_int("MAX_ATTEMPTS", 3)
    BACKOFF_BASE_SECONDS: float = _env_float("BACKOFF_BASE_SECONDS", 2.0)
    BACKOFF_MAX_SECONDS: float = _env_float("BACKOFF_MAX_SECONDS", 60.0)
    MAX_QUEUE_DEPTH: int = _env_int("MAX_QUEUE_DEPTH", 100)
    MAX_SKETCH_PIXELS: int = _env_int("MAX_SKETCH_PIXELS", 4096 * 4096)
    MAX_SKETCH_BYTES: int = _env_int("MAX_SKETCH_BYTES", 20 * 1024 * 1024)
    STALL_TIMEOUT_SECONDS: float = _env_float("STALL_TIMEOUT_SECONDS", 300.0)
    COMPLETED_RETENTION_SECONDS: float = _env_float("COMPLETED_RETENTION_SECONDS", 24 * 3600)
    FAILED_RETENTION_SECONDS: float = _env_float("FAILED_RETENTION_SECONDS", 7 * 24 * 3600)

    CACHE_TTL_SECONDS: float = _env_float("CACHE_TTL_SECONDS", 24 * 3600)
    CACHE_CAPACITY: int = _env_int("CACHE_CAPACITY", 500)

    DEFAULT_AI_PROVIDER: Optional[str] = os.getenv("DEFAULT_AI_PROVIDER") or None
    PROVIDER_TIMEOUT_SECONDS: float = _env_float("PROVIDER_TIMEOUT_SECONDS", 120.0)
    HEALTH_CHECK_TIMEOUT_SECONDS: float = _env_float("HEALTH_CHECK_TIMEOUT_SECONDS", 5.0)
    RATE_LIMIT_MINUTE_WINDOW: float = _env_float("RATE_LIMIT_MINUTE_WINDOW", 60.0)
    RATE_LIMIT_HOUR_WINDOW: float = _env_float("RATE_LIMIT_HOUR_WINDOW", 3600.0)

    COMFYUI_URL: Optional[str] = os.getenv("COMFYUI_URL") or None
    REPLICATE_API_TOKEN: Optional[str] = os.getenv("REPLICATE_API_TOKEN") or None
    REPLICATE_MODEL_VERSION: str = os.getenv(
        "REPLICATE_MODEL_VERSION",
        "27b93a2413e7f36cd83da926f3656280b2931564ff050bf9575f1fdf9bcd7478",
    )
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY") or None
    OPENAI_IMAGE_MODEL: str = os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3")
    POLLINATIONS_ENABLED: bool = _env_bool("POLLINATIONS_ENABLED", True)
    AI_MOCK_MODE: bool = _env_bool("AI_MOCK_MODE", False)

    POLL_INTERVAL: float = 0.5  # seconds

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "text")

    def __init__(self, **overrides: Any) -> None:
        for name, value in overrides.items():
            if not hasattr(type(self), name):
                raise AttributeError(f"Unknown setting: {name}")
            setattr(self, name, value)

    def provider_configs(self) -> List[Dict[str, Any]]:
        """
        Build raw provider configurations from credentials in the environment.
        The registry validates each one against its provider type.
        """
        configs: List[Dict[str, Any]] = []

        if self.AI_MOCK_MODE:
            configs.append({"type": "mock", "id": "mock", "name": "Mock generator"})
            return configs

        if self.COMFYUI_URL:
            configs.append({
                "type": "comfyui",
                "id": "comfyui",
                "name": "ComfyUI (local)",
                "base_url": self.COMFYUI_URL,
                "poll_interval": self.POLL_INTERVAL,
            })

        if self.REPLICATE_API_TOKEN:
            configs.append({
                "type": "replicate",
                "id": "replicate",
                "name": "Replicate (Stable Diffusion)",
                "api_token": self.REPLICATE_API_TOKEN,
                "model_version": self.REPLICATE_MODEL_VERSION,
                "poll_interval": self.POLL_INTERVAL,
            })

        if self.OPENAI_API_KEY:
            configs.append({
                "type": "openai",
                "id": "openai",
                "name": "OpenAI Images",
                "api_key": self.OPENAI_API_KEY,
                "model": self.OPENAI_IMAGE_MODEL,
            })

        if self.POLLINATIONS_ENABLED:
            configs.append({"type": "pollinations", "id": "pollinations", "name": "Pollinations (free)"})

        if not configs:
            configs.append({"type": "mock", "id": "mock", "name": "Mock generator"})

        return configs


def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        fmt = '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}'
    else:
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    logging.basicConfig(level=log_level, format=fmt, datefmt="%Y-%m-%d %H:%M:%S")


settings = Settings()
