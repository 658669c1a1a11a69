"""
Runtime configuration for the prediction service, read from the environment.

Design principles:
- One process-wide AppConfig per environment (development, staging, production)
- Validation at startup, except for user-tunable thresholds which are clamped
- Type safety with Pydantic
- Secure defaults (no API keys in code; a provider without a key stays disabled)

User-tunable prediction thresholds live in core.domain.models.ThresholdConfig
and are read from the settings store every cycle, not from the environment.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Provider keys and overrides may come from a local .env
load_dotenv()

DEFAULT_PROVIDER_MODELS: dict[str, str] = {
    "openai": "openai:gpt-4o-mini",
    "claude": "anthropic:claude-3-5-haiku-latest",
    "gemini": "google-gla:gemini-1.5-flash",
}

# Model prefixes that run locally and need no API key
_KEYLESS_MODEL_PREFIXES = ("ollama:", "test")

_PLACEHOLDER_KEYS = {"your-openai-api-key-here", "your-anthropic-api-key-here", "changeme"}


class AIProviderConfig(BaseModel):
    """Which AI models analyze telemetry, and the keys that unlock them."""

    openai_api_key: str | None = Field(None, description="OpenAI API key")
    anthropic_api_key: str | None = Field(None, description="Anthropic API key")
    gemini_api_key: str | None = Field(None, description="Gemini API key")

    # provider id -> pydantic-ai model string
    providers: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_MODELS),
        description="Analysis providers keyed by provider id",
    )

    # AI behavior settings
    default_temperature: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sampling temperature for risk analysis"
    )
    default_max_tokens: int = Field(
        default=2000, gt=0, description="Response token budget per analysis"
    )
    provider_timeout_seconds: float = Field(
        default=15.0, description="Per-provider timeout for one analysis call"
    )
    default_max_retries: int = Field(
        default=1, ge=0, description="Output validation retries per analysis"
    )

    @field_validator("openai_api_key", "anthropic_api_key", "gemini_api_key")
    def validate_api_keys(cls, v):
        if v is None:
            return None
        v = v.strip()
        if not v or v in _PLACEHOLDER_KEYS:
            return None
        return v

    @field_validator("provider_timeout_seconds", mode="before")
    def clamp_provider_timeout(cls, v):
        # A hung provider must never hold a cycle longer than 20s
        try:
            return min(max(float(v), 10.0), 20.0)
        except (TypeError, ValueError):
            return v

    def api_key_for(self, model_name: str) -> str | None:
        if model_name.startswith("openai:"):
            return self.openai_api_key
        if model_name.startswith("anthropic:"):
            return self.anthropic_api_key
        if model_name.startswith(("google-gla:", "google-vertex:", "gemini:")):
            return self.gemini_api_key
        return None

    def enabled_providers(self) -> dict[str, str]:
        """Providers that can actually be called (key present or keyless model)."""
        enabled = {}
        for provider_id, model_name in sorted(self.providers.items()):
            if model_name.startswith(_KEYLESS_MODEL_PREFIXES) or self.api_key_for(model_name):
                enabled[provider_id] = model_name
        return enabled


class EngineConfig(BaseModel):
    """Prediction engine scheduling and lifecycle configuration."""

    poll_interval_seconds: float = Field(
        default=30.0, gt=0.0, description="Interval between heuristic evaluation cycles"
    )
    initial_analysis_delay_seconds: float = Field(
        default=30.0, ge=0.0, description="Delay before the first AI analysis"
    )
    collection_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Timeout for one telemetry source"
    )
    node_cache_ttl_seconds: float = Field(
        default=30.0, gt=0.0, description="How long a telemetry snapshot is reused"
    )
    snapshot_max_stale_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="How long the last good snapshot stands in while every collector fails",
    )

    # Recommendation lifecycle
    display_limit: int = Field(default=3, gt=0, description="Pending recommendations shown at once")
    snooze_minutes: float = Field(default=60.0, gt=0.0, description="Default snooze duration")
    retention_cycles: int = Field(
        default=1, ge=0, description="Missed cycles tolerated before a recommendation is dropped"
    )

    # AI analysis
    context_item_limit: int = Field(
        default=20, gt=0, description="Max sample signals sent to a provider"
    )
    consensus_bonus_per_provider: float = Field(default=0.05, ge=0.0, le=1.0)
    consensus_max_bonus: float = Field(default=0.15, ge=0.0, le=1.0)
    provider_failure_threshold: int = Field(
        default=3, gt=0, description="Consecutive failures before a provider is skipped"
    )
    provider_recovery_seconds: float = Field(
        default=300.0, gt=0.0, description="How long a failing provider is skipped"
    )


class StorageConfig(BaseModel):
    """Where recommendation state, feedback and settings are persisted."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".kc")


class APIConfig(BaseModel):
    """Where the HTTP surface listens and who may call it from a browser."""

    host: str = Field(default="127.0.0.1", description="API server host")
    port: int = Field(default=8585, gt=0, lt=65536, description="API server port")
    reload: bool = Field(default=False, description="Restart uvicorn on code changes")

    # Security settings
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5174"], description="Allowed origins for CORS"
    )


class LoggingConfig(BaseModel):
    """structlog output level and renderer."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Top-level settings for one prediction service process."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    ai_provider: AIProviderConfig = Field(default_factory=AIProviderConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Debug output must never leak into staging or production."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def parse_provider_models(raw: str | None) -> dict[str, str]:
    """Parse "openai=openai:gpt-4o-mini,claude=anthropic:claude-3-5-haiku-latest"."""
    if raw is None or not raw.strip():
        return dict(DEFAULT_PROVIDER_MODELS)

    providers: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        provider_id, sep, model_name = item.partition("=")
        if not sep:
            # Bare provider id: use its default model
            model_name = DEFAULT_PROVIDER_MODELS.get(provider_id, "")
        provider_id, model_name = provider_id.strip(), model_name.strip()
        if not provider_id or not model_name:
            raise ValueError(f"Invalid provider entry: {item!r}")
        providers[provider_id] = model_name
    return providers


def load_config_from_env() -> AppConfig:
    """Build an AppConfig from process environment variables."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    ai_config = AIProviderConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        gemini_api_key=os.getenv("GEMINI_API_KEY"),
        providers=parse_provider_models(os.getenv("PREDICTION_PROVIDERS")),
        provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15.0")),
    )

    engine_config = EngineConfig(
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "30.0")),
        display_limit=int(os.getenv("DISPLAY_LIMIT", "3")),
        snooze_minutes=float(os.getenv("SNOOZE_MINUTES", "60.0")),
        retention_cycles=int(os.getenv("RETENTION_CYCLES", "1")),
        node_cache_ttl_seconds=float(os.getenv("NODE_CACHE_TTL_SECONDS", "30.0")),
        snapshot_max_stale_seconds=float(os.getenv("SNAPSHOT_MAX_STALE_SECONDS", "120.0")),
    )

    data_dir = os.getenv("PREDICTION_DATA_DIR")
    storage_config = StorageConfig(data_dir=Path(data_dir).expanduser()) if data_dir else StorageConfig()

    api_config = APIConfig(
        host=os.getenv("API_HOST", "127.0.0.1"),
        port=int(os.getenv("API_PORT", "8585")),
        reload=_parse_bool(os.getenv("API_RELOAD"), debug),
        allowed_origins=os.getenv("API_ALLOWED_ORIGINS", "http://localhost:5174").split(","),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        ai_provider=ai_config,
        engine=engine_config,
        storage=storage_config,
        api=api_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Process-wide AppConfig, built once."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog on top of stdlib logging."""
    config = config or get_config().logging

    logging.basicConfig(format="%(message)s", level=config.level)

    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def validate_config() -> None:
    """Report what the service will run with. Raises if the environment is invalid."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        enabled = config.ai_provider.enabled_providers()
        if enabled:
            print(f"AI providers enabled: {', '.join(enabled)}")
        else:
            print("No AI provider keys configured, running heuristics only")

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Dump the effective settings to stdout."""
    config = get_config()

    print("\nPREDICTION SERVICE SETTINGS")
    print(f"Environment: {config.environment} (debug={config.debug}, log level={config.logging.level})")

    print("\nAI CONFIGURATION")
    for provider_id, model_name in config.ai_provider.providers.items():
        print(f"{provider_id}: {model_name}")
    print(f"Provider Timeout: {config.ai_provider.provider_timeout_seconds}s")

    print("\nENGINE CONFIGURATION")
    print(f"Poll Interval: {config.engine.poll_interval_seconds}s")
    print(f"Display Limit: {config.engine.display_limit}")
    print(f"Snooze: {config.engine.snooze_minutes}m")
    print(f"Data Directory: {config.storage.data_dir}")

    print("\nHTTP API")
    print(f"Listening on http://{config.api.host}:{config.api.port} (reload={config.api.reload})")
    print(f"CORS Origins: {', '.join(config.api.allowed_origins)}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
