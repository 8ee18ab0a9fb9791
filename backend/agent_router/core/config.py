"""
Runtime configuration for the agent router.

Settings are read from environment variables once per process through
pydantic-settings. A `.env` file at the repository root is read as well
when present; real environment variables win over it. Unset or empty
variables keep the defaults below.

Environment configuration:
- LOG_LEVEL / LOG_JSON / SERVICE_NAME
- OTEL_EXPORTER_OTLP_ENDPOINT, OTEL_TRACES_SAMPLER_ARG
- LLM_API_BASE, LLM_API_KEY, LLM_TIMEOUT_SECONDS
- LLM_CLASSIFICATION_MODEL, LLM_GENERATION_MODEL, LLM_EMBEDDING_MODEL, EMBEDDING_DIM
- BREAKER_FAILURE_THRESHOLD, BREAKER_COOLDOWN_SECONDS
- RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS
- INPUT_MIN_LENGTH, INPUT_MAX_LENGTH
- RETRIEVAL_TOP_K, RETRIEVAL_DEFAULT_THRESHOLD
- RETRIEVAL_THRESHOLD_PENAL, RETRIEVAL_THRESHOLD_CIVIL, RETRIEVAL_THRESHOLD_LABORAL
- STREAM_CHUNK_CHARS
- HANDOFF_ON_GENERATION_FALLBACK
- SUPABASE_URL, SUPABASE_SERVICE_KEY (or SUPABASE_KEY)
- WHATSAPP_API_TOKEN, WHATSAPP_PHONE_ID, WHATSAPP_API_BASE
- WORKFLOW_WEBHOOK_URL (n8n handoff / case-creation hook)
"""
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_router.core.logging import get_logger

logger = get_logger(__name__)

env_path = Path(__file__).parent.parent.parent.parent / ".env"


class Settings(BaseSettings):
    """Process-wide configuration."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        populate_by_name=True,
        extra="ignore",
    )

    service_name: str = "legal_agent_router"
    log_level: str = "INFO"
    log_json: bool = True

    # Tracing export
    otlp_endpoint: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OTEL_EXPORTER_OTLP_ENDPOINT", "otlp_endpoint"),
    )
    trace_sampling_rate: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("OTEL_TRACES_SAMPLER_ARG", "trace_sampling_rate"),
    )

    # Generation / embedding service (OpenAI-compatible API)
    llm_api_base: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    llm_api_key: Optional[str] = None
    llm_timeout_seconds: float = 15.0
    classification_model: str = Field(
        default="gemini-1.5-flash",
        validation_alias=AliasChoices("LLM_CLASSIFICATION_MODEL", "classification_model"),
    )
    generation_model: str = Field(
        default="gemini-1.5-flash",
        validation_alias=AliasChoices("LLM_GENERATION_MODEL", "generation_model"),
    )
    embedding_model: str = Field(
        default="text-embedding-004",
        validation_alias=AliasChoices("LLM_EMBEDDING_MODEL", "embedding_model"),
    )
    embedding_dim: int = Field(default=768, gt=0)

    # Circuit breakers (one instance per capability)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_cooldown_seconds: float = Field(default=60.0, ge=0.0)

    # Rate limiting
    rate_limit_max_requests: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0.0)

    # Input validation
    input_min_length: int = Field(default=5, ge=0)
    input_max_length: int = Field(default=2000, ge=1)

    # Retrieval: minimum similarity per specialty, default for the rest
    retrieval_top_k: int = Field(default=3, ge=1)
    retrieval_default_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    retrieval_threshold_penal: float = Field(default=0.75, ge=0.0, le=1.0)
    retrieval_threshold_civil: float = Field(default=0.70, ge=0.0, le=1.0)
    retrieval_threshold_laboral: float = Field(default=0.72, ge=0.0, le=1.0)

    # Streaming delivery
    stream_chunk_chars: int = Field(default=150, ge=1)

    # Whether a forced generation fallback also fires the handoff workflow
    handoff_on_generation_fallback: bool = False

    # Data store; the service-role key is preferred over the anon key
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_SERVICE_KEY", "SUPABASE_KEY", "supabase_key"),
    )

    # Message delivery
    whatsapp_api_base: str = "https://graph.facebook.com/v19.0"
    whatsapp_api_token: Optional[str] = None
    whatsapp_phone_id: Optional[str] = None

    # Workflow automation
    workflow_webhook_url: Optional[str] = None


def load_settings() -> Settings:
    """Build settings from the current environment (and `.env`, if any)."""
    if env_path.exists():
        logger.info("env_loaded", env_path=str(env_path))
        return Settings(_env_file=env_path)
    return Settings()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Global singleton accessor for settings."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings
    _settings = None
