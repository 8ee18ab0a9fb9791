"""
Unit tests for environment-driven settings.
"""
import pytest
from pydantic import ValidationError

from agent_router.core import config
from agent_router.core.config import Settings, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    # Point .env loading at an empty directory
    monkeypatch.setattr(config, "env_path", tmp_path / ".env")
    reset_settings()
    yield
    reset_settings()


def test_defaults_match_pipeline_constants():
    settings = Settings()

    assert settings.breaker_failure_threshold == 5
    assert settings.breaker_cooldown_seconds == 60.0
    assert settings.rate_limit_max_requests == 10
    assert settings.rate_limit_window_seconds == 60.0
    assert (settings.input_min_length, settings.input_max_length) == (5, 2000)
    assert settings.retrieval_top_k == 3
    assert settings.retrieval_default_threshold == 0.60
    assert (
        settings.retrieval_threshold_penal,
        settings.retrieval_threshold_civil,
        settings.retrieval_threshold_laboral,
    ) == (0.75, 0.70, 0.72)
    assert settings.stream_chunk_chars == 150
    assert settings.embedding_dim == 768
    assert settings.handoff_on_generation_fallback is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "3")
    monkeypatch.setenv("BREAKER_COOLDOWN_SECONDS", "5.5")
    monkeypatch.setenv("HANDOFF_ON_GENERATION_FALLBACK", "true")
    monkeypatch.setenv("SUPABASE_KEY", "anon-key")
    monkeypatch.setenv("LOG_LEVEL", "")

    settings = load_settings()

    assert settings.rate_limit_max_requests == 3
    assert settings.breaker_cooldown_seconds == 5.5
    assert settings.handoff_on_generation_fallback is True
    assert settings.supabase_key == "anon-key"
    # Empty values keep the default
    assert settings.log_level == "INFO"


def test_service_key_takes_precedence(monkeypatch):
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
    monkeypatch.setenv("SUPABASE_KEY", "anon-key")

    assert load_settings().supabase_key == "service-key"


def test_invalid_value_is_rejected(monkeypatch):
    monkeypatch.setenv("BREAKER_FAILURE_THRESHOLD", "0")

    with pytest.raises(ValidationError):
        load_settings()


def test_get_settings_is_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("RETRIEVAL_TOP_K", "5")
    reset_settings()

    assert get_settings().retrieval_top_k == 5


def test_dotenv_file_is_read_and_environment_wins(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "LLM_GENERATION_MODEL=gemini-1.5-pro\n"
        "RETRIEVAL_THRESHOLD_PENAL=0.8\n"
        "STREAM_CHUNK_CHARS=90\n"
    )
    monkeypatch.delenv("LLM_GENERATION_MODEL", raising=False)
    monkeypatch.delenv("RETRIEVAL_THRESHOLD_PENAL", raising=False)
    monkeypatch.setenv("STREAM_CHUNK_CHARS", "200")

    settings = load_settings()

    assert settings.generation_model == "gemini-1.5-pro"
    assert settings.retrieval_threshold_penal == 0.8
    assert settings.stream_chunk_chars == 200


def test_prefixed_model_and_tracing_variables(monkeypatch):
    monkeypatch.setenv("LLM_CLASSIFICATION_MODEL", "classifier-model")
    monkeypatch.setenv("LLM_EMBEDDING_MODEL", "embedding-model")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4317")
    monkeypatch.setenv("OTEL_TRACES_SAMPLER_ARG", "0.25")

    settings = load_settings()

    assert settings.classification_model == "classifier-model"
    assert settings.embedding_model == "embedding-model"
    assert settings.otlp_endpoint == "http://collector:4317"
    assert settings.trace_sampling_rate == 0.25


def test_specialty_thresholds_from_environment(monkeypatch):
    monkeypatch.setenv("RETRIEVAL_THRESHOLD_CIVIL", "0.65")
    monkeypatch.setenv("RETRIEVAL_THRESHOLD_LABORAL", "0.9")

    settings = load_settings()

    assert settings.retrieval_threshold_penal == 0.75
    assert settings.retrieval_threshold_civil == 0.65
    assert settings.retrieval_threshold_laboral == 0.9


def test_threshold_out_of_range_is_rejected(monkeypatch):
    monkeypatch.setenv("RETRIEVAL_THRESHOLD_PENAL", "1.5")

    with pytest.raises(ValidationError):
        load_settings()
