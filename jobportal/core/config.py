from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = "local-anon-key"
    poster_bucket: str = "posters"
    request_timeout_seconds: float = 10.0
    login_path: str = "/login"
    log_level: str = "INFO"
    otel_enabled: bool = True
    otel_service_name: str = "jobportal-client"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JOBPORTAL_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
