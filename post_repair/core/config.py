from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    db_host: str = "localhost"
    db_port: int = 5432
    db_username: str = "postgres"
    db_pass: str = ""
    db_name: str = "onecms"
    db_pool_max_size: int = 2
    os_host: str = "https://localhost:9200"
    os_username: str | None = None
    os_password: str | None = None
    os_verify_tls: bool = True
    post_index: str = "one-post-index"
    author_index: str = "one-author-index"
    post_chunk_size: int = 100
    backlog_publisher: str = "popmama"
    request_timeout_seconds: float = 10.0
    run_timeout_seconds: float = 30.0
    otel_enabled: bool = False
    otel_service_name: str = "post-url-repair"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
