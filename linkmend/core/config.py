from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCAN_EXTENSIONS = [".md", ".html", ".htm", ".js", ".jsx", ".ts", ".tsx", ".txt"]


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None
    user_agent: str = "linkmend-link-checker/1.0"
    http_connect_timeout_seconds: float = 5.0
    http_timeout_seconds: float = 10.0
    max_redirect_hops: int = 10
    max_concurrency: int = 12
    max_retries: int = 2
    retry_backoff_base_seconds: float = 0.5
    retry_backoff_max_seconds: float = 8.0
    redirects_as_broken: bool = False
    scan_extensions: list[str] = DEFAULT_SCAN_EXTENSIONS
    publish_enabled: bool = True
    pr_branch_prefix: str = "linkmend/fix-links"
    otel_enabled: bool = True
    otel_service_name: str = "linkmend"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LINKMEND_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
