import os
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from jobcrawler.utils.db_utils import database_url_from_env, to_postgres_dsn
from jobcrawler.utils.env_loader import env_int, load_environment


DEFAULT_USER_AGENT = "JobCrawler/1.0 (+contact)"


def _config_path() -> str:
    return os.getenv("JOBCRAWLER_CONFIG") or os.path.join(
        os.path.dirname(__file__), "../config/config.yaml"
    )


class FetcherSettings(BaseModel):
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout_seconds: float = 60.0
    per_host_delay_ms: int = 1000
    per_host_concurrency: int = 2
    global_concurrency: int = 5
    request_max_retries: int = 2
    retry_base_delay_ms: int = 250
    retry_max_delay_ms: int = 2000
    # 429 / 403 push the host's next slot this far into the future
    rate_limit_backoff_seconds: float = 30.0
    max_redirects: int = 10
    # idle per-host pacing states beyond this many are dropped
    max_tracked_hosts: int = 4096


class RobotsSettings(BaseModel):
    fail_open: bool = False
    allow_ats_adapter_when_unavailable: bool = True
    cache_ttl_hours: float = 12.0
    unavailable_ttl_hours: float = 6.0
    max_unavailable_hosts: int = 2048


class SitemapSettings(BaseModel):
    max_depth: int = 3
    max_sitemaps: int = 50
    max_urls: int = 200
    max_bytes: int = 2_000_000


class PipelineSettings(BaseModel):
    max_company_seconds: int = 300
    max_ats_probes: int = 25
    max_shortlink_resolutions: int = 2
    probe_max_bytes: int = 2_000_000
    run_concurrency: int = 4
    max_saved_html_bytes: int = 500_000


class DaemonSettings(BaseModel):
    worker_count: int = 8
    poll_interval_ms: int = 1000
    lock_ttl_seconds: int = 600
    success_interval_minutes: int = 60
    failure_backoff_minutes: List[int] = Field(default_factory=lambda: [5, 15, 60, 360, 1440])
    jitter_min_seconds: int = 5
    jitter_max_seconds: int = 30
    shutdown_grace_seconds: float = 5.0
    bootstrap_interval_seconds: int = 300
    metrics_port: int = 8000


class CanarySettings(BaseModel):
    max_duration_seconds: int = 600
    request_timeout_seconds: float = 20.0
    max_requests_per_host: int = 75
    max_total_requests: int = 5000
    max_429_rate: float = 0.08
    min_requests_for_429_rate: int = 25
    max_consecutive_errors: int = 25
    max_attempts_per_request: int = 1
    company_limit: int = 50


class Config(BaseSettings):
    postgres_url: str = Field(default_factory=database_url_from_env)
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: Optional[str] = None

    log_level: str = "INFO"
    log_path: str = "/data/logs/jobcrawler.log"

    fetcher: FetcherSettings = Field(default_factory=FetcherSettings)
    robots: RobotsSettings = Field(default_factory=RobotsSettings)
    sitemap: SitemapSettings = Field(default_factory=SitemapSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    daemon: DaemonSettings = Field(default_factory=DaemonSettings)
    canary: CanarySettings = Field(default_factory=CanarySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # precedence: explicit kwargs -> environment -> .env -> config.yaml -> defaults
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=_config_path()),
        )


def _load_yaml_config() -> Dict[str, Any]:
    config_path = _config_path()
    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(**overrides: Any) -> Config:
    load_environment()
    config = Config(**overrides)

    # Legacy flat variables are still environment, so they win over config.yaml.
    database_url = os.getenv("JOBCRAWLER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if database_url and "postgres_url" not in overrides and not os.getenv("POSTGRES_URL"):
        config.postgres_url = to_postgres_dsn(database_url)

    mongo_uri = os.getenv("MONGO_URI")
    if mongo_uri and "mongo_url" not in overrides:
        config.mongo_url = mongo_uri

    workers = env_int("WORKERS")
    if workers is not None and workers > 0:
        config.daemon.worker_count = workers

    user_agent = os.getenv("CRAWLER_USER_AGENT")
    if user_agent:
        config.fetcher.user_agent = user_agent

    return config


def get_crawler_user_agent() -> str:
    """Return the configured crawler user-agent string."""
    config = load_config()
    return config.fetcher.user_agent


def describe_config(config: Config) -> Dict[str, Any]:
    """Dump the effective settings without connection secrets."""
    data = config.model_dump()
    data.pop("postgres_url", None)
    data.pop("mongo_url", None)
    data["config_file"] = _config_path() if _load_yaml_config() else None
    return data
