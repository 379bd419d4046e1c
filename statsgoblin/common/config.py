from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GOBLIN_", case_sensitive=False)

    log_level: str = "INFO"

    # opensearch
    opensearch_url: str = "http://localhost:9200"
    opensearch_username: str | None = None
    opensearch_password: str | None = None
    opensearch_verify_certs: bool = True
    metrics_index_prefix: str = "search-metrics"
    index_shards: int = 1
    index_replicas: int = 1
    ism_policy_id: str | None = None
    store_timeout_seconds: float = 10.0

    # redis
    redis_mode: str = "standalone"  # standalone | sentinel
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    redis_sentinels: str = ""  # "host1:26379,host2:26379"
    redis_master_name: str = "mymaster"

    # ingestion
    queue_name: str = "search-metrics"
    job_name: str = "search-metric"
    worker_concurrency: int = 4
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    lock_seconds: float = 30.0
    stalled_check_seconds: float = 15.0

    # api
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    cors_allowed_origin: str = "*"

    # analytics
    default_limit: int = 10
    max_limit: int = 1000
    max_buckets: int = 10_000


settings = Settings()
