"""
Configuration settings for the CRM simulation engine.

Uses Pydantic Settings to load environment variables for database connections,
backend selection, logging, rate limiting, circuit breaking, segmentation and
worker defaults.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BUCKET_SIZES: Dict[str, int] = {
    "contact": 50,
    "note": 40,
    "call": 25,
    "task": 30,
    "ticket": 15,
}


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("simcrm", alias="DB_NAME")
    db_pool_min_size: int = Field(1, alias="DB_POOL_MIN_SIZE")
    db_pool_max_size: int = Field(10, alias="DB_POOL_MAX_SIZE")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Backends and external collaborators
    backend: str = Field("postgres", alias="SIM_BACKEND")
    real_mode: bool = Field(False, alias="SIM_REAL_MODE")
    crm_api_token: str | None = Field(None, alias="CRM_API_TOKEN")

    # Segmentation
    segment_hours: float = Field(1.0, alias="SEGMENT_HOURS")
    timestamp_cache_ttl_s: int = Field(6 * 60 * 60, alias="TIMESTAMP_CACHE_TTL_S")
    segment_claim_ttl_s: int = Field(60 * 60, alias="SEGMENT_CLAIM_TTL_S")
    abort_flag_ttl_s: int = Field(6 * 60 * 60, alias="ABORT_FLAG_TTL_S")

    # Rate limiting
    bucket_refill_ms: int = Field(60_000, alias="BUCKET_REFILL_MS")
    rate_limit_cooldown_ms: int = Field(15_000, alias="RATE_LIMIT_COOLDOWN_MS")

    # Circuit breaker
    circuit_window_ms: int = Field(60_000, alias="CIRCUIT_WINDOW_MS")
    circuit_max_failures: int = Field(8, alias="CIRCUIT_MAX_FAILURES")
    circuit_cooldown_ms: int = Field(30_000, alias="CIRCUIT_COOLDOWN_MS")
    circuit_thinning_penalty: float = Field(0.4, alias="CIRCUIT_THINNING_PENALTY")

    # Timeouts
    primary_job_timeout_ms: int = Field(20_000, alias="PRIMARY_JOB_TIMEOUT_MS")
    secondary_job_timeout_ms: int = Field(15_000, alias="SECONDARY_JOB_TIMEOUT_MS")
    external_call_timeout_ms: int = Field(15_000, alias="EXTERNAL_CALL_TIMEOUT_MS")

    # Idempotency and bookkeeping
    idempotency_ttl_s: int = Field(24 * 60 * 60, alias="IDEMPOTENCY_TTL_S")
    secondary_marker_ttl_s: int = Field(24 * 60 * 60, alias="SECONDARY_MARKER_TTL_S")
    progress_flush_every: int = Field(10, alias="PROGRESS_FLUSH_EVERY")
    event_list_size: int = Field(200, alias="EVENT_LIST_SIZE")
    dlq_sample_size: int = Field(25, alias="DLQ_SAMPLE_SIZE")

    # Worker
    worker_concurrency: int = Field(4, alias="WORKER_CONCURRENCY")
    worker_poll_interval_ms: int = Field(200, alias="WORKER_POLL_INTERVAL_MS")
    # must exceed the longest job timeout
    job_lease_ms: int = Field(60_000, alias="JOB_LEASE_MS")

    # Replay
    replay_window_ms: int = Field(30_000, alias="REPLAY_WINDOW_MS")
    replay_max_calls: int = Field(5, alias="REPLAY_MAX_CALLS")
    replay_default_limit: int = Field(25, alias="REPLAY_DEFAULT_LIMIT")
    replay_max_limit: int = Field(100, alias="REPLAY_MAX_LIMIT")
    replay_live_max_limit: int = Field(50, alias="REPLAY_LIVE_MAX_LIMIT")
    replay_batch_ttl_s: int = Field(300, alias="REPLAY_BATCH_TTL_S")
    replay_recent_ttl_s: int = Field(600, alias="REPLAY_RECENT_TTL_S")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def segment_size_ms(self) -> int:
        return int(self.segment_hours * 60 * 60 * 1000)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["DEFAULT_BUCKET_SIZES", "Settings", "get_settings"]
