"""
POSTWATCH core.config.config: secure, fail-fast settings

- No insecure defaults for secrets.
- Reads from environment/.env and fails at startup if required vars are missing.
- Disallows known-bad placeholders (e.g., 'minioadmin', empty keys).
- Each worker loads only the sub-configs it needs through the cached getters.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Callable, Literal, Optional, TypeVar

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

T = TypeVar("T")

# ---------- Sub-configs ----------

class KafkaCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="KAFKA_")
    bootstrap: str = Field(..., description="Kafka bootstrap servers, e.g. kafka:9092")
    topic_events: str = Field(default="post_events")
    consumer_group: str = Field(default="postwatch-projector")
    client_id: str = Field(default="postwatch")
    max_event_bytes: int = Field(default=1_048_576, description="Batch byte limit for one event")
    dlt_suffix: str = Field(default=".DLT")
    send_retries: int = Field(default=5)
    send_retry_delay: float = Field(default=5.0)
    send_retry_max_delay: float = Field(default=50.0)


class RedisCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="REDIS_")
    url: str = Field(..., description="Redis URL, e.g. redis://redis:6379/0")
    key_prefix: str = Field(default="tq")
    resize_queue: str = Field(default="imageresizemessage")
    validation_queue: str = Field(default="contentsafetymessage")
    lease_seconds: float = Field(default=300.0)
    max_delivery_count: int = Field(default=10)
    send_retries: int = Field(default=6)
    send_retry_delay: float = Field(default=10.0)
    send_retry_max_delay: float = Field(default=60.0)


class S3Cfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="S3_")
    endpoint: str = Field(..., description="S3/MinIO endpoint, e.g. http://minio:9000")
    access_key: str = Field(..., description="S3 access key (no insecure default)")
    secret_key: str = Field(..., description="S3 secret key (no insecure default)")
    region: Optional[str] = Field(default=None)
    unvalidated_bucket: str = Field(default="unvalidated")
    validated_bucket: str = Field(default="validated")

    @model_validator(mode="after")
    def _reject_insecure_minio_defaults(self) -> "S3Cfg":
        bad = ("minioadmin", "MINIO_MINIOADMIN")
        if self.access_key in bad or self.secret_key in bad:
            raise ValueError("S3_ACCESS_KEY/SECRET_KEY must not be 'minioadmin'.")
        return self


class DatabaseCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="DB_")
    dsn: str = Field(..., description="SQLAlchemy async DSN, e.g. postgresql+asyncpg://...")
    echo: bool = Field(default=False)


class ContentSafetyCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="CONTENT_SAFETY_")
    endpoint: str = Field(..., description="Content Safety resource endpoint")
    key: str = Field(..., description="Subscription key (must be provided)")
    api_version: str = Field(default="2023-10-01")
    timeout: float = Field(default=30.0)
    image_severity_threshold: int = Field(default=2)

    @model_validator(mode="after")
    def _no_empty_key(self) -> "ContentSafetyCfg":
        if not self.key.strip():
            raise ValueError("CONTENT_SAFETY_KEY must be set and non-empty.")
        return self


class WorkerCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="WORKER_")
    env: Literal["dev", "staging", "prod"] = Field(default="prod", description="Deployment env")
    max_concurrent_calls: int = Field(default=5, description="Queue-side pool size per worker")
    moderation_slots: int = Field(default=1)
    resize_slots: int = Field(default=5)
    dead_letter_after: int = Field(default=5, description="Failed deliveries before dead-lettering")
    receive_wait: float = Field(default=5.0)
    resize_width: int = Field(default=500)
    resize_min_latency: float = Field(default=0.0, description="Minimum seconds per resize")
    image_validation_delay: float = Field(default=300.0)
    direct_verdict_write: bool = Field(default=False)
    not_found_retries: int = Field(default=10)
    not_found_delay: float = Field(default=3.0)
    projector_concurrency: int = Field(default=4)
    metrics_port: int = Field(default=9108)
    log_json: bool = Field(default=False)
    public_base_url: Optional[str] = Field(
        default=None, description="Prefix for image links stored on posts; container-relative when unset"
    )

    @model_validator(mode="after")
    def _positive_bounds(self) -> "WorkerCfg":
        for name in ("max_concurrent_calls", "moderation_slots", "resize_slots", "not_found_retries"):
            if getattr(self, name) < 1:
                raise ValueError(f"WORKER_{name.upper()} must be >= 1.")
        return self


# ---------- Cached getters ----------

@lru_cache()
def get_kafka_cfg() -> KafkaCfg:
    return KafkaCfg()


@lru_cache()
def get_redis_cfg() -> RedisCfg:
    return RedisCfg()


@lru_cache()
def get_s3_cfg() -> S3Cfg:
    return S3Cfg()


@lru_cache()
def get_database_cfg() -> DatabaseCfg:
    return DatabaseCfg()


@lru_cache()
def get_content_safety_cfg() -> ContentSafetyCfg:
    return ContentSafetyCfg()


@lru_cache()
def get_worker_cfg() -> WorkerCfg:
    return WorkerCfg()


def load_or_exit(getter: Callable[[], T]) -> T:
    """Call a settings getter, turning validation failures into a fail-fast exit."""
    try:
        return getter()
    except ValidationError as e:
        raise SystemExit(f"[CONFIG ERROR] {e}")  # noqa: TRY003
