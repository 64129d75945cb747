from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    project_name: str = "SyncBridge"
    environment: Literal["local", "dev", "staging", "prod", "test"] = Field("local", alias="ENVIRONMENT")
    api_v1_prefix: str = "/api/v1"

    # Stores
    system_a_database_url: str = Field(..., alias="SYSTEM_A_DATABASE_URL")
    system_b_database_url: str = Field(..., alias="SYSTEM_B_DATABASE_URL")
    database_pool_pre_ping: bool = Field(True, alias="DATABASE_POOL_PRE_PING")
    system_a_table_prefix: str = Field("a_", alias="SYSTEM_A_TABLE_PREFIX")
    system_b_table_prefix: str = Field("b_", alias="SYSTEM_B_TABLE_PREFIX")

    # AWS / SQS transport
    aws_region: str = Field("us-east-1", alias="AWS_REGION")
    aws_access_key_id: str | None = Field(default=None, alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str | None = Field(default=None, alias="AWS_SECRET_ACCESS_KEY")
    aws_session_token: str | None = Field(default=None, alias="AWS_SESSION_TOKEN")
    sqs_endpoint_url: AnyHttpUrl | None = Field(default=None, alias="SQS_ENDPOINT_URL")

    # Pipelines
    enable_sync_pipelines: bool = Field(True, alias="ENABLE_SYNC_PIPELINES")
    a_to_b_queue_urls: str = Field("", alias="SYNC_A_TO_B_QUEUE_URLS")
    b_to_a_queue_urls: str = Field("", alias="SYNC_B_TO_A_QUEUE_URLS")
    a_to_b_consumer_group: str = Field("syncbridge-a-to-b", alias="SYNC_A_TO_B_CONSUMER_GROUP")
    b_to_a_consumer_group: str = Field("syncbridge-b-to-a", alias="SYNC_B_TO_A_CONSUMER_GROUP")
    dead_letter_queue_url: str | None = Field(default=None, alias="SYNC_DLQ_URL")
    poll_wait_seconds: int = Field(20, alias="SYNC_POLL_WAIT_SECONDS")
    max_messages: int = Field(5, alias="SYNC_MAX_MESSAGES")
    visibility_timeout: int | None = Field(default=None, alias="SYNC_VISIBILITY_TIMEOUT")
    preserve_ids: bool = Field(True, alias="SYNC_PRESERVE_IDS")
    strict_channel_prefix: bool = Field(False, alias="SYNC_STRICT_CHANNEL_PREFIX")

    # Retry / dead letter
    retry_max_attempts: int = Field(3, alias="SYNC_RETRY_MAX_ATTEMPTS", ge=1)
    retry_initial_delay: float = Field(1.0, alias="SYNC_RETRY_INITIAL_DELAY", ge=0)
    retry_max_delay: float = Field(30.0, alias="SYNC_RETRY_MAX_DELAY", ge=0)
    retry_multiplier: float = Field(2.0, alias="SYNC_RETRY_MULTIPLIER", ge=1)

    # Ledger maintenance
    ledger_retention_days: int = Field(7, alias="SYNC_LEDGER_RETENTION_DAYS", ge=1)

    # Observability
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_format: Literal["json", "text"] = Field("json", alias="LOG_FORMAT")

    @field_validator(
        "aws_access_key_id",
        "aws_secret_access_key",
        "aws_session_token",
        "sqs_endpoint_url",
        "dead_letter_queue_url",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value: str | None):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @staticmethod
    def _split_urls(raw: str) -> list[str]:
        return [part.strip() for part in raw.split(",") if part.strip()]

    @property
    def a_to_b_queue_url_list(self) -> list[str]:
        return self._split_urls(self.a_to_b_queue_urls)

    @property
    def b_to_a_queue_url_list(self) -> list[str]:
        return self._split_urls(self.b_to_a_queue_urls)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


settings = get_settings()
