# backend/callstream/config.py
from functools import lru_cache
from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # environment: "dev" for running the app locally, "test" for pytest
    ENV: str = "dev"

    DATABASE_URL: str | None = None
    TEST_DATABASE_URL: str | None = None
    DB_APP_ROLE: str | None = None
    DB_REQUIRE_SSL: bool = True

    # Fernet key (or any string, derived) used to seal raw webhook payloads at rest.
    APP_ENCRYPTION_KEY: str | None = Field(
        None, description="Payload encryption key. Must be set outside dev/test."
    )

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )

    # --- Tenant credentials / ingestion ---
    TENANT_API_KEY_HEADER: str = "x-api-key"
    EVENT_TYPE_HEADER: str = "x-event-type"

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    # IANA timezone name used by APScheduler (e.g., "UTC", "America/New_York").
    SCHEDULER_TZ: str = "UTC"

    # --- Event processor ---
    PROCESSOR_INTERVAL_SECONDS: float = 5.0
    PROCESSOR_BATCH_SIZE: int = 50
    # None drains the queue each cycle.
    PROCESSOR_MAX_EVENTS_PER_CYCLE: int | None = None
    # A claimed row becomes claimable again once its lease runs out.
    EVENT_CLAIM_LEASE_SECONDS: int = 60

    # --- Live fan-out ---
    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    BROADCAST_SEND_TIMEOUT_SECONDS: float = 5.0

    # --- Voicemail ---
    VOICEMAIL_DEDUPE_WINDOW_SECONDS: int = 60

    # --- Payload sanitizer ---
    SANITIZE_MAX_TEXT_CHARS: int = 500
    SANITIZE_MAX_ARRAY_ITEMS: int = 10
    SANITIZE_MAX_OBJECT_KEYS: int = 20
    SANITIZE_SAMPLE_KEYS: int = 5
    SANITIZE_MAX_DEPTH: int = 5
    SANITIZE_MAX_TOTAL_CHARS: int = 20000

    @model_validator(mode="after")
    def _check_encryption_key(self):
        # dev/test fall back to a derived development key
        if self.ENV in ("dev", "test"):
            return self
        if not self.APP_ENCRYPTION_KEY:
            raise ValueError("APP_ENCRYPTION_KEY must be set via environment for non-dev/test environments.")
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
