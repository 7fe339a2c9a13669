"""Orchestrator settings, read from the environment or a ``.env`` file.

``pydantic-settings`` coerces and range-checks every value.  The database
URL and the CI base URL are mandatory when the service runs for real; the
check is skipped under pytest so the suite can run with blanks.
"""

VERSION = "0.1.0"

import sys

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Checked once the module-level instance exists, never inside the model.
_REQUIRED_VARS: list[str] = [
    "DATABASE_URL",
    "CI_BASE_URL",
]


class Settings(BaseSettings):
    """Service configuration.

    Poll intervals are milliseconds, matching how the CI side expresses
    them.  ``SCHEDULER_ENABLED`` only seeds the runtime toggle exposed by
    the queue router.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str = ""
    DB_POOL_MIN_SIZE: int = Field(default=2, ge=1)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=30_000, ge=1_000)

    CI_BASE_URL: str = ""
    # Bearer token takes precedence over username/password.
    CI_API_TOKEN: str = ""
    CI_USERNAME: str = ""
    CI_PASSWORD: str = ""
    CI_REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)
    # Empty disables X-Hub-Signature-256 verification on webhooks.
    CI_WEBHOOK_SECRET: str = ""

    QUEUE_POLL_INTERVAL_MS: int = Field(default=10_000, ge=100)
    STATUS_POLL_INTERVAL_MS: int = Field(default=30_000, ge=100)
    MAX_CONCURRENT_BUILDS: int = Field(default=5, ge=1)
    SCHEDULER_ENABLED: bool = True
    QUEUE_MAX_RETRIES: int = Field(default=3, ge=1)

    FRONTEND_URL: str = "http://localhost:5174"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> "Settings":
        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        self.CI_BASE_URL = self.CI_BASE_URL.rstrip("/")
        return self


settings = Settings()


if "pytest" not in sys.modules:
    _missing = [v for v in _REQUIRED_VARS if not getattr(settings, v)]
    if _missing:
        print(
            f"[config] FATAL: set {', '.join(_missing)} before starting the orchestrator",
            file=sys.stderr,
        )
        sys.exit(1)
