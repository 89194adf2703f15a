import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# environment variable -> SchedulerConfig field
ENV_VARS: Dict[str, str] = {
    "DATABASE_URL": "database_url",
    "WEBHOOK_URL": "webhook_url",
    "WEBHOOK_TIMEOUT": "webhook_timeout",
    "WEBHOOK_MAX_ATTEMPTS": "webhook_max_attempts",
    "WEBHOOK_RETRY_BACKOFF": "webhook_retry_backoff",
    "JOB_DURATION": "job_duration",
}


class SchedulerConfig(BaseModel):
    """
    Settings for a scheduler instance.

    Built once at startup and passed to the components that need it; nothing
    else in the package reads the process environment.
    """
    database_url: str = Field(DEFAULT_DATABASE_URL, description="SQLAlchemy async database URL")
    webhook_url: Optional[str] = Field(None, description="Completion webhook endpoint; None disables notifications")
    webhook_timeout: float = Field(5.0, gt=0, description="Seconds allowed for one webhook delivery attempt")
    webhook_max_attempts: int = Field(1, ge=1, description="Delivery attempts per event")
    webhook_retry_backoff: float = Field(0.5, ge=0, description="Base delay in seconds between delivery attempts")
    job_duration: float = Field(3.0, ge=0, description="Seconds of simulated work per job")

    @field_validator("webhook_url")
    def blank_url_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SchedulerConfig":
        """
        Build a config from environment variables, falling back to defaults.

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {
            field: environ[var] for var, field in ENV_VARS.items() if var in environ
        }
        return cls(**values)
