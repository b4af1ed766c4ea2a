import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # API Configuration
    api_url: str = Field(default="http://localhost:5000/api", alias="API_URL")
    api_timeout: float = Field(default=10.0, alias="API_TIMEOUT")

    # Retry Configuration
    retry_max_retries: int = Field(default=3, alias="RETRY_MAX_RETRIES")
    retry_delay_ms: int = Field(default=1000, alias="RETRY_DELAY_MS")
    retry_exponential: bool = Field(default=True, alias="RETRY_EXPONENTIAL")

    # Circuit Breaker Configuration
    circuit_failure_threshold: int = Field(
        default=5, alias="CIRCUIT_FAILURE_THRESHOLD"
    )
    circuit_reset_timeout: float = Field(default=60.0, alias="CIRCUIT_RESET_TIMEOUT")

    # Cache Configuration
    tasks_stale_seconds: float = Field(default=120.0, alias="TASKS_STALE_SECONDS")
    user_stale_seconds: float = Field(default=300.0, alias="USER_STALE_SECONDS")
    health_stale_seconds: float = Field(default=30.0, alias="HEALTH_STALE_SECONDS")
    status_stale_seconds: float = Field(default=300.0, alias="STATUS_STALE_SECONDS")
    health_check_interval: float = Field(default=60.0, alias="HEALTH_CHECK_INTERVAL")

    # Credentials
    credentials_path: str | None = Field(default=None, alias="CREDENTIALS_PATH")

    debug: bool = Field(default=False, alias="DEBUG")


def load_settings() -> Settings:
    """Build settings from the process environment (after .env is loaded)."""
    fields = {
        field.alias: os.environ[field.alias]
        for field in Settings.model_fields.values()
        if field.alias and field.alias in os.environ
    }
    return Settings.model_validate(fields)


global_settings = load_settings()
