"""
Settings — runtime configuration read from the environment.

Values come from real environment variables first, then from a `.env` file
(parsed with python-dotenv; os.environ itself is left untouched), then from
the defaults below. Empty strings count as unset.

    settings = Settings.from_env()
    settings = Settings.from_env(env_file="/etc/gpuqueue/.env")
    settings = Settings(max_concurrent_jobs=2)   # explicit, e.g. in tests
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field

PLACEHOLDER_API_KEY = "your_api_key_here"

# field name → environment variable
_ENV_VARS: dict[str, str] = {
    "max_concurrent_jobs": "MAX_CONCURRENT_JOBS",
    "rate_limit_per_second": "RATE_LIMIT_PER_SECOND",
    "max_retry_attempts": "MAX_RETRY_ATTEMPTS",
    "budget_limit_daily": "BUDGET_LIMIT_DAILY",
    "budget_limit_monthly": "BUDGET_LIMIT_MONTHLY",
    "tick_interval": "TICK_INTERVAL",
    "runpod_api_key": "RUNPOD_API_KEY",
    "runpod_rest_url": "RUNPOD_REST_URL",
    "request_timeout": "REQUEST_TIMEOUT",
    "database_path": "DATABASE_PATH",
}


class Settings(BaseModel):
    """
    max_concurrent_jobs   — cap on jobs dispatched but not yet finished
    rate_limit_per_second — token bucket capacity, reset every second
    max_retry_attempts    — dispatch attempts before a job is dead-lettered
    budget_limit_daily    — submissions are refused once today's spend reaches this
    budget_limit_monthly  — reported in budget status only
    tick_interval         — scheduler period in seconds
    """

    model_config = ConfigDict(frozen=True)

    max_concurrent_jobs: int = Field(default=5, ge=1)
    rate_limit_per_second: int = Field(default=2, ge=1)
    max_retry_attempts: int = Field(default=5, ge=1)
    budget_limit_daily: float = Field(default=50.0, ge=0)
    budget_limit_monthly: float = Field(default=500.0, ge=0)
    tick_interval: float = Field(default=1.0, gt=0)
    runpod_api_key: str = ""
    runpod_rest_url: str = "https://api.runpod.ai/v2"
    request_timeout: float = Field(default=30.0, gt=0)
    database_path: Path = Path("gpuqueue.db")

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "Settings":
        file_values = dotenv_values(env_file or find_dotenv(usecwd=True))
        environ = {**file_values, **os.environ}
        values: dict[str, Any] = {}
        for field_name, var in _ENV_VARS.items():
            raw = environ.get(var)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        return cls.model_validate(values)

    @property
    def is_configured(self) -> bool:
        return bool(self.runpod_api_key) and self.runpod_api_key != PLACEHOLDER_API_KEY
