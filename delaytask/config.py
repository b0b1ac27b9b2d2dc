import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .models import DEFAULT_QUEUE_QUOTAS

ENV_PREFIX = "DELAYTASK_"


class Settings(BaseModel):
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    prefix: str = "dt_"
    bucket_count: int = Field(default=4, ge=1)
    bucket_range_limit: int = Field(default=1, ge=1)
    queue_count: int = Field(default=4, ge=1)
    queue_quotas: Dict[int, int] = Field(default_factory=lambda: dict(DEFAULT_QUEUE_QUOTAS))

    lock_ttl_ms: int = Field(default=3000, gt=0)
    http_timeout: float = Field(default=1.0, gt=0)
    idle_sleep: float = Field(default=0.05, ge=0)
    stop_timeout: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator("queue_quotas", mode="before")
    @classmethod
    def _parse_quotas(cls, value):
        # "1:2,2:3,3:5" -> {1: 2, 2: 3, 3: 5}
        if isinstance(value, str):
            quotas = {}
            for pair in value.split(","):
                priority, _, quota = pair.partition(":")
                quotas[int(priority)] = int(quota)
            return quotas
        return value

    @field_validator("queue_quotas")
    @classmethod
    def _check_quotas(cls, value: Dict[int, int]) -> Dict[int, int]:
        if not value:
            raise ValueError("at least one priority lane is required")
        if any(quota < 1 for quota in value.values()):
            raise ValueError("lane quotas must be positive")
        return value

    @property
    def priorities(self) -> tuple:
        return tuple(sorted(self.queue_quotas))


def load_settings(environ: Optional[Mapping[str, str]] = None, **overrides) -> Settings:
    """
    Build Settings from DELAYTASK_* environment variables, then apply
    explicit overrides (CLI options); None overrides are ignored.
    """
    environ = os.environ if environ is None else environ
    values = {}
    for name in Settings.model_fields:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
