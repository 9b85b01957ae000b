from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./fieldsync.db"
    encryption_key: str = ""  # Fernet key for api keys at rest
    max_attempts: int = 5
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 6 * 3600.0
    permanent_backoff_multiplier: float = 4.0
    batch_size: int = 50
    claim_lease_seconds: int = 300
    cycle_lease_seconds: int = 900
    delivery_timeout_seconds: float = 30.0
    scheduler_tick_seconds: int = 60
    worker_id: str = ""  # defaults to hostname:pid when empty

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "FIELDSYNC_"

    @model_validator(mode="after")
    def _leases_outlast_one_delivery(self) -> "Settings":
        # Both leases are renewed before each delivery, so each must cover one delivery
        for name in ("claim_lease_seconds", "cycle_lease_seconds"):
            if getattr(self, name) <= self.delivery_timeout_seconds:
                raise ValueError(
                    f"{name} ({getattr(self, name)}) must be longer than "
                    f"delivery_timeout_seconds ({self.delivery_timeout_seconds})"
                )
        return self


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
