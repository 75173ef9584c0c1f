from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImportSettings(BaseSettings):
    database_url: str = Field(default="sqlite:///./product_import.db")
    redis_url: str | None = None

    tuning_enabled: bool = True
    tuning_lock_name: str = "product-import:engine-tuning"
    tuning_lock_timeout_seconds: int = Field(default=3600, ge=1)
    tuning_lock_wait_seconds: float = Field(default=5.0, ge=0.0)

    use_load_data_infile: bool = True
    load_chunk_size: int = Field(default=5000, ge=1)
    duplicate_policy: Literal["reject", "last_wins"] = "reject"
    purge_staging_after_merge: bool = True

    log_dir: str | None = None
    metrics_dir: str | None = None

    model_config = SettingsConfigDict(env_file=".env", env_prefix="PRODUCT_IMPORT_")


@lru_cache
def get_settings() -> ImportSettings:
    return ImportSettings()
