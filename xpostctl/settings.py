"""Process-level settings read from the environment."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment settings (XPOSTCTL_DATA_DIR, XPOSTCTL_LOG_LEVEL)."""
    model_config = SettingsConfigDict(env_prefix="XPOSTCTL_")

    data_dir: str = ".xpostctl"
    log_level: str = "WARNING"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
