"""Runtime settings for the decision service.

Only the ambient wiring lives here; experiment data comes from the datafile.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    REDIS_URL: str = "redis://localhost:6379/0"

    # Sticky bucketing backend (none|memory|redis)
    USER_PROFILE_BACKEND: str = "none"
    USER_PROFILE_KEY_PREFIX: str = "user_profile:"
    # 0 disables expiry of stored profiles
    USER_PROFILE_TTL_SECONDS: int = 0

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    global _settings_cache
    _settings_cache = None
