import os
import pytest


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "LOG_LEVEL",
    "LOG_JSON",
    "REDIS_URL",
    "USER_PROFILE_BACKEND",
    "USER_PROFILE_KEY_PREFIX",
    "USER_PROFILE_TTL_SECONDS",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture(autouse=True)
def singleton_isolation():
    """Reset cached settings and the global decision service between tests."""
    from src.core.config import reset_settings
    from src.core.decisioning.service import reset_decision_service

    reset_settings()
    reset_decision_service()
    try:
        yield
    finally:
        reset_settings()
        reset_decision_service()
