"""
Navigator Security settings.

Storage key names shared by the components and environment-driven
defaults. Every value read from the environment has a safe fallback so
that importing the package never fails on a missing variable.
"""
import os
from typing import Optional

# Session-scoped store keys
SESSION_KEY_NAME = "navigator-session-key"
CSRF_TOKEN_KEY = "navigator-csrf-token"

# Persistent store keys
ENCRYPTED_PREFIX = "navigator_encrypted:"
SECURITY_LOGS_KEY = "navigator_security_logs"

# Request stamping
CSRF_HEADER_NAME = "X-CSRF-Token"
CSRF_FIELD_NAME = "csrf_token"


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def env_int(name: str, default: int) -> int:
    """Read an integer from the environment.

    Raises:
        ValueError: If the variable is set but is not an integer.
    """
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as err:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from err


def env_bool(name: str, default: bool) -> bool:
    raw = env_str(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def env_list(name: str, default: Optional[list[str]] = None) -> list[str]:
    """Read a comma separated list from the environment."""
    raw = env_str(name)
    if raw is None:
        return list(default or [])
    return [item.strip() for item in raw.split(",") if item.strip()]


# Security Logger
SECURITY_LOG_LEVEL = env_str("NAVIGATOR_SECURITY_LOG_LEVEL", "low")
SECURITY_MAX_LOG_SIZE = env_int("NAVIGATOR_SECURITY_MAX_LOG_SIZE", 1000)
SECURITY_LOG_RETENTION = env_int(
    "NAVIGATOR_SECURITY_LOG_RETENTION", 7 * 24 * 60 * 60
)
SECURITY_CONSOLE_LOGGING = env_bool("NAVIGATOR_SECURITY_CONSOLE_LOGGING", True)
SECURITY_REMOTE_LOG_ENDPOINT = env_str("NAVIGATOR_SECURITY_REMOTE_LOG_ENDPOINT")

# Persistent storage location used by FileStore.from_env()
SECURITY_STORAGE_PATH = env_str(
    "NAVIGATOR_SECURITY_STORAGE_PATH", ".navigator_security.json"
)

# CSRF
CSRF_TOKEN_TTL = env_int("NAVIGATOR_SECURITY_CSRF_TTL", 60 * 60)
CSRF_ALLOWED_ORIGINS = env_list("NAVIGATOR_SECURITY_ALLOWED_ORIGINS")
