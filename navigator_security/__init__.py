"""Navigator Security: client-side security utility core.

Components are plain instances wired by the caller; nothing is created
or started on import.
"""
from .version import __version__
from .exceptions import (
    SecurityError,
    SecureStoreError,
    KeyDerivationError,
    RateLimitExceeded,
)
from .storage import MemoryStore, FileStore, SessionStore
from .context import request_context, set_current_user
from .logger import (
    SecurityLogger,
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
    EventFilter,
    LoggerConfig,
    RemoteLogSink,
)
from .vault import SecureStore
from .csrf import CSRFManager, CSRFConfig
from .ratelimit import (
    RateLimiter,
    RateLimitConfig,
    RateLimitResult,
    DEFAULT_LIMITS,
    create_rate_limiters,
    rate_limited,
)
from . import sanitizer

__all__ = [
    "__version__",
    "SecurityError",
    "SecureStoreError",
    "KeyDerivationError",
    "RateLimitExceeded",
    "MemoryStore",
    "FileStore",
    "SessionStore",
    "request_context",
    "set_current_user",
    "SecurityLogger",
    "SecurityEvent",
    "SecurityEventType",
    "SecuritySeverity",
    "EventFilter",
    "LoggerConfig",
    "RemoteLogSink",
    "SecureStore",
    "CSRFManager",
    "CSRFConfig",
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitResult",
    "DEFAULT_LIMITS",
    "create_rate_limiters",
    "rate_limited",
    "sanitizer",
]
