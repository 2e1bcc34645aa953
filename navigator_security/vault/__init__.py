"""Secure Store: encrypted values bound to a client session.

Security Note (Threat Model):
    The session key lives in the session-scoped store next to the running
    process. Anyone able to read both the session store and the persistent
    store can recover plaintext. The store protects persisted values
    against tampering and against disclosure once the session has ended;
    it does not protect against a compromised host.
"""

from .secure_store import SecureStore
from .key_rotation import rotate_session_key
from .record import EncryptedRecord
from .crypto import constant_time_equals
from .config import (
    PBKDF2_ITERATIONS,
    KEY_LENGTH,
    SALT_LENGTH,
    IV_LENGTH,
    DATA_EXPIRY,
    generate_session_key,
    load_session_key,
)

__all__ = [
    "SecureStore",
    "rotate_session_key",
    "EncryptedRecord",
    "constant_time_equals",
    "PBKDF2_ITERATIONS",
    "KEY_LENGTH",
    "SALT_LENGTH",
    "IV_LENGTH",
    "DATA_EXPIRY",
    "generate_session_key",
    "load_session_key",
]
