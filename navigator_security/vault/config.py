"""
Secure Store configuration: fixed crypto parameters and the session key.

The session key is 32 random bytes, hex encoded, held only in the
session-scoped store under ``SESSION_KEY_NAME``. It is created lazily on
first use and dropped when the session ends.

Security Note:
    Never log key material. Only log whether a key was created or found.
"""
import secrets
import logging
from typing import Optional
from collections.abc import MutableMapping

from .. import conf
from ..exceptions import KeyDerivationError

logger = logging.getLogger("navigator.vault")

PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 32
IV_LENGTH = 16  # AES block size
MAC_LENGTH = 32  # HMAC-SHA256
DATA_EXPIRY = 24 * 60 * 60  # seconds

_SESSION_KEY_HEX_LENGTH = KEY_LENGTH * 2


def generate_session_key() -> str:
    """Generate a random 32-byte session key, hex encoded.

    Raises:
        KeyDerivationError: If the system CSPRNG is unavailable.
    """
    try:
        return secrets.token_hex(KEY_LENGTH)
    except (OSError, NotImplementedError) as err:
        raise KeyDerivationError(
            "Unable to generate session key: no secure random source"
        ) from err


def _is_valid_session_key(value: str) -> bool:
    if len(value) != _SESSION_KEY_HEX_LENGTH:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def load_session_key(
    session: MutableMapping[str, str], create: bool = True
) -> Optional[bytes]:
    """Return the raw session key, creating it when missing.

    A malformed stored key is replaced: records sealed under it can no
    longer be verified and will be treated as absent.

    Args:
        session: Session-scoped store.
        create: When False, return None instead of creating a key.

    Returns:
        32-byte key or None.

    Raises:
        KeyDerivationError: If a new key is required and cannot be produced.
    """
    stored = session.get(conf.SESSION_KEY_NAME)
    if stored is not None and _is_valid_session_key(stored):
        return bytes.fromhex(stored)
    if stored is not None:
        logger.warning("Malformed session key found, replacing it")
    if not create:
        return None
    value = generate_session_key()
    session[conf.SESSION_KEY_NAME] = value
    logger.debug("Created new session key")
    return bytes.fromhex(value)


def replace_session_key(session: MutableMapping[str, str]) -> bytes:
    """Install a fresh session key and return it."""
    value = generate_session_key()
    session[conf.SESSION_KEY_NAME] = value
    return bytes.fromhex(value)


def drop_session_key(session: MutableMapping[str, str]) -> None:
    session.pop(conf.SESSION_KEY_NAME, None)
