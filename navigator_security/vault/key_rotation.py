"""
Secure Store key rotation: re-seal every record under a new session key.

Every readable record is opened under the current session key before the
key is replaced, then sealed again under the new key and written back in
a single store write. Plaintext exists in memory only while a record is
being moved; it is never written to the store.

Records that are expired or fail authentication are dropped, as are
records that cannot be sealed again.

Security Note:
    Never log plaintext, ciphertext or key values.
"""
import logging
from typing import Any, TYPE_CHECKING

from ..exceptions import IntegrityError, SecureStoreError
from .config import load_session_key, replace_session_key

if TYPE_CHECKING:
    from .secure_store import SecureStore

logger = logging.getLogger("navigator.vault")


async def rotate_session_key(store: "SecureStore") -> dict:
    """Re-seal all records of ``store`` under a fresh session key.

    The caller must hold the store lock.

    Args:
        store: Store whose records are rotated.

    Returns:
        Stats dict with keys: total, rotated, dropped.

    Raises:
        KeyDerivationError: If the new session key cannot be produced.
    """
    stats = {"total": 0, "rotated": 0, "dropped": 0}
    names = store.keys()
    stats["total"] = len(names)
    old_key = load_session_key(store._session, create=False)
    now = store._clock()

    opened: dict[str, tuple[Any, float]] = {}
    for name in names:
        try:
            record = store._read_record(name)
            if record is None:
                continue
            if record.is_expired(now):
                raise IntegrityError("expired")
            if old_key is None:
                raise IntegrityError("no session key")
            opened[name] = (await store._open(record, old_key), record.created_at)
        except IntegrityError as err:
            store._storage.pop(store._storage_key(name), None)
            stats["dropped"] += 1
            logger.warning("Dropping record %s during rotation: %s", name, err)

    new_key = replace_session_key(store._session)

    for name, (value, created_at) in opened.items():
        try:
            record = await store._seal(value, new_key, created_at=created_at)
        except SecureStoreError as err:
            store._storage.pop(store._storage_key(name), None)
            stats["dropped"] += 1
            logger.error("Failed to re-seal %s during rotation: %s", name, err)
            continue
        store._write_record(name, record)
        stats["rotated"] += 1
    opened.clear()

    logger.info(
        "Session key rotated: total=%d rotated=%d dropped=%d",
        stats["total"], stats["rotated"], stats["dropped"],
    )
    return stats
