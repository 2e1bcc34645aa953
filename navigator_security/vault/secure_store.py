"""
SecureStore: encrypted key-value storage over a persistent store.

Provides the public API for the Secure Store:
- ``put(key, value)``: seal and persist a value
- ``get(key, default)``: verify, decrypt and return a value
- ``remove(key)``: delete a value
- ``rotate_key()``: move every record to a fresh session key

Values are sealed with a key derived from the session key (held in the
session-scoped store) and a per-record salt. A record that is expired,
fails authentication or cannot be parsed is evicted and reported as
absent: an attacker who tampers with the persistent store can delete
values but never inject them.

Security Note:
    Never log plaintext or ciphertext values. Only log key names and
    operations.
"""
import time
import asyncio
import binascii
import logging
from typing import Any, Callable, Optional
from collections.abc import MutableMapping

from .. import conf
from ..exceptions import IntegrityError, SecureStoreError
from ..logger import SecurityLogger
from .config import DATA_EXPIRY, drop_session_key, load_session_key
from .crypto import deserialize_value, open_sealed, seal, serialize_value
from .key_rotation import rotate_session_key
from .record import EncryptedRecord

logger = logging.getLogger("navigator.vault")


class SecureStore:
    """Encrypted store bound to a session key.

    Operations on one store are serialized by an ``asyncio.Lock``; the
    CPU-bound key derivation runs in a worker thread so the event loop is
    never blocked for the PBKDF2 rounds.

    Args:
        storage: Persistent string store holding the sealed records.
        session: Session-scoped store holding the session key.
        security_logger: Receives encryption error events.
        clock: Wall clock returning epoch seconds.
    """

    def __init__(
        self,
        storage: MutableMapping[str, str],
        session: MutableMapping[str, str],
        *,
        security_logger: Optional[SecurityLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._session = session
        self._security = security_logger
        self._clock = clock
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f'<SecureStore items={len(self.keys())}>'

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_key(self, key: str) -> None:
        """Validate a store key name.

        Raises:
            ValueError: If key is empty or not a string.
        """
        if not isinstance(key, str) or not key:
            raise ValueError("Secure store key must be a non-empty string")

    def _storage_key(self, key: str) -> str:
        return f"{conf.ENCRYPTED_PREFIX}{key}"

    def _evict(self, key: str, operation: str, reason: str) -> None:
        self._storage.pop(self._storage_key(key), None)
        logger.warning("Evicted record %s during %s: %s", key, operation, reason)
        if self._security is not None:
            self._security.log_encryption_error(
                operation, reason, {"key": key}
            )

    def _read_record(self, key: str) -> Optional[EncryptedRecord]:
        raw = self._storage.get(self._storage_key(key))
        if raw is None:
            return None
        return EncryptedRecord.from_storage(raw)

    def _write_record(self, key: str, record: EncryptedRecord) -> None:
        self._storage[self._storage_key(key)] = record.to_storage()

    async def _seal(
        self, value: Any, session_key: bytes, created_at: Optional[float] = None
    ) -> EncryptedRecord:
        try:
            plaintext = serialize_value(value)
        except TypeError as err:
            raise SecureStoreError(f"Value cannot be serialized: {err}") from err
        try:
            sealed = await asyncio.to_thread(seal, plaintext, session_key)
        except (ValueError, TypeError) as err:
            raise SecureStoreError(f"Encryption failed: {err}") from err
        return EncryptedRecord(
            **sealed,
            created_at=self._clock() if created_at is None else created_at,
        )

    async def _open(self, record: EncryptedRecord, session_key: bytes) -> Any:
        plaintext = await asyncio.to_thread(
            open_sealed,
            record.ciphertext,
            record.salt,
            record.iv,
            record.mac,
            session_key,
        )
        try:
            return deserialize_value(plaintext)
        except (ValueError, binascii.Error) as err:
            raise IntegrityError("Decrypted payload is not valid") from err

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def put(self, key: str, value: Any) -> None:
        """Seal and persist a value.

        Supported types: str, int, float, dict, list, bytes, bool, None.

        Args:
            key: Record name.
            value: Value to seal.

        Raises:
            ValueError: If key is invalid.
            KeyDerivationError: If no session key can be produced.
            SecureStoreError: If the value cannot be serialized or sealed.
        """
        self._validate_key(key)
        async with self._lock:
            session_key = load_session_key(self._session)
            try:
                record = await self._seal(value, session_key)
            except SecureStoreError as err:
                logger.error("Unable to store %s: %s", key, err)
                if self._security is not None:
                    self._security.log_encryption_error(
                        "put", str(err), {"key": key}
                    )
                raise
            self._write_record(key, record)
        logger.debug("Secure store put: key=%s", key)

    async def get(self, key: str, default: Any = None) -> Any:
        """Verify, decrypt and return a value.

        Expired, tampered and unreadable records are evicted.

        Args:
            key: Record name.
            default: Value returned when the record is absent or unusable.

        Returns:
            The stored value, or ``default``.
        """
        self._validate_key(key)
        async with self._lock:
            try:
                record = self._read_record(key)
            except IntegrityError as err:
                self._evict(key, "get", str(err))
                return default
            if record is None:
                return default
            if record.is_expired(self._clock()):
                self._storage.pop(self._storage_key(key), None)
                logger.debug("Secure store record %s expired", key)
                return default
            session_key = load_session_key(self._session, create=False)
            if session_key is None:
                self._evict(key, "get", "No session key available")
                return default
            try:
                return await self._open(record, session_key)
            except IntegrityError as err:
                self._evict(key, "get", str(err))
                return default

    async def remove(self, key: str) -> None:
        self._validate_key(key)
        async with self._lock:
            self._storage.pop(self._storage_key(key), None)
        logger.debug("Secure store remove: key=%s", key)

    async def rotate_key(self) -> dict:
        """Re-seal every record under a new session key.

        Returns:
            Stats dict with keys: total, rotated, dropped.
        """
        async with self._lock:
            return await rotate_session_key(self)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def keys(self) -> list[str]:
        """Names of the records held in the persistent store."""
        prefix = conf.ENCRYPTED_PREFIX
        return [key[len(prefix):] for key in self._storage if key.startswith(prefix)]

    def has(self, key: str) -> bool:
        """True when a parseable, unexpired record exists for ``key``.

        Authentication is not checked here; ``get`` may still evict it.
        """
        try:
            record = self._read_record(key)
        except IntegrityError:
            return False
        return record is not None and not record.is_expired(self._clock())

    def clear(self) -> int:
        """Remove every sealed record. Returns the number removed."""
        names = self.keys()
        for name in names:
            self._storage.pop(self._storage_key(name), None)
        logger.info("Cleared %d secure store record(s)", len(names))
        return len(names)

    def purge_expired(self) -> int:
        """Evict expired and corrupted records. Returns the number removed."""
        removed = 0
        now = self._clock()
        for name in self.keys():
            try:
                record = self._read_record(name)
            except IntegrityError:
                record = None
            if record is None or record.is_expired(now):
                self._storage.pop(self._storage_key(name), None)
                removed += 1
        if removed:
            logger.debug("Purged %d expired secure store record(s)", removed)
        return removed

    def initialize(self) -> None:
        """Ensure a session key exists and drop unusable records.

        Raises:
            KeyDerivationError: If no session key can be produced.
        """
        load_session_key(self._session)
        self.purge_expired()
        logger.debug("Secure store initialized")

    def cleanup(self) -> None:
        """Forget the session key. Existing records become unreadable."""
        drop_session_key(self._session)
        logger.debug("Secure store session key dropped")

    def stats(self) -> dict[str, int]:
        total_size = 0
        expired = 0
        names = self.keys()
        now = self._clock()
        for name in names:
            raw = self._storage.get(self._storage_key(name), "")
            total_size += len(raw)
            try:
                record = EncryptedRecord.from_storage(raw)
            except IntegrityError:
                expired += 1
                continue
            if now - record.created_at > DATA_EXPIRY:
                expired += 1
        return {
            "total_items": len(names),
            "total_size": total_size,
            "expired_items": expired,
        }
