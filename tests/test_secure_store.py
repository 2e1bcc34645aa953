"""
Tests for the Secure Store.

Tests cover:
- put/get round trips for every supported value type
- Tamper detection on ciphertext, MAC and malformed records
- Expiry boundaries and eviction
- Session key rotation
- Maintenance helpers (keys, has, clear, purge_expired, stats)
- Crypto core helpers
"""
import base64

import orjson
import pytest

from navigator_security import conf
from navigator_security.exceptions import KeyDerivationError, SecureStoreError
from navigator_security.logger import SecurityEventType
from navigator_security.vault import DATA_EXPIRY, SecureStore, constant_time_equals
from navigator_security.vault import config as vault_config
from navigator_security.vault.record import EncryptedRecord
from navigator_security.vault.crypto import (
    deserialize_value,
    open_sealed,
    seal,
    serialize_value,
)
from navigator_security.exceptions import IntegrityError


@pytest.fixture
def store(storage, session, security_logger, clock):
    return SecureStore(
        storage, session, security_logger=security_logger, clock=clock
    )


def _tamper(storage, key: str, field: str) -> None:
    storage_key = f"{conf.ENCRYPTED_PREFIX}{key}"
    doc = orjson.loads(storage[storage_key])
    raw = bytearray(base64.b64decode(doc[field]))
    raw[0] ^= 0x01
    doc[field] = base64.b64encode(bytes(raw)).decode("ascii")
    storage[storage_key] = orjson.dumps(doc).decode("utf-8")


# --- Test Round Trip ---

class TestRoundTrip:
    """put followed by get returns the original value."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [
        "secret",
        42,
        3.14,
        True,
        None,
        {"token": "abc", "nested": {"n": [1, 2]}},
        [1, "two", 3.0],
        b"\x00\x01binary",
        {"__navigator_bytes_b64__": "abc"},
        {"t": "bytes", "v": "abc"},
        {"t": "json"},
    ])
    async def test_round_trip(self, store, value):
        await store.put("item", value)
        assert await store.get("item") == value

    @pytest.mark.asyncio
    async def test_missing_key_returns_default(self, store):
        assert await store.get("nope") is None
        assert await store.get("nope", "fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_overwrite(self, store):
        await store.put("item", "one")
        await store.put("item", "two")
        assert await store.get("item") == "two"

    @pytest.mark.asyncio
    async def test_record_never_holds_plaintext(self, store, storage):
        await store.put("item", "very-secret-value")
        raw = storage[f"{conf.ENCRYPTED_PREFIX}item"]
        assert "very-secret-value" not in raw

    @pytest.mark.asyncio
    async def test_session_key_created_on_first_put(self, store, session):
        assert conf.SESSION_KEY_NAME not in session
        await store.put("item", 1)
        assert len(session[conf.SESSION_KEY_NAME]) == 64

    @pytest.mark.asyncio
    async def test_remove(self, store):
        await store.put("item", 1)
        await store.remove("item")
        assert await store.get("item") is None

    @pytest.mark.asyncio
    async def test_invalid_key(self, store):
        with pytest.raises(ValueError):
            await store.put("", 1)

    @pytest.mark.asyncio
    async def test_unserializable_value_raises(self, store, security_logger):
        with pytest.raises(SecureStoreError):
            await store.put("item", {1, 2, 3})
        events = security_logger.get_logs_by_type(SecurityEventType.ENCRYPTION_ERROR)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_key_derivation_failure_raises(self, store, monkeypatch):
        def broken(n):
            raise OSError("no entropy")
        monkeypatch.setattr(vault_config.secrets, "token_hex", broken)
        with pytest.raises(KeyDerivationError):
            await store.put("item", 1)


# --- Test Tamper Detection ---

class TestTamperDetection:
    """Modified records are evicted and reported as absent."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["ciphertext", "mac", "iv", "salt"])
    async def test_tampered_field(self, store, storage, security_logger, field):
        await store.put("item", {"card": "4111"})
        _tamper(storage, "item", field)
        assert await store.get("item") is None
        assert f"{conf.ENCRYPTED_PREFIX}item" not in storage
        events = security_logger.get_logs_by_type(SecurityEventType.ENCRYPTION_ERROR)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_corrupted_document(self, store, storage):
        storage[f"{conf.ENCRYPTED_PREFIX}item"] = "{garbage"
        assert await store.get("item", "default") == "default"
        assert f"{conf.ENCRYPTED_PREFIX}item" not in storage

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        b'{"t": "bytes", "v": "abc"}',
        b'{"t": "pickle", "v": "x"}',
        b'{"__navigator_bytes_b64__": "abc"}',
        b"\xff\xfe",
    ])
    async def test_authentic_but_malformed_payload(self, store, storage, session, clock, payload):
        session_key = vault_config.load_session_key(session)
        record = EncryptedRecord(**seal(payload, session_key), created_at=clock.now)
        storage[f"{conf.ENCRYPTED_PREFIX}item"] = record.to_storage()
        assert await store.get("item", "default") == "default"
        assert f"{conf.ENCRYPTED_PREFIX}item" not in storage

    @pytest.mark.asyncio
    async def test_wrong_session_key(self, store, session):
        await store.put("item", "value")
        session[conf.SESSION_KEY_NAME] = vault_config.generate_session_key()
        assert await store.get("item") is None

    @pytest.mark.asyncio
    async def test_missing_session_key(self, store, storage):
        await store.put("item", "value")
        store.cleanup()
        assert await store.get("item") is None
        assert store.keys() == []


# --- Test Expiry ---

class TestExpiry:
    """Records older than the expiry window are absent."""

    @pytest.mark.asyncio
    async def test_expired_just_past_window(self, store, storage, clock):
        await store.put("item", "value")
        clock.advance(DATA_EXPIRY + 0.001)
        assert await store.get("item") is None
        assert f"{conf.ENCRYPTED_PREFIX}item" not in storage

    @pytest.mark.asyncio
    async def test_live_at_window_edge(self, store, clock):
        await store.put("item", "value")
        clock.advance(DATA_EXPIRY)
        assert await store.get("item") == "value"

    @pytest.mark.asyncio
    async def test_has_respects_expiry(self, store, clock):
        await store.put("item", "value")
        assert store.has("item") is True
        clock.advance(DATA_EXPIRY + 1)
        assert store.has("item") is False


# --- Test Key Rotation ---

class TestKeyRotation:
    """rotate_key moves every record to a new session key."""

    @pytest.mark.asyncio
    async def test_values_survive_rotation(self, store, session):
        await store.put("a", "alpha")
        await store.put("b", {"n": 2})
        old_key = session[conf.SESSION_KEY_NAME]
        stats = await store.rotate_key()
        assert stats == {"total": 2, "rotated": 2, "dropped": 0}
        assert session[conf.SESSION_KEY_NAME] != old_key
        assert await store.get("a") == "alpha"
        assert await store.get("b") == {"n": 2}

    @pytest.mark.asyncio
    async def test_rotation_drops_unreadable(self, store, storage):
        await store.put("good", 1)
        await store.put("bad", 2)
        _tamper(storage, "bad", "mac")
        stats = await store.rotate_key()
        assert stats == {"total": 2, "rotated": 1, "dropped": 1}
        assert store.keys() == ["good"]

    @pytest.mark.asyncio
    async def test_rotation_keeps_creation_time(self, store, clock):
        await store.put("item", "value")
        clock.advance(DATA_EXPIRY - 10)
        await store.rotate_key()
        clock.advance(20)
        assert await store.get("item") is None

    @pytest.mark.asyncio
    async def test_old_key_cannot_open_rotated_records(self, store, session):
        await store.put("item", "value")
        old_key = session[conf.SESSION_KEY_NAME]
        await store.rotate_key()
        session[conf.SESSION_KEY_NAME] = old_key
        assert await store.get("item") is None


# --- Test Maintenance ---

class TestMaintenance:
    """keys, clear, purge_expired, initialize and stats."""

    @pytest.mark.asyncio
    async def test_keys_and_clear(self, store, storage):
        storage["unrelated"] = "keep"
        await store.put("a", 1)
        await store.put("b", 2)
        assert sorted(store.keys()) == ["a", "b"]
        assert store.clear() == 2
        assert store.keys() == []
        assert storage["unrelated"] == "keep"

    @pytest.mark.asyncio
    async def test_plain_dict_backing(self, session, clock):
        backing = {"unrelated": "keep"}
        store = SecureStore(backing, session, clock=clock)
        await store.put("a", 1)
        assert store.keys() == ["a"]
        assert await store.get("a") == 1

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, storage, clock):
        await store.put("old", 1)
        clock.advance(DATA_EXPIRY / 2)
        await store.put("new", 2)
        storage[f"{conf.ENCRYPTED_PREFIX}broken"] = "nope"
        clock.advance(DATA_EXPIRY / 2 + 1)
        assert store.purge_expired() == 2
        assert store.keys() == ["new"]

    def test_initialize_creates_session_key(self, store, session):
        store.initialize()
        assert conf.SESSION_KEY_NAME in session

    @pytest.mark.asyncio
    async def test_stats(self, store, storage, clock):
        await store.put("a", 1)
        await store.put("b", 2)
        storage[f"{conf.ENCRYPTED_PREFIX}broken"] = "nope"
        stats = store.stats()
        assert stats["total_items"] == 3
        assert stats["expired_items"] == 1
        assert stats["total_size"] > 0


# --- Test Crypto Core ---

class TestCryptoCore:
    """Low level sealing and comparison helpers."""

    def test_seal_open(self):
        key = bytes(32)
        sealed = seal(b"payload", key)
        assert open_sealed(
            sealed["ciphertext"], sealed["salt"], sealed["iv"], sealed["mac"], key
        ) == b"payload"

    def test_fresh_salt_and_iv(self):
        key = bytes(32)
        first = seal(b"payload", key)
        second = seal(b"payload", key)
        assert first["salt"] != second["salt"]
        assert first["iv"] != second["iv"]
        assert first["ciphertext"] != second["ciphertext"]

    def test_open_rejects_bad_mac_length(self):
        key = bytes(32)
        sealed = seal(b"payload", key)
        with pytest.raises(IntegrityError):
            open_sealed(
                sealed["ciphertext"], sealed["salt"], sealed["iv"], b"short", key
            )

    def test_constant_time_equals(self):
        assert constant_time_equals(b"abc", b"abc")
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals(b"abc", b"abd")
        assert not constant_time_equals(b"abc", b"abcd")
        assert not constant_time_equals(b"", b"a")
        assert constant_time_equals(b"", b"")

    def test_bytes_serialization(self):
        assert deserialize_value(serialize_value(b"\xff\x00")) == b"\xff\x00"

    def test_envelope_keeps_lookalike_dicts(self):
        lookalike = {"t": "bytes", "v": "AAE="}
        assert deserialize_value(serialize_value(lookalike)) == lookalike

    def test_deserialize_rejects_bare_values(self):
        with pytest.raises(ValueError):
            deserialize_value(orjson.dumps("plain"))
