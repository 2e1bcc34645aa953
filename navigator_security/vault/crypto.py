"""
Secure Store crypto core: key derivation, sealing/opening and serialization.

Record layout:
    PBKDF2-HMAC-SHA256(session_key, salt, 100k) -> 32B master
    HKDF(master, "navigator-store-enc") -> AES-256-CBC key
    HKDF(master, "navigator-store-mac") -> HMAC-SHA256 key
    mac = HMAC(mac_key, iv || ciphertext)

The MAC is verified before any decryption takes place.

Security Note:
    Never log plaintext, ciphertext or derived key values.
"""
import os
import hmac
import base64
import hashlib
import logging
from typing import Any

import orjson
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..exceptions import IntegrityError, KeyDerivationError
from .config import (
    PBKDF2_ITERATIONS,
    KEY_LENGTH,
    SALT_LENGTH,
    IV_LENGTH,
    MAC_LENGTH,
)

logger = logging.getLogger("navigator.vault")

_ENC_CONTEXT = b"navigator-store-enc"
_MAC_CONTEXT = b"navigator-store-mac"
_KIND_JSON = "json"
_KIND_BYTES = "bytes"


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def _hkdf(master: bytes, context: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # master is already salted by PBKDF2
        info=context,
    )
    return hkdf.derive(master)


def derive_keys(session_key: bytes, salt: bytes) -> tuple[bytes, bytes]:
    """Derive the (encryption, mac) subkeys for one record.

    Args:
        session_key: Raw session key bytes.
        salt: Per-record random salt.

    Returns:
        Tuple of 32-byte encryption key and 32-byte MAC key.

    Raises:
        KeyDerivationError: If the inputs are unusable.
    """
    if not session_key:
        raise KeyDerivationError("Session key is empty")
    if len(salt) != SALT_LENGTH:
        raise KeyDerivationError(
            f"salt must be {SALT_LENGTH} bytes, got {len(salt)}"
        )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    master = kdf.derive(session_key)
    return _hkdf(master, _ENC_CONTEXT), _hkdf(master, _MAC_CONTEXT)


# ---------------------------------------------------------------------------
# MAC helpers
# ---------------------------------------------------------------------------

def compute_mac(mac_key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    return hmac.new(mac_key, iv + ciphertext, hashlib.sha256).digest()


def constant_time_equals(a: bytes | str, b: bytes | str) -> bool:
    """Compare two values in time independent of where they differ.

    Every byte of the longer input is visited; a length mismatch is
    folded into the accumulator instead of returning early.
    """
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    length = max(len(a), len(b))
    result = len(a) ^ len(b)
    for i in range(length):
        x = a[i] if i < len(a) else 0
        y = b[i] if i < len(b) else 0
        result |= x ^ y
    return result == 0


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal(plaintext: bytes, session_key: bytes) -> dict[str, bytes]:
    """Encrypt and authenticate plaintext under a fresh salt and IV.

    Returns:
        Mapping with ``ciphertext``, ``salt``, ``iv`` and ``mac``.
    """
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    enc_key, mac_key = derive_keys(session_key, salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return {
        "ciphertext": ciphertext,
        "salt": salt,
        "iv": iv,
        "mac": compute_mac(mac_key, iv, ciphertext),
    }


def open_sealed(
    ciphertext: bytes, salt: bytes, iv: bytes, mac: bytes, session_key: bytes
) -> bytes:
    """Verify and decrypt a sealed value.

    Raises:
        IntegrityError: On MAC mismatch, malformed fields or bad padding.
    """
    if len(iv) != IV_LENGTH or len(mac) != MAC_LENGTH:
        raise IntegrityError("Malformed record: bad iv or mac length")
    if not ciphertext or len(ciphertext) % (algorithms.AES.block_size // 8):
        raise IntegrityError("Malformed record: bad ciphertext length")
    try:
        enc_key, mac_key = derive_keys(session_key, salt)
    except KeyDerivationError as err:
        raise IntegrityError(str(err)) from err
    expected = compute_mac(mac_key, iv, ciphertext)
    if not constant_time_equals(expected, mac):
        raise IntegrityError("Record authentication failed")
    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as err:
        raise IntegrityError("Invalid padding") from err


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to bytes for encryption.

    Supports: str, int, float, dict, list, bytes, bool, None.
    Every value is wrapped in a ``{"t": kind, "v": payload}`` envelope;
    bytes travel as base64 under ``"t": "bytes"``, so no caller value can
    be mistaken for an encoded one.
    """
    if isinstance(value, bytes):
        envelope = {"t": _KIND_BYTES, "v": base64.b64encode(value).decode("ascii")}
    else:
        envelope = {"t": _KIND_JSON, "v": value}
    return orjson.dumps(envelope)


def deserialize_value(data: bytes) -> Any:
    """Inverse of :func:`serialize_value`.

    Raises:
        ValueError: If the payload is not a well-formed envelope.
    """
    envelope = orjson.loads(data)
    if not isinstance(envelope, dict) or set(envelope) != {"t", "v"}:
        raise ValueError("Malformed value envelope")
    kind, payload = envelope["t"], envelope["v"]
    if kind == _KIND_JSON:
        return payload
    if kind == _KIND_BYTES and isinstance(payload, str):
        return base64.b64decode(payload, validate=True)
    raise ValueError(f"Unknown value kind: {kind!r}")
