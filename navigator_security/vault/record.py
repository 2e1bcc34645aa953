"""Encrypted record as persisted in the backing store."""
import base64
import binascii

import orjson
from pydantic import BaseModel, ValidationError, field_serializer, field_validator

from ..exceptions import IntegrityError
from .config import DATA_EXPIRY


class EncryptedRecord(BaseModel):
    """A sealed value plus what is needed to re-derive its keys.

    Binary fields are base64 encoded in the stored JSON document.
    """

    ciphertext: bytes
    salt: bytes
    iv: bytes
    mac: bytes
    created_at: float

    model_config = {"frozen": True}

    @field_validator("ciphertext", "salt", "iv", "mac", mode="before")
    @classmethod
    def decode_b64(cls, v):
        if isinstance(v, str):
            try:
                return base64.b64decode(v, validate=True)
            except (binascii.Error, ValueError) as err:
                raise ValueError("field is not valid base64") from err
        return v

    @field_serializer("ciphertext", "salt", "iv", "mac")
    def encode_b64(self, v: bytes) -> str:
        return base64.b64encode(v).decode("ascii")

    def is_expired(self, now: float, expiry: float = DATA_EXPIRY) -> bool:
        return now - self.created_at > expiry

    def size(self) -> int:
        return len(self.ciphertext) + len(self.salt) + len(self.iv) + len(self.mac)

    def to_storage(self) -> str:
        return orjson.dumps(self.model_dump()).decode("utf-8")

    @classmethod
    def from_storage(cls, raw: str) -> "EncryptedRecord":
        """Parse a stored record.

        Raises:
            IntegrityError: If the document is not a well-formed record.
        """
        try:
            return cls.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError, TypeError) as err:
            raise IntegrityError("Corrupted record") from err
