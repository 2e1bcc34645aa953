"""Exceptions raised by Navigator Security.

Most operations report failures as values (absence, ``False`` or a
tagged result). These exceptions cover the cases where continuing would
weaken a security guarantee, plus the opt-in ``rate_limited`` wrapper.
"""
from typing import Optional


class SecurityError(Exception):
    """Base class for Navigator Security errors."""


class SecureStoreError(SecurityError, RuntimeError):
    """A value could not be stored securely."""


class KeyDerivationError(SecureStoreError):
    """The session key could not be created or a record key derived."""


class IntegrityError(SecureStoreError, ValueError):
    """An encrypted record failed authentication or could not be decoded.

    Raised internally; ``SecureStore.get`` converts it into absence.
    """


class RateLimitExceeded(SecurityError):
    """Raised by ``rate_limited`` wrappers when the budget is exhausted."""

    def __init__(self, identifier: str, retry_after: Optional[int] = None):
        self.identifier = identifier
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded. Try again in {retry_after} seconds."
        )
