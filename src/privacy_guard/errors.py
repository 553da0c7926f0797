"""Error taxonomy.

"No match found" is never an error: detection returns an empty result.
Storage and crypto failures always propagate to the caller.
"""

from __future__ import annotations


class PrivacyGuardError(Exception):
    """Base class for every error raised by privacy_guard."""


class NotFoundError(PrivacyGuardError):
    """A referenced record (request, policy, incident, ...) does not exist."""

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class ValidationError(PrivacyGuardError):
    """Malformed input, rejected before any storage write."""


class StorageError(PrivacyGuardError):
    """The backing store is unavailable or rejected a write."""


class CryptoError(PrivacyGuardError):
    """Encryption or decryption failed (bad key, corrupted ciphertext)."""


class InvalidTransitionError(PrivacyGuardError):
    """A workflow transition is not allowed from the record's current state."""


class ConfigError(PrivacyGuardError):
    """Configuration is missing or invalid."""
