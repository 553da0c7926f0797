"""Field-level encryption for original values and identity mappings.

Ciphertexts carry the version of the key that produced them:

    v2:gAAAAABl...

so old rows stay readable after the primary key is rotated.
"""

from __future__ import annotations
import logging
from collections.abc import Mapping

from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigError, CryptoError

logger = logging.getLogger(__name__)


def generate_key() -> str:
    """Return a new random Fernet key (url-safe base64 text)."""
    return Fernet.generate_key().decode("ascii")


class FieldCipher:
    """Versioned symmetric cipher.  One instance per process."""

    __slots__ = ("_fernets", "_primary")

    def __init__(self, keys: Mapping[str, str | bytes], primary: str | None = None) -> None:
        if not keys:
            raise ConfigError("at least one encryption key is required")
        self._fernets: dict[str, Fernet] = {}
        for version, key in keys.items():
            if ":" in version or not version:
                raise ConfigError(f"invalid key version tag: {version!r}")
            try:
                self._fernets[version] = Fernet(key)
            except (ValueError, TypeError) as e:
                raise ConfigError(f"encryption key {version!r} is not a valid Fernet key") from e
        self._primary = primary or next(iter(keys))
        if self._primary not in self._fernets:
            raise ConfigError(f"primary key version {self._primary!r} has no key")

    @property
    def primary_version(self) -> str:
        return self._primary

    @property
    def versions(self) -> list[str]:
        return list(self._fernets)

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise CryptoError("only text can be encrypted")
        token = self._fernets[self._primary].encrypt(plaintext.encode("utf-8"))
        return f"{self._primary}:{token.decode('ascii')}"

    def decrypt(self, ciphertext: str) -> str:
        version, sep, token = (ciphertext or "").partition(":")
        if not sep:
            raise CryptoError("ciphertext has no key version tag")
        fernet = self._fernets.get(version)
        if fernet is None:
            raise CryptoError(f"no key for version {version!r}")
        try:
            return fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise CryptoError("ciphertext could not be decrypted") from e

    def needs_rotation(self, ciphertext: str) -> bool:
        return not ciphertext.startswith(f"{self._primary}:")

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt under the primary key (no-op if already current)."""
        if not self.needs_rotation(ciphertext):
            return ciphertext
        logger.debug("re-encrypting ciphertext from %s to %s",
                     ciphertext.partition(":")[0], self._primary)
        return self.encrypt(self.decrypt(ciphertext))
