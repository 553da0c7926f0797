"""Identity vault: pseudonymous ids for anonymous chat.

An anonymous id is a random token.  The link back to the real user is
kept only as an encrypted mapping, and resolution goes through decrypting
it, so the token alone reveals nothing without the key and the row.
"""

from __future__ import annotations
import json
import logging
import secrets
from datetime import datetime, timedelta

from .crypto import FieldCipher
from .engine import Clock, utcnow
from .errors import CryptoError, NotFoundError, ValidationError
from .models import IdentityMapping
from .store import SqliteStore, to_db

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)
_PREFIX = "anon_"


class IdentityVault:
    """Issues and resolves anonymous identities."""

    __slots__ = ("_store", "_cipher", "_ttl", "_clock")

    def __init__(
        self,
        store: SqliteStore,
        cipher: FieldCipher,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._ttl = ttl
        self._clock = clock

    def create_anonymous_identity(self, user_id: int, session_id: str) -> str:
        """Return a fresh anonymous id valid for the vault's TTL."""
        if not session_id:
            raise ValidationError("session_id is required")
        now = self._clock()
        anonymous_id = _PREFIX + secrets.token_hex(16)
        payload = json.dumps({
            "realUserId": user_id,
            "sessionId": session_id,
            "createdAt": to_db(now),
        })
        self._store.insert_identity_mapping(IdentityMapping(
            anonymous_id=anonymous_id,
            real_user_id=user_id,
            session_id=session_id,
            encrypted_mapping=self._cipher.encrypt(payload),
            access_level="anonymous",
            expires_at=now + self._ttl,
            is_active=True,
            created_at=now,
        ))
        logger.info("anonymous identity issued session_id=%s expires_in=%s", session_id, self._ttl)
        return anonymous_id

    def resolve_anonymous_identity(self, anonymous_id: str) -> int | None:
        """Real user id for a live mapping; None if unknown, expired or revoked."""
        mapping = self._store.get_identity_mapping(anonymous_id)
        if mapping is None or not mapping.is_active:
            return None
        if mapping.expires_at <= self._clock():
            logger.info("anonymous identity expired, not resolved")
            return None

        payload = json.loads(self._cipher.decrypt(mapping.encrypted_mapping))
        user_id = payload.get("realUserId")
        if user_id != mapping.real_user_id or payload.get("sessionId") != mapping.session_id:
            raise CryptoError("identity mapping does not match its record")
        return user_id

    def revoke_anonymous_identity(self, anonymous_id: str) -> None:
        if not self._store.deactivate_identity_mapping(anonymous_id):
            raise NotFoundError("anonymous identity", anonymous_id)
        logger.info("anonymous identity revoked")

    def expires_at(self, anonymous_id: str) -> datetime | None:
        mapping = self._store.get_identity_mapping(anonymous_id)
        return mapping.expires_at if mapping else None
