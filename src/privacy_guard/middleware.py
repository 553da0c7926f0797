"""Message guard: the hook the messaging layer calls before persisting.

Usage:

    guard = MessageGuard(engine, store)

    # Instead of storing the raw body
    stored = guard.pre_store(user_id, raw_text, classification="General")
    deliver(stored.message_id, stored.masked_content)

The masked body, its detection events and any DLP incident are written
in a single transaction.  If any part fails (store down, key broken) the
whole write is rolled back and the error propagates: the message is not
sent without its audit record.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass

from .engine import MaskingEngine
from .models import StoredMessage
from .store import SqliteStore

logger = logging.getLogger(__name__)


@dataclass
class MessageGuard:
    """Sits between the message composer and message storage."""

    engine: MaskingEngine
    store: SqliteStore

    def pre_store(
        self,
        user_id: int,
        content: str,
        *,
        classification: str | None = None,
    ) -> StoredMessage:
        """Mask, store and audit one outbound message."""
        settings = self.engine.get_user_privacy_settings(user_id)
        result = self.engine.analyze(content, settings)

        with self.store.transaction():
            message_id = self.store.add_message(
                user_id,
                result.masked_content,
                classification=classification,
                created_at=self.engine.now(),
            )
            if result.detected_types:
                self.engine.log_detections(user_id, result, message_id=message_id)
            incident_id = self.engine.escalate(user_id, result, message_id=message_id)

        if incident_id is not None:
            logger.info("message %s stored with DLP incident %s", message_id, incident_id)
        return StoredMessage(
            message_id=message_id,
            masked_content=result.masked_content,
            risk_score=result.risk_score,
            detections=len(result.detected_types),
            incident_id=incident_id,
        )

    def redact_text(self, user_id: int, text: str) -> str:
        """Mask a single string with the user's settings (no logging)."""
        settings = self.engine.get_user_privacy_settings(user_id)
        return self.engine.analyze(text, settings).masked_content
