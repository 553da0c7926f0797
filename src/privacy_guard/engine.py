"""Masking engine: the main API.  Layered: regex first, then optional NER.

Usage:
    from privacy_guard import FieldCipher, MaskingEngine, SqliteStore

    store = SqliteStore()
    engine = MaskingEngine(store, FieldCipher({"v1": key}))

    result = engine.mask_content("Email me at john@acme.com", user_id=7)
    print(result.masked_content)   # "Email me at j***@acme.com"
    print(result.risk_score)       # 4.75
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .crypto import FieldCipher
from .errors import NotFoundError, ValidationError
from .models import DlpIncident
from .patterns import MAX_RISK, mask_text, risk_contribution, scan_regex
from .store import SqliteStore
from .types import (
    DlpAction,
    MaskingResult,
    PrivacySettings,
    Severity,
    Timeframe,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

INCIDENT_TYPE = "sensitive_data_leak"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value: str) -> datetime:
    """ISO-8601 date or datetime from user input; naive values are UTC."""
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"not an ISO-8601 timestamp: {value!r}") from e
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass
class EngineConfig:
    """Configuration for the MaskingEngine."""
    use_presidio: bool = False        # enable the NER layer
    language: str = "en"
    score_threshold: float = 0.35     # minimum Presidio score
    presidio_entities: list[str] | None = None
    high_risk_threshold: float = 70   # risk above this opens a DLP incident
    critical_threshold: float = 90    # risk above this makes it CRITICAL


class MaskingEngine:
    """Detects and masks sensitive data, and keeps the audit log of it.

    Layer 1: regex detectors (emails, phones, SSNs, cards, IPs, money, PHI)
    Layer 2: Presidio NER for free-text PII (optional)
    """

    def __init__(
        self,
        store: SqliteStore,
        cipher: FieldCipher,
        config: EngineConfig | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.config = config or EngineConfig()
        self._clock = clock
        self._ner = None
        if self.config.use_presidio:
            from .presidio_layer import PresidioScanner
            self._ner = PresidioScanner(
                self.config.language,
                self.config.presidio_entities,
                self.config.score_threshold,
            )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def analyze(self, content: str, settings: PrivacySettings) -> MaskingResult:
        """Detect and mask without touching storage."""
        if not isinstance(content, str):
            raise ValidationError(f"content must be str, not {type(content).__name__}")

        detections = scan_regex(content, settings)

        if self._ner is not None and settings.mask_pii and content:
            ner = self._ner.scan(content, claimed=[d.position for d in detections])
            detections = detections + ner

        masked = mask_text(content, detections)

        risk = sum(risk_contribution(d.data_type, d.confidence) for d in detections)
        return MaskingResult(
            masked_content=masked,
            detected_types=detections,
            risk_score=min(risk, MAX_RISK),
        )

    def mask_content(
        self,
        content: str,
        user_id: int,
        settings: PrivacySettings | None = None,
        *,
        message_id: int | None = None,
        file_id: int | None = None,
    ) -> MaskingResult:
        """Mask content and log every detection with its original encrypted.

        All detection events are written in one transaction.  If encryption
        or the write fails the error propagates and no result is returned.
        """
        if settings is None:
            settings = self.get_user_privacy_settings(user_id)
        result = self.analyze(content, settings)
        if result.detected_types:
            self.log_detections(user_id, result, message_id=message_id, file_id=file_id)
        return result

    def log_detections(
        self,
        user_id: int,
        result: MaskingResult,
        *,
        message_id: int | None = None,
        file_id: int | None = None,
    ) -> list[int]:
        # Encrypt everything before opening the transaction
        events = [
            (d.data_type, self.cipher.encrypt(d.original_value), d.masked_value, d.confidence)
            for d in result.detected_types
        ]
        ids = self.store.insert_detection_events(
            user_id, events, created_at=self._clock(), message_id=message_id, file_id=file_id,
        )
        logger.info(
            "logged %d detection(s) user_id=%s message_id=%s types=%s risk=%.2f",
            len(ids), user_id, message_id,
            ",".join(d.data_type.value for d in result.detected_types), result.risk_score,
        )
        return ids

    def review_detection_event(self, event_id: int, reviewer_id: int) -> None:
        if not self.store.mark_detection_reviewed(event_id, reviewer_id, self._clock()):
            raise NotFoundError("detection event", event_id)

    # ------------------------------------------------------------------
    # Privacy profiles
    # ------------------------------------------------------------------

    def get_user_privacy_settings(self, user_id: int) -> PrivacySettings:
        """Stored profile, or the strict default for users without one."""
        return self.store.get_privacy_profile(user_id) or PrivacySettings()

    def update_privacy_profile(self, user_id: int, settings: dict[str, Any]) -> PrivacySettings:
        """Upsert: update the profile if it exists, create it otherwise."""
        changes = _validate_settings(settings)
        self.store.upsert_privacy_profile(user_id, changes, self._clock())
        logger.info("privacy profile updated user_id=%s fields=%s", user_id, ",".join(sorted(changes)))
        return self.get_user_privacy_settings(user_id)

    # ------------------------------------------------------------------
    # DLP
    # ------------------------------------------------------------------

    def process_dlp_violation(
        self,
        user_id: int,
        content: str,
        message_id: int | None = None,
        file_id: int | None = None,
    ) -> DlpIncident | None:
        """Mask content and open an incident when the risk is high."""
        result = self.mask_content(content, user_id, message_id=message_id, file_id=file_id)
        incident_id = self.escalate(user_id, result, message_id=message_id, file_id=file_id)
        return self.store.get_dlp_incident(incident_id) if incident_id is not None else None

    def severity_for(self, risk_score: float) -> Severity | None:
        if risk_score > self.config.critical_threshold:
            return Severity.CRITICAL
        if risk_score > self.config.high_risk_threshold:
            return Severity.HIGH
        return None

    def escalate(
        self,
        user_id: int,
        result: MaskingResult,
        *,
        message_id: int | None = None,
        file_id: int | None = None,
    ) -> int | None:
        """Open a DLP incident for a risky result.  Only masked content is stored."""
        severity = self.severity_for(result.risk_score)
        if severity is None:
            return None
        now = self._clock()
        with self.store.transaction():
            incident_id = self.store.insert_dlp_incident(
                incident_type=INCIDENT_TYPE,
                severity=severity,
                user_id=user_id,
                message_id=message_id,
                file_id=file_id,
                detected_content=result.masked_content,
                action_taken=DlpAction.FLAGGED,
                created_at=now,
            )
            self.store.insert_metric(
                metric_type="dlp_monitoring",
                metric_name="dlp_incident_created",
                value="1",
                unit="count",
                timeframe=Timeframe.DAILY,
                department=None,
                metadata={"recordedBy": "system", "source": "masking_engine", "severity": severity.value},
                now=now,
            )
        logger.warning(
            "DLP incident %s opened user_id=%s severity=%s risk=%.2f",
            incident_id, user_id, severity.value, result.risk_score,
        )
        return incident_id


def _validate_settings(settings: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(settings, dict):
        raise ValidationError("privacy settings must be a mapping")
    known = PrivacySettings.field_names()
    unknown = set(settings) - known
    if unknown:
        raise ValidationError(f"unknown privacy settings: {', '.join(sorted(unknown))}")
    for key, value in settings.items():
        if key == "ephemeral_duration_hours":
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError("ephemeral_duration_hours must be a positive integer")
        elif not isinstance(value, bool):
            raise ValidationError(f"{key} must be a boolean")
    return dict(settings)
