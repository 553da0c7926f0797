"""Core types: enumerations, privacy settings and masking results."""

from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields
from enum import Enum


class DataType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    CREDIT_CARD = "credit_card"
    IP_ADDRESS = "ip_address"
    FINANCIAL = "financial"
    PHI = "phi"
    PII = "pii"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PolicyType(str, Enum):
    MASKING = "masking_rule"
    RETENTION = "retention_policy"
    DLP = "dlp_rule"
    ACCESS_CONTROL = "access_control"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class UrgencyLevel(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    STANDARD = "standard"
    ROUTINE = "routine"


class Timeframe(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class DlpAction(str, Enum):
    BLOCKED = "blocked"
    MASKED = "masked"
    FLAGGED = "flagged"
    ALLOWED_WITH_WARNING = "allowed_with_warning"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"


class IncidentStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class PrivacySettings:
    """Per-user privacy toggles.  Defaults are the strict profile."""
    mask_pii: bool = True
    mask_phi: bool = True
    mask_financial: bool = True
    ghost_mode: bool = False
    anonymous_chat: bool = False
    metadata_minimization: bool = True
    ephemeral_messages: bool = False
    ephemeral_duration_hours: int = 24

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Detection:
    """A single sensitive span found in the original content."""
    data_type: DataType
    confidence: int        # 0-100
    original_value: str
    masked_value: str
    start: int             # offsets into the original content
    end: int

    @property
    def position(self) -> tuple[int, int]:
        return (self.start, self.end)

    def to_dict(self, *, include_original: bool = False) -> dict:
        out = {
            "type": self.data_type.value,
            "confidence": self.confidence,
            "masked_value": self.masked_value,
            "position": {"start": self.start, "end": self.end},
        }
        if include_original:
            out["original_value"] = self.original_value
        return out


@dataclass(slots=True)
class MaskingResult:
    """Result of one masking pass.  Transient, never stored as a row."""
    masked_content: str
    detected_types: list[Detection] = field(default_factory=list)
    risk_score: float = 0.0   # capped at 100

    def to_dict(self) -> dict:
        return {
            "masked_content": self.masked_content,
            "detected_types": [d.to_dict() for d in self.detected_types],
            "risk_score": self.risk_score,
        }
