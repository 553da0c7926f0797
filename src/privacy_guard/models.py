"""Stored records and report shapes."""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .types import (
    DataType,
    DlpAction,
    IncidentStatus,
    NotificationStatus,
    PolicyType,
    RequestStatus,
    ReviewStatus,
    Severity,
    Timeframe,
    UrgencyLevel,
)


def _plain(value: Any) -> Any:
    """Convert enums and datetimes for JSON output."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class _Record:
    __slots__ = ()

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))


@dataclass(slots=True)
class DetectionEvent(_Record):
    id: int
    user_id: int
    detected_data_type: DataType
    original_value: str          # ciphertext, never plaintext
    masked_value: str
    confidence: int
    review_status: ReviewStatus
    created_at: datetime
    message_id: int | None = None
    file_id: int | None = None
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None


@dataclass(slots=True)
class IdentityMapping(_Record):
    anonymous_id: str
    real_user_id: int
    session_id: str
    encrypted_mapping: str
    access_level: str
    expires_at: datetime
    is_active: bool
    created_at: datetime


@dataclass(slots=True)
class DlpIncident(_Record):
    id: int
    incident_type: str
    severity: Severity
    user_id: int
    detected_content: str        # masked content only
    action_taken: DlpAction
    review_status: IncidentStatus
    created_at: datetime
    message_id: int | None = None
    file_id: int | None = None
    resolution: str | None = None
    assigned_to: int | None = None
    resolved_at: datetime | None = None


# camelCase spellings accepted in policy rule configuration
_CAMEL_CONFIG_KEYS = {
    "maskingLevel": "masking_level",
    "retentionDays": "retention_days",
    "autoEnforce": "auto_enforce",
    "alertThreshold": "alert_threshold",
}


@dataclass(slots=True)
class PolicyRule:
    """Input shape for ComplianceCenter.create_policy."""
    name: str
    type: PolicyType
    departments: list[str] = field(default_factory=list)
    user_roles: list[str] = field(default_factory=list)
    # masking_level, retention_days, auto_enforce, alert_threshold
    configuration: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.configuration = {
            _CAMEL_CONFIG_KEYS.get(k, k): v for k, v in self.configuration.items()
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyRule":
        return cls(
            name=data["name"],
            type=PolicyType(data["type"]),
            departments=list(data.get("departments", [])),
            user_roles=list(data.get("user_roles", data.get("userRoles", []))),
            configuration=dict(data.get("configuration", {})),
        )


@dataclass(slots=True)
class OrganizationalPolicy(_Record):
    id: int
    policy_name: str
    policy_type: PolicyType
    description: str
    rule_configuration: dict[str, Any]
    departments: list[str]
    user_roles: list[str]
    severity: Severity
    is_active: bool
    auto_enforce: bool
    requires_approval: bool
    created_by: int
    created_at: datetime
    last_modified: datetime


@dataclass(slots=True)
class RetentionPolicy(_Record):
    id: int
    name: str
    retention_period_days: int
    notify_before_expiry_days: int
    is_active: bool
    created_at: datetime
    message_classification: str | None = None
    created_by: int | None = None


@dataclass(slots=True)
class RetentionNotification(_Record):
    id: int
    policy_id: int
    message_id: int
    notification_type: str
    scheduled_deletion: datetime
    notified_users: list[int]
    status: NotificationStatus
    created_at: datetime


@dataclass(frozen=True, slots=True)
class AuditEntry(_Record):
    action: str
    timestamp: datetime
    user_id: int
    details: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        return cls(
            action=data["action"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            user_id=data["user_id"],
            details=data.get("details", ""),
        )


@dataclass(slots=True)
class UnmaskingRequest(_Record):
    id: int
    requester_id: int
    target_message_id: int
    request_type: str
    legal_justification: str
    urgency_level: UrgencyLevel
    status: RequestStatus
    audit_trail: list[AuditEntry]
    expires_at: datetime
    created_at: datetime
    approved_by: int | None = None
    rejected_reason: str | None = None


@dataclass(slots=True)
class ComplianceMetric(_Record):
    id: int
    metric_type: str
    metric_name: str
    value: str
    unit: str
    timeframe: Timeframe
    recorded_at: datetime
    department: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Violation(_Record):
    severity: Severity
    type: str
    count: int
    trend: str   # "increasing" | "decreasing" | "stable"


@dataclass(slots=True)
class ReportMetrics(_Record):
    total_messages: int = 0
    masked_content: int = 0
    dlp_violations: int = 0
    retention_due: int = 0
    unmasking_requests: int = 0


@dataclass(slots=True)
class ComplianceReport(_Record):
    report_type: str
    period_start: datetime
    period_end: datetime
    metrics: ReportMetrics
    violations: list[Violation]
    recommendations: list[str]
    department: str | None = None


@dataclass(slots=True)
class IncidentSummary(_Record):
    total_incidents: int
    severity_breakdown: dict[str, int]
    top_violation_types: list[dict[str, Any]]
    resolution_rate: float


@dataclass(slots=True)
class StoredMessage(_Record):
    message_id: int
    masked_content: str
    risk_score: float
    detections: int
    incident_id: int | None = None
