"""Compliance center: policies, reports, retention sweeps and the
human-gated unmasking workflow.

Unmasking requests follow a small state machine:

    PENDING --approve--> APPROVED
    PENDING --reject---> REJECTED
    PENDING --expiry---> EXPIRED

APPROVED, REJECTED and EXPIRED are terminal.  Every transition appends to
the request's audit trail; nothing ever edits or removes an entry.
"""

from __future__ import annotations
import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .crypto import FieldCipher
from .engine import Clock, utcnow
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    AuditEntry,
    ComplianceReport,
    IncidentSummary,
    OrganizationalPolicy,
    PolicyRule,
    ReportMetrics,
    UnmaskingRequest,
    Violation,
)
from .store import SqliteStore
from .types import (
    IncidentStatus,
    NotificationStatus,
    RequestStatus,
    Severity,
    Timeframe,
    UrgencyLevel,
)

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = 0

DLP_VIOLATION_LIMIT = 10
RETENTION_DUE_LIMIT = 50
UNMASKING_REQUEST_LIMIT = 5

RECOMMEND_STRICTER_DLP = "Consider implementing stricter DLP policies for high-risk content"
RECOMMEND_RETENTION_REVIEW = "Review and update retention policies to ensure timely data cleanup"
RECOMMEND_PRIVACY_TRAINING = "Increase training on privacy protection to reduce unmasking requests"
RECOMMEND_IMMEDIATE_ATTENTION = "Immediate attention required for high-severity compliance violations"
RECOMMEND_CONTINUE = "Compliance metrics are within acceptable ranges. Continue monitoring."

_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}

_POLICY_FIELDS = {
    "name": "policy_name",
    "description": "description",
    "configuration": "rule_configuration",
    "departments": "departments",
    "user_roles": "user_roles",
    "severity": "severity",
    "auto_enforce": "auto_enforce",
    "requires_approval": "requires_approval",
}


@dataclass
class ComplianceConfig:
    unmasking_ttl_days: int = 30
    retention_notice_days: int = 30


def build_recommendations(metrics: ReportMetrics, violations: list[Violation]) -> list[str]:
    """Rule-based advice.  Rules are additive and always in this order."""
    out: list[str] = []
    if metrics.dlp_violations > DLP_VIOLATION_LIMIT:
        out.append(RECOMMEND_STRICTER_DLP)
    if metrics.retention_due > RETENTION_DUE_LIMIT:
        out.append(RECOMMEND_RETENTION_REVIEW)
    if metrics.unmasking_requests > UNMASKING_REQUEST_LIMIT:
        out.append(RECOMMEND_PRIVACY_TRAINING)
    if any(v.severity in (Severity.HIGH, Severity.CRITICAL) for v in violations):
        out.append(RECOMMEND_IMMEDIATE_ATTENTION)
    if not out:
        out.append(RECOMMEND_CONTINUE)
    return out


def _trend(current: int, previous: int) -> str:
    if current > previous:
        return "increasing"
    if current < previous:
        return "decreasing"
    return "stable"


class ComplianceCenter:
    """Organization-wide compliance operations over the shared store."""

    def __init__(
        self,
        store: SqliteStore,
        cipher: FieldCipher,
        config: ComplianceConfig | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.config = config or ComplianceConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def create_policy(self, created_by: int, rule: PolicyRule | dict[str, Any]) -> int:
        if isinstance(rule, dict):
            try:
                rule = PolicyRule.from_dict(rule)
            except (KeyError, ValueError) as e:
                raise ValidationError(f"invalid policy rule: {e}") from e
        elif not isinstance(rule, PolicyRule):
            raise ValidationError("policy rule must be a mapping")
        if not rule.name:
            raise ValidationError("policy name is required")

        now = self._clock()
        with self.store.transaction():
            policy_id = self.store.insert_policy(
                policy_name=rule.name,
                policy_type=rule.type,
                description=f"Auto-generated policy for {rule.type.value}",
                rule_configuration=rule.configuration,
                departments=rule.departments,
                user_roles=rule.user_roles,
                severity=Severity.MEDIUM,
                auto_enforce=bool(rule.configuration.get("auto_enforce", True)),
                requires_approval=False,
                created_by=created_by,
                now=now,
            )
            self.record_metric("policy_created", 1, "count", Timeframe.DAILY)
        logger.info("policy %s created type=%s by user_id=%s", policy_id, rule.type.value, created_by)
        return policy_id

    def get_policy(self, policy_id: int) -> OrganizationalPolicy:
        policy = self.store.get_policy(policy_id)
        if policy is None:
            raise NotFoundError("policy", policy_id)
        return policy

    def list_policies(self, *, active_only: bool = True) -> list[OrganizationalPolicy]:
        return self.store.list_policies(active_only=active_only)

    def update_policy(self, policy_id: int, changes: dict[str, Any]) -> OrganizationalPolicy:
        unknown = set(changes) - set(_POLICY_FIELDS)
        if unknown:
            raise ValidationError(f"unknown policy fields: {', '.join(sorted(unknown))}")
        encoded: dict[str, Any] = {}
        for key, value in changes.items():
            column = _POLICY_FIELDS[key]
            if key in ("configuration", "departments", "user_roles"):
                value = json.dumps(value)
            elif key == "severity":
                try:
                    value = Severity(value).value
                except ValueError as e:
                    raise ValidationError(str(e)) from e
            elif key in ("auto_enforce", "requires_approval"):
                value = int(bool(value))
            encoded[column] = value
        if encoded and not self.store.update_policy(policy_id, encoded, self._clock()):
            raise NotFoundError("policy", policy_id)
        return self.get_policy(policy_id)

    def deactivate_policy(self, policy_id: int) -> None:
        """Policies are deactivated, never deleted."""
        if not self.store.update_policy(policy_id, {"is_active": 0}, self._clock()):
            raise NotFoundError("policy", policy_id)
        logger.info("policy %s deactivated", policy_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_compliance_report(
        self, start: datetime, end: datetime, department: str | None = None,
    ) -> ComplianceReport:
        if end < start:
            raise ValidationError("report end is before its start")
        metrics = ReportMetrics(
            total_messages=self.store.count_messages(start, end, department),
            masked_content=self.store.count_masked_messages(start, end, department),
            dlp_violations=len(self.store.list_dlp_incidents(start, end, department)),
            retention_due=self.store.count_retention_due(end, department),
            unmasking_requests=self.store.count_unmasking_requests(start, end, department),
        )
        violations = self._violation_analysis(start, end, department)
        return ComplianceReport(
            report_type="comprehensive_compliance",
            period_start=start,
            period_end=end,
            department=department,
            metrics=metrics,
            violations=violations,
            recommendations=build_recommendations(metrics, violations),
        )

    def _violation_analysis(
        self, start: datetime, end: datetime, department: str | None,
    ) -> list[Violation]:
        """Incidents grouped by (severity, type), trend against the previous window."""
        window = end - start
        current = Counter(
            (i.severity, i.incident_type) for i in self.store.list_dlp_incidents(start, end, department)
        )
        previous = Counter(
            (i.severity, i.incident_type)
            for i in self.store.list_dlp_incidents(start - window, start - timedelta(microseconds=1), department)
        )
        keys = sorted(current, key=lambda k: (_SEVERITY_RANK[k[0]], k[1]))
        return [
            Violation(severity=sev, type=kind, count=current[(sev, kind)],
                      trend=_trend(current[(sev, kind)], previous.get((sev, kind), 0)))
            for sev, kind in keys
        ]

    def get_dlp_incident_summary(
        self, start: datetime, end: datetime, department: str | None = None,
    ) -> IncidentSummary:
        incidents = self.store.list_dlp_incidents(start, end, department)
        severity = Counter(i.severity.value for i in incidents)
        types = Counter(i.incident_type for i in incidents)
        resolved = sum(1 for i in incidents if i.review_status == IncidentStatus.RESOLVED)
        return IncidentSummary(
            total_incidents=len(incidents),
            severity_breakdown=dict(severity),
            top_violation_types=[{"type": t, "count": c} for t, c in types.most_common(5)],
            resolution_rate=(resolved / len(incidents) * 100) if incidents else 0.0,
        )

    def resolve_incident(
        self,
        incident_id: int,
        reviewer_id: int,
        resolution: str,
        status: IncidentStatus = IncidentStatus.RESOLVED,
    ) -> None:
        if not self.store.update_dlp_incident(
            incident_id, status=status, reviewer_id=reviewer_id, resolution=resolution, now=self._clock(),
        ):
            raise NotFoundError("DLP incident", incident_id)
        logger.info("DLP incident %s set to %s by user_id=%s", incident_id, status.value, reviewer_id)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def create_retention_policy(
        self,
        name: str,
        retention_period_days: int,
        *,
        message_classification: str | None = None,
        notify_before_expiry_days: int | None = None,
        created_by: int | None = None,
    ) -> int:
        if retention_period_days <= 0:
            raise ValidationError("retention_period_days must be positive")
        notify = self.config.retention_notice_days if notify_before_expiry_days is None else notify_before_expiry_days
        if notify < 0:
            raise ValidationError("notify_before_expiry_days must not be negative")
        return self.store.insert_retention_policy(
            name=name,
            retention_period_days=retention_period_days,
            notify_before_expiry_days=notify,
            message_classification=message_classification,
            created_by=created_by,
            now=self._clock(),
        )

    def check_retention_compliance(self) -> int:
        """Sweep every active retention policy.  Safe to re-run: a message is
        notified at most once per policy.  Returns notifications created."""
        total = 0
        for policy in self.store.list_active_retention_policies():
            now = self._clock()
            cutoff = now - timedelta(days=policy.retention_period_days)
            scheduled = now + timedelta(days=policy.notify_before_expiry_days)
            message_ids = self.store.find_messages_created_before(cutoff, policy.message_classification)

            created = 0
            with self.store.transaction():
                for message_id in message_ids:
                    if self.store.insert_retention_notification(
                        policy_id=policy.id,
                        message_id=message_id,
                        notification_type="expiry_warning",
                        scheduled_deletion=scheduled,
                        now=now,
                    ):
                        created += 1
                self.store.insert_metric(
                    metric_type="compliance_monitoring",
                    metric_name="retention_notifications_created",
                    value=str(created),
                    unit="count",
                    timeframe=Timeframe.DAILY,
                    department=None,
                    metadata={"recordedBy": "system", "source": "compliance_center", "policyId": policy.id},
                    now=now,
                )
            logger.info(
                "retention policy %s: %d message(s) past cutoff, %d new notification(s)",
                policy.id, len(message_ids), created,
            )
            total += created
        return total

    def mark_notification_executed(self, notification_id: int) -> None:
        if not self.store.set_notification_status(notification_id, NotificationStatus.EXECUTED):
            raise NotFoundError("retention notification", notification_id)

    # ------------------------------------------------------------------
    # Unmasking workflow
    # ------------------------------------------------------------------

    def process_unmasking_request(
        self,
        requester_id: int,
        target_message_id: int,
        legal_justification: str,
        urgency_level: UrgencyLevel | str = UrgencyLevel.STANDARD,
        request_type: str = "content_unmask",
    ) -> int:
        if not legal_justification or not legal_justification.strip():
            raise ValidationError("a legal justification is required")
        try:
            urgency = UrgencyLevel(urgency_level)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        now = self._clock()
        entry = AuditEntry(
            action="request_created",
            timestamp=now,
            user_id=requester_id,
            details="Legal unmasking request submitted",
        )
        with self.store.transaction():
            request_id = self.store.insert_unmasking_request(
                requester_id=requester_id,
                target_message_id=target_message_id,
                request_type=request_type,
                legal_justification=legal_justification,
                urgency_level=urgency,
                audit_trail=[entry],
                expires_at=now + timedelta(days=self.config.unmasking_ttl_days),
                now=now,
            )
            self.record_metric("unmasking_requests", 1, "count", Timeframe.DAILY)
        logger.info("unmasking request %s created by user_id=%s urgency=%s",
                    request_id, requester_id, urgency.value)
        return request_id

    def get_unmasking_request(self, request_id: int) -> UnmaskingRequest:
        request = self.store.get_unmasking_request(request_id)
        if request is None:
            raise NotFoundError("unmasking request", request_id)
        return request

    def _pending(self, request_id: int, now: datetime) -> UnmaskingRequest:
        request = self.get_unmasking_request(request_id)
        if request.status != RequestStatus.PENDING:
            raise InvalidTransitionError(
                f"unmasking request {request_id} is {request.status.value}, not pending")
        if now >= request.expires_at:
            raise InvalidTransitionError(f"unmasking request {request_id} has expired")
        return request

    def _transition(
        self,
        request: UnmaskingRequest,
        new_status: RequestStatus,
        entry: AuditEntry,
        metric: str,
        **fields: Any,
    ) -> None:
        with self.store.transaction():
            moved = self.store.transition_unmasking_request(
                request.id,
                expected=RequestStatus.PENDING,
                new_status=new_status,
                audit_trail=[*request.audit_trail, entry],
                **fields,
            )
            if not moved:
                raise InvalidTransitionError(f"unmasking request {request.id} changed concurrently")
            self.record_metric(metric, 1, "count", Timeframe.DAILY)
        logger.info("unmasking request %s -> %s by user_id=%s", request.id, new_status.value, entry.user_id)

    def approve_unmasking_request(self, request_id: int, approver_id: int, notes: str | None = None) -> None:
        now = self._clock()
        request = self._pending(request_id, now)
        entry = AuditEntry(
            action="request_approved",
            timestamp=now,
            user_id=approver_id,
            details=notes or "Request approved by authorized personnel",
        )
        self._transition(request, RequestStatus.APPROVED, entry, "unmasking_approved", approved_by=approver_id)

    def reject_unmasking_request(self, request_id: int, reviewer_id: int, reason: str) -> None:
        if not reason or not reason.strip():
            raise ValidationError("a rejection reason is required")
        now = self._clock()
        request = self._pending(request_id, now)
        entry = AuditEntry(action="request_rejected", timestamp=now, user_id=reviewer_id, details=reason)
        self._transition(request, RequestStatus.REJECTED, entry, "unmasking_rejected", rejected_reason=reason)

    def expire_unmasking_requests(self) -> int:
        """Move pending requests past their expiry to EXPIRED."""
        now = self._clock()
        expired = 0
        for request in self.store.list_unmasking_requests(status=RequestStatus.PENDING):
            if now < request.expires_at:
                continue
            entry = AuditEntry(
                action="request_expired",
                timestamp=now,
                user_id=SYSTEM_USER_ID,
                details="Request expired without a decision",
            )
            with self.store.transaction():
                if self.store.transition_unmasking_request(
                    request.id,
                    expected=RequestStatus.PENDING,
                    new_status=RequestStatus.EXPIRED,
                    audit_trail=[*request.audit_trail, entry],
                ):
                    expired += 1
        if expired:
            logger.info("%d unmasking request(s) expired", expired)
        return expired

    def reveal_unmasked_content(self, request_id: int, officer_id: int) -> list[dict[str, Any]]:
        """Originals behind the masks of the request's target message.

        Only an approved, unexpired request gets here; anything else fails
        closed.  The disclosure is written to the audit trail before any
        value is returned.
        """
        now = self._clock()
        request = self.get_unmasking_request(request_id)
        if request.status != RequestStatus.APPROVED:
            raise InvalidTransitionError(
                f"unmasking request {request_id} is {request.status.value}, not approved")
        if now >= request.expires_at:
            raise InvalidTransitionError(f"unmasking request {request_id} has expired")

        events = self.store.list_detection_events(message_id=request.target_message_id)
        revealed = [
            {
                "event_id": e.id,
                "data_type": e.detected_data_type.value,
                "masked_value": e.masked_value,
                "original_value": self.cipher.decrypt(e.original_value),
            }
            for e in events
        ]
        entry = AuditEntry(
            action="content_revealed",
            timestamp=now,
            user_id=officer_id,
            details=f"{len(revealed)} masked value(s) disclosed",
        )
        if not self.store.append_unmasking_audit(
            request.id, status=RequestStatus.APPROVED, entry=entry,
        ):
            raise InvalidTransitionError(f"unmasking request {request_id} changed concurrently")
        logger.warning("unmasking request %s: %d value(s) revealed to user_id=%s",
                       request_id, len(revealed), officer_id)
        return revealed

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_metric(
        self,
        name: str,
        value: float,
        unit: str,
        timeframe: Timeframe | str,
        department: str | None = None,
    ) -> int:
        """Append one data point.  Readers aggregate; nothing is merged here."""
        try:
            timeframe = Timeframe(timeframe)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return self.store.insert_metric(
            metric_type="compliance_monitoring",
            metric_name=name,
            value=str(value),
            unit=unit,
            timeframe=timeframe,
            department=department,
            metadata={"recordedBy": "system", "source": "compliance_center"},
            now=self._clock(),
        )
