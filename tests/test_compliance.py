"""Tests for the compliance center: policies, reports, retention and unmasking."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from datetime import timedelta

import pytest

from privacy_guard import InvalidTransitionError, NotFoundError, RequestStatus, Severity, SqliteStore, ValidationError
from privacy_guard.compliance import (
    RECOMMEND_CONTINUE,
    RECOMMEND_IMMEDIATE_ATTENTION,
    RECOMMEND_PRIVACY_TRAINING,
    RECOMMEND_RETENTION_REVIEW,
    RECOMMEND_STRICTER_DLP,
    SYSTEM_USER_ID,
    build_recommendations,
)
from privacy_guard.models import ReportMetrics, Violation
from privacy_guard.types import IncidentStatus, NotificationStatus, PolicyType

HIGH_RISK = "SSN 123-45-6789, SSN 987-65-4321, SSN 111-22-3333, card 4111 1111 1111 1111"
CRITICAL_RISK = "123-45-6789, 234-56-7890, 345-67-8901, 456-78-9012, 567-89-0123"


# ── Recommendations ──────────────────────────────────────────────────

def test_only_dlp_recommendation_fires():
    recs = build_recommendations(ReportMetrics(dlp_violations=11), [])
    assert recs == [RECOMMEND_STRICTER_DLP]


def test_quiet_period_recommends_continued_monitoring():
    assert build_recommendations(ReportMetrics(dlp_violations=10, retention_due=50, unmasking_requests=5), []) == [
        RECOMMEND_CONTINUE
    ]


def test_recommendations_are_additive_in_fixed_order():
    metrics = ReportMetrics(dlp_violations=20, retention_due=51, unmasking_requests=6)
    violations = [Violation(Severity.CRITICAL, "sensitive_data_leak", 3, "stable")]
    assert build_recommendations(metrics, violations) == [
        RECOMMEND_STRICTER_DLP,
        RECOMMEND_RETENTION_REVIEW,
        RECOMMEND_PRIVACY_TRAINING,
        RECOMMEND_IMMEDIATE_ATTENTION,
    ]


def test_medium_violations_need_no_immediate_attention():
    violations = [Violation(Severity.MEDIUM, "sensitive_data_leak", 1, "stable")]
    assert build_recommendations(ReportMetrics(), violations) == [RECOMMEND_CONTINUE]


# ── Policies ─────────────────────────────────────────────────────────

def test_create_policy_defaults(compliance, store):
    policy_id = compliance.create_policy(1, {
        "name": "Finance masking",
        "type": "masking_rule",
        "departments": ["Finance"],
        "userRoles": ["analyst"],
        "configuration": {"masking_level": "strict"},
    })
    policy = compliance.get_policy(policy_id)
    assert policy.policy_type == PolicyType.MASKING
    assert policy.severity == Severity.MEDIUM
    assert policy.requires_approval is False
    assert policy.auto_enforce is True
    assert policy.user_roles == ["analyst"]
    assert policy.rule_configuration == {"masking_level": "strict"}
    metric = store.list_metrics("policy_created")
    assert len(metric) == 1 and metric[0].unit == "count"


def test_create_policy_respects_auto_enforce(compliance):
    policy_id = compliance.create_policy(1, {
        "name": "Advisory", "type": "dlp_rule", "configuration": {"auto_enforce": False},
    })
    assert compliance.get_policy(policy_id).auto_enforce is False


def test_create_policy_accepts_camel_case_configuration(compliance):
    policy_id = compliance.create_policy(1, {
        "name": "Advisory", "type": "dlp_rule",
        "configuration": {"autoEnforce": False, "alertThreshold": 3},
    })
    policy = compliance.get_policy(policy_id)
    assert policy.auto_enforce is False
    assert policy.rule_configuration == {"auto_enforce": False, "alert_threshold": 3}


def test_create_policy_rejects_bad_rules(compliance, store):
    with pytest.raises(ValidationError):
        compliance.create_policy(1, {"name": "x", "type": "nonsense"})
    with pytest.raises(ValidationError):
        compliance.create_policy(1, {"type": "dlp_rule"})
    with pytest.raises(ValidationError):
        compliance.create_policy(1, {"name": "", "type": "dlp_rule"})
    assert store.list_policies() == []


def test_update_and_deactivate_policy(compliance, clock):
    policy_id = compliance.create_policy(1, {"name": "Retention", "type": "retention_policy"})
    clock.advance(days=1)
    policy = compliance.update_policy(policy_id, {"severity": "high", "departments": ["Legal"]})
    assert policy.severity == Severity.HIGH
    assert policy.departments == ["Legal"]
    assert policy.last_modified == clock.now

    compliance.deactivate_policy(policy_id)
    assert compliance.list_policies() == []
    assert compliance.list_policies(active_only=False)[0].is_active is False


def test_policy_not_found(compliance):
    with pytest.raises(NotFoundError):
        compliance.get_policy(404)
    with pytest.raises(NotFoundError):
        compliance.update_policy(404, {"severity": "low"})
    with pytest.raises(NotFoundError):
        compliance.deactivate_policy(404)
    with pytest.raises(ValidationError):
        compliance.update_policy(404, {"created_by": 3})


# ── Reports ──────────────────────────────────────────────────────────

@pytest.fixture
def populated(store, guard):
    store.add_user(1, department="Finance")
    store.add_user(2, department="Legal")
    guard.pre_store(1, "mail jane@example.com")
    guard.pre_store(2, "see you at noon")
    guard.pre_store(1, HIGH_RISK)
    return store


def test_report_counts(compliance, populated, clock):
    report = compliance.generate_compliance_report(clock.now - timedelta(days=1), clock.now + timedelta(days=1))
    assert report.metrics.total_messages == 3
    assert report.metrics.masked_content == 2
    assert report.metrics.dlp_violations == 1
    assert report.metrics.retention_due == 0
    assert report.metrics.unmasking_requests == 0
    assert report.violations == [Violation(Severity.HIGH, "sensitive_data_leak", 1, "increasing")]
    assert report.recommendations == [RECOMMEND_IMMEDIATE_ATTENTION]


def test_report_department_filter(compliance, populated, clock):
    start, end = clock.now - timedelta(days=1), clock.now + timedelta(days=1)
    legal = compliance.generate_compliance_report(start, end, department="Legal")
    assert legal.department == "Legal"
    assert (legal.metrics.total_messages, legal.metrics.masked_content, legal.metrics.dlp_violations) == (1, 0, 0)
    assert legal.recommendations == [RECOMMEND_CONTINUE]

    finance = compliance.generate_compliance_report(start, end, department="Finance")
    assert (finance.metrics.total_messages, finance.metrics.masked_content, finance.metrics.dlp_violations) == (2, 2, 1)


def test_report_excludes_out_of_window_activity(compliance, populated, clock):
    report = compliance.generate_compliance_report(clock.now + timedelta(hours=1), clock.now + timedelta(days=1))
    assert report.metrics.total_messages == 0
    assert report.violations == []


def test_violation_trend_against_previous_window(compliance, engine, clock):
    engine.process_dlp_violation(1, HIGH_RISK)
    clock.advance(days=1)
    engine.process_dlp_violation(1, HIGH_RISK)
    engine.process_dlp_violation(1, CRITICAL_RISK)
    window_start = clock.now - timedelta(hours=12)
    report = compliance.generate_compliance_report(window_start, window_start + timedelta(days=1))
    assert report.violations == [
        Violation(Severity.CRITICAL, "sensitive_data_leak", 1, "increasing"),
        Violation(Severity.HIGH, "sensitive_data_leak", 1, "stable"),
    ]


def test_report_rejects_inverted_window(compliance, clock):
    with pytest.raises(ValidationError):
        compliance.generate_compliance_report(clock.now, clock.now - timedelta(days=1))


def test_report_to_dict_is_plain(compliance, populated, clock):
    data = compliance.generate_compliance_report(clock.now - timedelta(days=1), clock.now).to_dict()
    assert data["metrics"]["total_messages"] == 3
    assert data["violations"][0]["severity"] == "high"
    assert isinstance(data["period_start"], str)


# ── DLP summary ──────────────────────────────────────────────────────

def test_dlp_summary(compliance, engine, store, clock):
    first = engine.process_dlp_violation(1, HIGH_RISK)
    engine.process_dlp_violation(2, HIGH_RISK)
    engine.process_dlp_violation(3, CRITICAL_RISK)
    compliance.resolve_incident(first.id, reviewer_id=9, resolution="training completed")

    summary = compliance.get_dlp_incident_summary(clock.now - timedelta(days=1), clock.now)
    assert summary.total_incidents == 3
    assert summary.severity_breakdown == {"high": 2, "critical": 1}
    assert summary.top_violation_types == [{"type": "sensitive_data_leak", "count": 3}]
    assert summary.resolution_rate == pytest.approx(100 / 3)

    resolved = store.get_dlp_incident(first.id)
    assert resolved.review_status == IncidentStatus.RESOLVED
    assert resolved.resolved_at == clock.now


def test_dlp_summary_empty_window(compliance, clock):
    summary = compliance.get_dlp_incident_summary(clock.now - timedelta(days=1), clock.now)
    assert summary.total_incidents == 0
    assert summary.resolution_rate == 0.0
    assert summary.top_violation_types == []


def test_resolve_unknown_incident(compliance):
    with pytest.raises(NotFoundError):
        compliance.resolve_incident(77, reviewer_id=9, resolution="n/a")


# ── Retention ────────────────────────────────────────────────────────

def test_retention_sweep_is_idempotent(compliance, store, clock):
    old = store.add_message(1, "old", created_at=clock.now - timedelta(days=100), classification="General")
    store.add_message(1, "recent", created_at=clock.now - timedelta(days=10), classification="General")
    policy_id = compliance.create_retention_policy("90 days", 90)

    assert compliance.check_retention_compliance() == 1
    assert compliance.check_retention_compliance() == 0

    notes = store.list_retention_notifications(policy_id=policy_id)
    assert [n.message_id for n in notes] == [old]
    assert notes[0].status == NotificationStatus.PENDING
    assert notes[0].scheduled_deletion == clock.now + timedelta(days=30)
    assert [m.value for m in store.list_metrics("retention_notifications_created")] == ["1", "0"]


def test_retention_classification_filter(compliance, store, clock):
    store.add_message(1, "old", created_at=clock.now - timedelta(days=100), classification="General")
    compliance.create_retention_policy("Legal only", 30, message_classification="Legal")
    assert compliance.check_retention_compliance() == 0


def test_retention_due_in_report(compliance, store, clock):
    store.add_message(1, "old", created_at=clock.now - timedelta(days=100))
    compliance.create_retention_policy("90 days", 90, notify_before_expiry_days=7)
    compliance.check_retention_compliance()

    early = compliance.generate_compliance_report(clock.now - timedelta(days=1), clock.now)
    due = compliance.generate_compliance_report(clock.now, clock.now + timedelta(days=7))
    assert early.metrics.retention_due == 0
    assert due.metrics.retention_due == 1

    note = store.list_retention_notifications()[0]
    compliance.mark_notification_executed(note.id)
    assert compliance.generate_compliance_report(clock.now, clock.now + timedelta(days=7)).metrics.retention_due == 0
    with pytest.raises(NotFoundError):
        compliance.mark_notification_executed(999)


def test_retention_policy_validation(compliance):
    with pytest.raises(ValidationError):
        compliance.create_retention_policy("bad", 0)
    with pytest.raises(ValidationError):
        compliance.create_retention_policy("bad", 30, notify_before_expiry_days=-1)


# ── Unmasking workflow ───────────────────────────────────────────────

def test_new_request_is_pending(compliance, store, clock):
    request_id = compliance.process_unmasking_request(3, 42, "Court order 2024-118", "urgent")
    request = compliance.get_unmasking_request(request_id)
    assert request.status == RequestStatus.PENDING
    assert request.expires_at == clock.now + timedelta(days=30)
    assert [(e.action, e.user_id) for e in request.audit_trail] == [("request_created", 3)]
    assert len(store.list_metrics("unmasking_requests")) == 1


def test_approve_appends_exactly_one_entry(compliance, store):
    request_id = compliance.process_unmasking_request(3, 42, "Court order 2024-118")
    before = compliance.get_unmasking_request(request_id).audit_trail

    compliance.approve_unmasking_request(request_id, approver_id=9, notes="Verified with counsel")
    request = compliance.get_unmasking_request(request_id)
    assert request.status == RequestStatus.APPROVED
    assert request.approved_by == 9
    assert request.audit_trail[:-1] == before
    assert len(request.audit_trail) == len(before) + 1
    assert request.audit_trail[-1].action == "request_approved"
    assert request.audit_trail[-1].details == "Verified with counsel"
    assert len(store.list_metrics("unmasking_approved")) == 1


def test_approve_missing_request_writes_nothing(compliance, store):
    with pytest.raises(NotFoundError):
        compliance.approve_unmasking_request(999, approver_id=9)
    assert store.list_metrics("unmasking_approved") == []
    assert store.list_unmasking_requests() == []


def test_terminal_states_do_not_move(compliance):
    request_id = compliance.process_unmasking_request(3, 42, "Court order")
    compliance.approve_unmasking_request(request_id, approver_id=9)
    trail = compliance.get_unmasking_request(request_id).audit_trail

    with pytest.raises(InvalidTransitionError):
        compliance.approve_unmasking_request(request_id, approver_id=9)
    with pytest.raises(InvalidTransitionError):
        compliance.reject_unmasking_request(request_id, reviewer_id=9, reason="changed mind")
    assert compliance.get_unmasking_request(request_id).audit_trail == trail


def test_reject(compliance):
    request_id = compliance.process_unmasking_request(3, 42, "Internal audit")
    compliance.reject_unmasking_request(request_id, reviewer_id=9, reason="Insufficient justification")
    request = compliance.get_unmasking_request(request_id)
    assert request.status == RequestStatus.REJECTED
    assert request.rejected_reason == "Insufficient justification"
    assert [e.action for e in request.audit_trail] == ["request_created", "request_rejected"]
    with pytest.raises(InvalidTransitionError):
        compliance.approve_unmasking_request(request_id, approver_id=9)


def test_reject_needs_reason(compliance):
    request_id = compliance.process_unmasking_request(3, 42, "Internal audit")
    with pytest.raises(ValidationError):
        compliance.reject_unmasking_request(request_id, reviewer_id=9, reason="  ")
    assert compliance.get_unmasking_request(request_id).status == RequestStatus.PENDING


def test_request_input_validation(compliance, store):
    with pytest.raises(ValidationError):
        compliance.process_unmasking_request(3, 42, "")
    with pytest.raises(ValidationError):
        compliance.process_unmasking_request(3, 42, "Court order", "whenever")
    assert store.list_unmasking_requests() == []


def test_expiry(compliance, clock):
    request_id = compliance.process_unmasking_request(3, 42, "Court order")
    clock.advance(days=30)

    with pytest.raises(InvalidTransitionError):
        compliance.approve_unmasking_request(request_id, approver_id=9)
    assert compliance.expire_unmasking_requests() == 1
    assert compliance.expire_unmasking_requests() == 0

    request = compliance.get_unmasking_request(request_id)
    assert request.status == RequestStatus.EXPIRED
    assert request.audit_trail[-1].action == "request_expired"
    assert request.audit_trail[-1].user_id == SYSTEM_USER_ID


def test_expiry_leaves_live_requests_alone(compliance, clock):
    request_id = compliance.process_unmasking_request(3, 42, "Court order")
    clock.advance(days=29)
    assert compliance.expire_unmasking_requests() == 0
    assert compliance.get_unmasking_request(request_id).status == RequestStatus.PENDING


def test_reveal_requires_approval(compliance, guard, clock):
    stored = guard.pre_store(1, "reach me at jane.doe@example.com")
    request_id = compliance.process_unmasking_request(3, stored.message_id, "Subpoena")

    with pytest.raises(InvalidTransitionError):
        compliance.reveal_unmasked_content(request_id, officer_id=9)

    compliance.approve_unmasking_request(request_id, approver_id=9)
    revealed = compliance.reveal_unmasked_content(request_id, officer_id=9)
    assert [(r["data_type"], r["masked_value"], r["original_value"]) for r in revealed] == [
        ("email", "j***@example.com", "jane.doe@example.com"),
    ]
    trail = compliance.get_unmasking_request(request_id).audit_trail
    assert [e.action for e in trail] == ["request_created", "request_approved", "content_revealed"]

    clock.advance(days=31)
    with pytest.raises(InvalidTransitionError):
        compliance.reveal_unmasked_content(request_id, officer_id=9)


def test_interleaved_reveals_both_reach_the_audit_trail(compliance, guard, monkeypatch):
    stored = guard.pre_store(1, "reach me at jane.doe@example.com")
    request_id = compliance.process_unmasking_request(3, stored.message_id, "Subpoena")
    compliance.approve_unmasking_request(request_id, approver_id=9)

    # A second officer reveals while the first is between reading and appending
    original = SqliteStore.list_detection_events
    started = []

    def list_then_reveal(self, *args, **kwargs):
        if not started:
            started.append(True)
            compliance.reveal_unmasked_content(request_id, officer_id=10)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(SqliteStore, "list_detection_events", list_then_reveal)
    compliance.reveal_unmasked_content(request_id, officer_id=9)

    trail = compliance.get_unmasking_request(request_id).audit_trail
    assert [(e.action, e.user_id) for e in trail[-2:]] == [("content_revealed", 10), ("content_revealed", 9)]


# ── Metrics ──────────────────────────────────────────────────────────

def test_metrics_are_append_only(compliance, store):
    compliance.record_metric("manual_review", 1, "count", "weekly", department="Legal")
    compliance.record_metric("manual_review", 1, "count", "weekly", department="Legal")
    rows = store.list_metrics("manual_review")
    assert len(rows) == 2
    assert rows[0].department == "Legal"
    with pytest.raises(ValidationError):
        compliance.record_metric("manual_review", 1, "count", "hourly")
