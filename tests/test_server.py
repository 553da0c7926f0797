"""Tests for the HTTP sidecar routing and error mapping."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import json
import threading
import urllib.error
import urllib.request

import pytest

from privacy_guard import create_services, generate_key, load_config
from privacy_guard.server import GuardServer, dispatch


@pytest.fixture
def services(clock):
    cfg = load_config({"database": ":memory:"}, env={"PRIVACY_ENCRYPTION_KEY": generate_key()})
    s = create_services(cfg, clock=clock)
    yield s
    s.close()


def test_health(services):
    status, body = dispatch(services, "GET", "/health")
    assert status == 200
    assert body == {"status": "ok", "key_version": "v1"}


def test_settings_get_and_post(services):
    status, body = dispatch(services, "POST", "/privacy/settings", {"user_id": 7, "settings": {"ghost_mode": True}})
    assert status == 200 and body["ghost_mode"] is True
    status, body = dispatch(services, "GET", "/privacy/settings?user_id=7")
    assert status == 200 and body["ghost_mode"] is True


def test_mask_endpoint(services):
    status, body = dispatch(services, "POST", "/privacy/mask", {"user_id": 7, "content": "mail jane@example.com"})
    assert status == 200
    assert body["masked_content"] == "mail j***@example.com"
    assert body["risk_score"] == pytest.approx(4.75)


def test_anonymous_identity_endpoint(services):
    status, body = dispatch(services, "POST", "/privacy/anonymous-identity", {"user_id": 7, "session_id": "s1"})
    assert status == 201
    assert services.vault.resolve_anonymous_identity(body["anonymous_id"]) == 7


def test_unmasking_endpoints(services):
    status, body = dispatch(services, "POST", "/compliance/unmasking-requests", {
        "requester_id": 3, "target_message_id": 42, "legal_justification": "Court order",
    })
    assert status == 201 and body["status"] == "pending"
    path = f"/compliance/unmasking-requests/{body['id']}"

    status, body = dispatch(services, "POST", path + "/reject", {"reviewer_id": 9, "reason": "Not specific"})
    assert status == 200 and body["status"] == "rejected"


def test_report_and_summary(services):
    dispatch(services, "POST", "/compliance/policies", {"created_by": 1, "rule": {"name": "P", "type": "dlp_rule"}})
    status, body = dispatch(services, "GET", "/compliance/report?start=2024-02-01&end=2024-03-02&department=Legal")
    assert status == 200 and body["department"] == "Legal"
    status, body = dispatch(services, "GET", "/compliance/dlp-summary")
    assert status == 200 and body["total_incidents"] == 0
    status, body = dispatch(services, "POST", "/compliance/retention-check")
    assert status == 200 and body == {"notifications_created": 0}


def test_unknown_route(services):
    assert dispatch(services, "GET", "/nope")[0] == 404
    assert dispatch(services, "POST", "/nope")[0] == 404
    assert dispatch(services, "DELETE", "/health")[0] == 405


@pytest.fixture
def live(services):
    server = GuardServer(("127.0.0.1", 0), services)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def _post(url, payload):
    req = urllib.request.Request(
        url, data=json.dumps(payload).encode(), headers={"Content-Type": "application/json"}, method="POST",
    )
    try:
        with urllib.request.urlopen(req) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read())


def test_errors_map_to_status_codes(live):
    assert _post(live + "/compliance/unmasking-requests/999/approve", {"approver_id": 9})[0] == 404
    assert _post(live + "/privacy/mask", {"content": "x"})[0] == 400
    assert _post(live + "/privacy/settings", {"user_id": 7, "settings": {"bogus": 1}})[0] == 400

    status, body = _post(live + "/compliance/unmasking-requests", {
        "requester_id": 3, "target_message_id": 1, "legal_justification": "Audit",
    })
    assert status == 201
    approve = f"{live}/compliance/unmasking-requests/{body['id']}/approve"
    assert _post(approve, {"approver_id": 9})[0] == 200
    status, body = _post(approve, {"approver_id": 9})
    assert status == 409 and "not pending" in body["error"]
