"""HTTP sidecar server for privacy-guard.

Runs as a lightweight framework-less HTTP server on localhost.  The
messaging app and the admin console call it over HTTP.

Endpoints:
    GET  /health
    GET  /privacy/settings?user_id=7
    POST /privacy/settings                 {"user_id", "settings"}
    POST /privacy/mask                     {"user_id", "content", "message_id"?}
    POST /privacy/anonymous-identity       {"user_id", "session_id"}
    GET  /compliance/report?start=&end=&department=
    GET  /compliance/dlp-summary?start=&end=&department=
    POST /compliance/policies              {"created_by", "rule"}
    POST /compliance/unmasking-requests    {"requester_id", "target_message_id",
                                            "legal_justification", "urgency_level"?}
    POST /compliance/unmasking-requests/<id>/approve   {"approver_id", "notes"?}
    POST /compliance/unmasking-requests/<id>/reject    {"reviewer_id", "reason"}
    POST /compliance/retention-check

All endpoints expect/return JSON.  Errors come back as {"error": "..."}
with 404 (not found), 400 (invalid input), 409 (invalid transition) or 500.
"""

from __future__ import annotations
import json
import logging
import os
import re
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .config import Services, create_services, load_config, load_from_yaml
from .engine import parse_time
from .errors import InvalidTransitionError, NotFoundError, PrivacyGuardError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("PRIVACY_GUARD_PORT", "18792"))
REPORT_WINDOW = timedelta(days=30)

_UNMASK_ACTION = re.compile(r"^/compliance/unmasking-requests/(\d+)/(approve|reject)$")


def _require(body: dict[str, Any], key: str) -> Any:
    if body.get(key) is None:
        raise ValidationError(f"missing field: {key}")
    return body[key]


def _int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be an integer") from e


def _period(services: Services, query: dict[str, str]):
    end = parse_time(query["end"]) if query.get("end") else services.engine.now()
    start = parse_time(query["start"]) if query.get("start") else end - REPORT_WINDOW
    return start, end


def status_for(error: PrivacyGuardError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, InvalidTransitionError):
        return 409
    return 500


def dispatch(
    services: Services,
    method: str,
    path: str,
    body: dict[str, Any] | None = None,
) -> tuple[int, Any]:
    """Route one request.  Returns (status, JSON-able payload)."""
    url = urlsplit(path)
    query = {k: v[-1] for k, v in parse_qs(url.query).items()}
    route = url.path.rstrip("/") or "/"
    body = body or {}
    engine, vault, compliance = services.engine, services.vault, services.compliance

    if method == "GET":
        if route == "/health":
            return 200, {"status": "ok", "key_version": services.cipher.primary_version}
        if route == "/privacy/settings":
            user_id = _int(_require(query, "user_id"), "user_id")
            return 200, engine.get_user_privacy_settings(user_id).to_dict()
        if route == "/compliance/report":
            start, end = _period(services, query)
            return 200, compliance.generate_compliance_report(start, end, query.get("department")).to_dict()
        if route == "/compliance/dlp-summary":
            start, end = _period(services, query)
            return 200, compliance.get_dlp_incident_summary(start, end, query.get("department")).to_dict()
        return 404, {"error": "not found"}

    if method != "POST":
        return 405, {"error": "method not allowed"}

    if route == "/privacy/settings":
        user_id = _int(_require(body, "user_id"), "user_id")
        return 200, engine.update_privacy_profile(user_id, _require(body, "settings")).to_dict()

    if route == "/privacy/mask":
        user_id = _int(_require(body, "user_id"), "user_id")
        message_id = body.get("message_id")
        result = engine.mask_content(
            _require(body, "content"),
            user_id,
            message_id=_int(message_id, "message_id") if message_id is not None else None,
        )
        return 200, result.to_dict()

    if route == "/privacy/anonymous-identity":
        user_id = _int(_require(body, "user_id"), "user_id")
        anonymous_id = vault.create_anonymous_identity(user_id, str(_require(body, "session_id")))
        return 201, {"anonymous_id": anonymous_id, "expires_at": vault.expires_at(anonymous_id).isoformat()}

    if route == "/compliance/policies":
        created_by = _int(_require(body, "created_by"), "created_by")
        policy_id = compliance.create_policy(created_by, _require(body, "rule"))
        return 201, compliance.get_policy(policy_id).to_dict()

    if route == "/compliance/unmasking-requests":
        request_id = compliance.process_unmasking_request(
            _int(_require(body, "requester_id"), "requester_id"),
            _int(_require(body, "target_message_id"), "target_message_id"),
            _require(body, "legal_justification"),
            body.get("urgency_level", "standard"),
        )
        return 201, compliance.get_unmasking_request(request_id).to_dict()

    if route == "/compliance/retention-check":
        return 200, {"notifications_created": compliance.check_retention_compliance()}

    m = _UNMASK_ACTION.match(route)
    if m:
        request_id, action = int(m.group(1)), m.group(2)
        if action == "approve":
            compliance.approve_unmasking_request(
                request_id, _int(_require(body, "approver_id"), "approver_id"), body.get("notes"),
            )
        else:
            compliance.reject_unmasking_request(
                request_id, _int(_require(body, "reviewer_id"), "reviewer_id"), _require(body, "reason"),
            )
        return 200, compliance.get_unmasking_request(request_id).to_dict()

    return 404, {"error": "not found"}


class GuardServer(HTTPServer):
    """HTTPServer that carries the wired services for its handlers."""

    def __init__(self, address: tuple[str, int], services: Services) -> None:
        super().__init__(address, GuardHandler)
        self.services = services


class GuardHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the privacy-guard sidecar."""

    server: GuardServer

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length).decode("utf-8")
        data = json.loads(body) if body else {}
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        return data

    def _respond(self, status: int, data: Any) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s " + format, self.address_string(), *args)

    def _handle(self, method: str) -> None:
        try:
            body = self._read_json() if method == "POST" else None
            status, payload = dispatch(self.server.services, method, self.path, body)
        except json.JSONDecodeError:
            status, payload = 400, {"error": "invalid JSON body"}
        except PrivacyGuardError as e:
            status, payload = status_for(e), {"error": str(e)}
            if status == 500:
                logger.error("%s %s failed: %s", method, self.path, e)
        except Exception:
            logger.exception("%s %s crashed", method, self.path)
            status, payload = 500, {"error": "internal error"}
        self._respond(status, payload)

    def do_GET(self) -> None:
        self._handle("GET")

    def do_POST(self) -> None:
        self._handle("POST")


def serve(services: Services, port: int = DEFAULT_PORT, host: str = "127.0.0.1") -> None:
    """Start the privacy-guard HTTP sidecar."""
    server = GuardServer((host, port), services)
    logger.info("privacy-guard sidecar listening on http://%s:%d (db %s)", host, port, services.store.path)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        server.server_close()
        services.close()


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="privacy-guard HTTP sidecar")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--db", help="SQLite store path")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    cfg = load_from_yaml(args.config) if args.config else load_config()
    if args.db:
        cfg["database"] = args.db
    serve(create_services(cfg), port=args.port)
