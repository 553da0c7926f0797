"""CLI interface for privacy-guard, for operators and batch jobs.

Usage:
    # Mask text (stdin or --text) for a user, logging the detections
    echo 'Call me at 555-123-4567' | privacy-guard mask --user-id 7

    # Mask and open a DLP incident if the content is high risk
    privacy-guard dlp-check --user-id 7 --text 'SSN 123-45-6789, card 4111 1111 1111 1111'

    # Compliance report for a period
    privacy-guard report --start 2024-01-01 --end 2024-02-01 --department Finance

    # Unmasking workflow
    privacy-guard unmask-request --requester-id 3 --message-id 42 \
        --justification 'Subpoena 2024-118' --urgency urgent
    privacy-guard unmask-approve 1 --approver-id 9

Everything is written to the configured SQLite store and printed as JSON.
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from datetime import timedelta
from typing import Any

from .config import DEFAULT_DB, Services, create_services, load_config, load_from_yaml
from .engine import parse_time
from .errors import PrivacyGuardError
from .types import UrgencyLevel

logger = logging.getLogger(__name__)

REPORT_WINDOW = timedelta(days=30)


def _emit(data: Any) -> None:
    json.dump(data, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def _read_text(args: argparse.Namespace) -> str:
    return args.text if args.text is not None else sys.stdin.read()


def _read_json(args: argparse.Namespace) -> Any:
    raw = args.json if args.json is not None else sys.stdin.read()
    return json.loads(raw)


def _period(args: argparse.Namespace, services: Services):
    end = parse_time(args.end) if args.end else services.engine.now()
    start = parse_time(args.start) if args.start else end - REPORT_WINDOW
    return start, end


# ── Masking engine ──────────────────────────────────────────

def cmd_mask(args: argparse.Namespace, services: Services) -> None:
    """Mask text and log what was found."""
    result = services.engine.mask_content(_read_text(args), args.user_id, message_id=args.message_id)
    _emit(result.to_dict())


def cmd_dlp_check(args: argparse.Namespace, services: Services) -> None:
    incident = services.engine.process_dlp_violation(args.user_id, _read_text(args), message_id=args.message_id)
    _emit({"incident": incident.to_dict() if incident else None})


def cmd_settings(args: argparse.Namespace, services: Services) -> None:
    _emit(services.engine.get_user_privacy_settings(args.user_id).to_dict())


def cmd_set_settings(args: argparse.Namespace, services: Services) -> None:
    """Update a privacy profile from a JSON object of toggles."""
    settings = services.engine.update_privacy_profile(args.user_id, _read_json(args))
    _emit(settings.to_dict())


def cmd_anonymize(args: argparse.Namespace, services: Services) -> None:
    anonymous_id = services.vault.create_anonymous_identity(args.user_id, args.session_id)
    _emit({"anonymous_id": anonymous_id, "expires_at": services.vault.expires_at(anonymous_id).isoformat()})


def cmd_resolve(args: argparse.Namespace, services: Services) -> None:
    _emit({"user_id": services.vault.resolve_anonymous_identity(args.anonymous_id)})


# ── Compliance center ───────────────────────────────────────

def cmd_report(args: argparse.Namespace, services: Services) -> None:
    start, end = _period(args, services)
    _emit(services.compliance.generate_compliance_report(start, end, args.department).to_dict())


def cmd_dlp_summary(args: argparse.Namespace, services: Services) -> None:
    start, end = _period(args, services)
    _emit(services.compliance.get_dlp_incident_summary(start, end, args.department).to_dict())


def cmd_retention_sweep(args: argparse.Namespace, services: Services) -> None:
    _emit({"notifications_created": services.compliance.check_retention_compliance()})


def cmd_create_policy(args: argparse.Namespace, services: Services) -> None:
    """Create a policy from a JSON rule: {"name", "type", "departments", ...}."""
    policy_id = services.compliance.create_policy(args.created_by, _read_json(args))
    _emit(services.compliance.get_policy(policy_id).to_dict())


def cmd_unmask_request(args: argparse.Namespace, services: Services) -> None:
    request_id = services.compliance.process_unmasking_request(
        args.requester_id, args.message_id, args.justification, args.urgency,
    )
    _emit(services.compliance.get_unmasking_request(request_id).to_dict())


def cmd_unmask_approve(args: argparse.Namespace, services: Services) -> None:
    services.compliance.approve_unmasking_request(args.request_id, args.approver_id, args.notes)
    _emit(services.compliance.get_unmasking_request(args.request_id).to_dict())


def cmd_unmask_reject(args: argparse.Namespace, services: Services) -> None:
    services.compliance.reject_unmasking_request(args.request_id, args.reviewer_id, args.reason)
    _emit(services.compliance.get_unmasking_request(args.request_id).to_dict())


def cmd_expire_requests(args: argparse.Namespace, services: Services) -> None:
    _emit({"expired": services.compliance.expire_unmasking_requests()})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="privacy-guard",
        description="Sensitive-data masking and compliance operations",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--db", help=f"SQLite store path (default {DEFAULT_DB})")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")

    sub = parser.add_subparsers(dest="command", required=True)

    def text_cmd(name: str, help: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help)
        p.add_argument("--user-id", type=int, required=True)
        p.add_argument("--message-id", type=int)
        p.add_argument("--text", help="Text to scan (default: stdin)")
        return p

    text_cmd("mask", "Mask text and log detections")
    text_cmd("dlp-check", "Mask text and raise a DLP incident if risky")

    p = sub.add_parser("settings", help="Show a user's privacy settings")
    p.add_argument("--user-id", type=int, required=True)

    p = sub.add_parser("set-settings", help="Update a user's privacy settings (JSON)")
    p.add_argument("--user-id", type=int, required=True)
    p.add_argument("--json", help="Settings object (default: stdin)")

    p = sub.add_parser("anonymize", help="Issue an anonymous identity")
    p.add_argument("--user-id", type=int, required=True)
    p.add_argument("--session-id", required=True)

    p = sub.add_parser("resolve", help="Resolve an anonymous identity")
    p.add_argument("anonymous_id")

    for name, help in (("report", "Compliance report"), ("dlp-summary", "DLP incident summary")):
        p = sub.add_parser(name, help=help)
        p.add_argument("--start", help="ISO date (default: 30 days before --end)")
        p.add_argument("--end", help="ISO date (default: now)")
        p.add_argument("--department")

    sub.add_parser("retention-sweep", help="Run the retention compliance check")

    p = sub.add_parser("create-policy", help="Create an organizational policy (JSON rule)")
    p.add_argument("--created-by", type=int, required=True)
    p.add_argument("--json", help="Policy rule object (default: stdin)")

    p = sub.add_parser("unmask-request", help="Submit a legal unmasking request")
    p.add_argument("--requester-id", type=int, required=True)
    p.add_argument("--message-id", type=int, required=True)
    p.add_argument("--justification", required=True)
    p.add_argument("--urgency", default="standard", choices=[u.value for u in UrgencyLevel])

    p = sub.add_parser("unmask-approve", help="Approve a pending unmasking request")
    p.add_argument("request_id", type=int)
    p.add_argument("--approver-id", type=int, required=True)
    p.add_argument("--notes")

    p = sub.add_parser("unmask-reject", help="Reject a pending unmasking request")
    p.add_argument("request_id", type=int)
    p.add_argument("--reviewer-id", type=int, required=True)
    p.add_argument("--reason", required=True)

    sub.add_parser("expire-requests", help="Expire overdue unmasking requests")
    return parser


COMMANDS = {
    "mask": cmd_mask,
    "dlp-check": cmd_dlp_check,
    "settings": cmd_settings,
    "set-settings": cmd_set_settings,
    "anonymize": cmd_anonymize,
    "resolve": cmd_resolve,
    "report": cmd_report,
    "dlp-summary": cmd_dlp_summary,
    "retention-sweep": cmd_retention_sweep,
    "create-policy": cmd_create_policy,
    "unmask-request": cmd_unmask_request,
    "unmask-approve": cmd_unmask_approve,
    "unmask-reject": cmd_unmask_reject,
    "expire-requests": cmd_expire_requests,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        cfg = load_from_yaml(args.config) if args.config else load_config()
        if args.db:
            cfg["database"] = args.db
        services = create_services(cfg)
    except PrivacyGuardError as e:
        sys.stderr.write(f"error: {e}\n")
        return 2

    try:
        COMMANDS[args.command](args, services)
    except json.JSONDecodeError as e:
        sys.stderr.write(f"error: invalid JSON input: {e}\n")
        return 1
    except PrivacyGuardError as e:
        logger.debug("command %s failed", args.command, exc_info=True)
        sys.stderr.write(f"error: {e}\n")
        return 1
    finally:
        services.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
