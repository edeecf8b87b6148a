"""
Skill Router — CLI

Drive workflows from the shell. Every command prints JSON on stdout;
logs and errors go to stderr.

Usage:
    # Classify without starting anything
    python -m router.cli classify "audit my staking contract"

    # Start from free text (or an explicit intent) and approve
    python -m router.cli start "build an NFT marketplace, no UI"
    python -m router.cli start --phases testing,security
    python -m router.cli approve wf_1a2b3c4d5e6f --approver alice

    # Report criteria and move on
    python -m router.cli record wf_1a2b3c4d5e6f compiles passed
    python -m router.cli record wf_1a2b3c4d5e6f access-control waived -j "no privileged roles"
    python -m router.cli advance wf_1a2b3c4d5e6f complete

    # Inspect
    python -m router.cli status wf_1a2b3c4d5e6f
    python -m router.cli report wf_1a2b3c4d5e6f
    python -m router.cli ledger --instance wf_1a2b3c4d5e6f

Exit codes:
    0  success
    1  invalid input or other command failure
    2  instance or phase not found
    3  budget or invariant violation (including the loop-back cap)
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

from engine.config_loader import ConfigLoader
from engine.logging import configure_logging
from router.errors import InputError, LoopLimitExceeded, RouterError
from router.runtime import PACKAGE_ROOT, Router
from router.types import FullPipeline, PartialSet, Repair, intent_to_dict


def _emit(payload: Any):
    print(json.dumps(payload, indent=2, default=str))


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


# ─── Commands ────────────────────────────────────────────────────────

def cmd_classify(args, router: Router):
    """Classify a request and show the matching rules."""
    _emit(router.explain(args.text))


def cmd_start(args, router: Router):
    """Start a workflow from free text or an explicit intent."""
    if args.phases:
        intent = PartialSet(frozenset(_split(args.phases)))
    elif args.repair:
        intent = Repair(args.repair)
    elif args.full or args.exclude:
        intent = FullPipeline(frozenset(_split(args.exclude)))
    elif args.text:
        intent = router.classify(args.text)
    else:
        raise InputError("Provide request text or one of --phases, --repair, --full, --exclude")
    _emit(router.start(intent, request_text=args.text or ""))


def cmd_approve(args, router: Router):
    _emit(router.approve(args.instance_id, approver=args.approver, notes=args.notes))


def cmd_reject(args, router: Router):
    _emit(router.reject(args.instance_id, rejector=args.rejector, reason=args.reason))


def cmd_record(args, router: Router):
    """Record one exit-criterion result."""
    _emit(router.record(
        args.instance_id, args.criterion_id, args.outcome,
        justification=args.justification, accept=args.accept, phase_id=args.phase,
    ))


def cmd_advance(args, router: Router):
    """Send a completion or failure signal for the active phase."""
    _emit(router.advance(
        args.instance_id, args.outcome, condition=args.condition, detail=args.detail,
    ))


def cmd_status(args, router: Router):
    _emit(router.resume(args.instance_id) if args.resume else router.status(args.instance_id))


def cmd_cancel(args, router: Router):
    _emit(router.cancel(args.instance_id, reason=args.reason))


def cmd_list(args, router: Router):
    _emit(router.list_instances(status=args.status))


def cmd_report(args, router: Router):
    _emit(router.report(args.instance_id))


def cmd_phases(args, router: Router):
    _emit(router.phases())


def cmd_ledger(args, router: Router):
    entries = router.ledger(instance_id=args.instance)
    if not args.verbose:
        entries = [
            {k: e[k] for k in ("id", "instance_id", "action_type", "created_at")}
            for e in entries
        ]
    _emit(entries)


def cmd_stats(args, router: Router):
    _emit(router.stats())


COMMANDS = {
    "classify": cmd_classify,
    "start": cmd_start,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "record": cmd_record,
    "advance": cmd_advance,
    "status": cmd_status,
    "cancel": cmd_cancel,
    "list": cmd_list,
    "report": cmd_report,
    "phases": cmd_phases,
    "ledger": cmd_ledger,
    "stats": cmd_stats,
}


# ─── Parser ──────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skill-router",
        description="Skill Router — phase routing and workflow state machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default=None,
        help="Base config YAML (default: router/config.yaml)",
    )
    parser.add_argument(
        "--db", default=None,
        help="SQLite database path (default: db_path from config)",
    )
    parser.add_argument("--env", default=os.environ.get("SR_ENV", "dev"), help="Config overlay")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--verbose", "-v", action="store_true")

    subs = parser.add_subparsers(dest="command", help="Command")

    # classify
    classify_p = subs.add_parser("classify", help="Classify a request")
    classify_p.add_argument("text")

    # start
    start_p = subs.add_parser("start", help="Start a workflow")
    start_p.add_argument("text", nargs="?", default="", help="Free-text request")
    start_p.add_argument("--phases", help="PartialSet: comma-separated phase ids")
    start_p.add_argument("--repair", metavar="ORIGIN", help="Repair from this phase")
    start_p.add_argument("--full", action="store_true", help="FullPipeline")
    start_p.add_argument("--exclude", help="FullPipeline minus these phases")

    # approve
    approve_p = subs.add_parser("approve", help="Approve a planned workflow")
    approve_p.add_argument("instance_id")
    approve_p.add_argument("--approver", "-a", default="", help="Approver name")
    approve_p.add_argument("--notes", "-n", default="", help="Approval notes")

    # reject
    reject_p = subs.add_parser("reject", help="Reject a planned workflow")
    reject_p.add_argument("instance_id")
    reject_p.add_argument("--rejector", "-r", default="", help="Rejector name")
    reject_p.add_argument("--reason", default="", help="Rejection reason")

    # record
    record_p = subs.add_parser("record", help="Record an exit-criterion result")
    record_p.add_argument("instance_id")
    record_p.add_argument("criterion_id")
    record_p.add_argument("outcome", choices=["passed", "failed", "waived"])
    record_p.add_argument("--justification", "-j", default="")
    record_p.add_argument("--accept", action="store_true", help="Accept a failure as-is")
    record_p.add_argument("--phase", default=None, help="Visited phase (default: active)")

    # advance
    advance_p = subs.add_parser("advance", help="Signal completion or failure")
    advance_p.add_argument("instance_id")
    advance_p.add_argument("outcome", choices=["complete", "fail"])
    advance_p.add_argument("--condition", "-c", default=None, help="Failure-condition label")
    advance_p.add_argument("--detail", "-d", default="")

    # status
    status_p = subs.add_parser("status", help="Show an instance snapshot")
    status_p.add_argument("instance_id")
    status_p.add_argument("--resume", action="store_true", help="Reload the resident module first")

    # cancel
    cancel_p = subs.add_parser("cancel", help="Abort a workflow")
    cancel_p.add_argument("instance_id")
    cancel_p.add_argument("--reason", default="")

    # list
    list_p = subs.add_parser("list", help="List instances")
    list_p.add_argument("--status", default=None)

    # report
    report_p = subs.add_parser("report", help="Final report with every exception")
    report_p.add_argument("instance_id")

    # phases / ledger / stats
    subs.add_parser("phases", help="Show the phase catalog")
    ledger_p = subs.add_parser("ledger", help="Show the action ledger")
    ledger_p.add_argument("--instance", help="Filter by instance ID")
    subs.add_parser("stats", help="Show store and budget statistics")

    return parser


def build_router(args) -> Router:
    project_root = Path(os.environ.get("SR_PROJECT_ROOT") or PACKAGE_ROOT)
    base_files = [args.config] if args.config else None
    config = ConfigLoader(env=args.env, project_root=project_root, base_files=base_files).load()
    if args.db:
        config["db_path"] = args.db
    return Router(config=config, project_root=project_root, verbose=args.verbose)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    router = None
    try:
        router = build_router(args)
        configure_logging(level=args.log_level or router.config.get("logging", {}).get("level", "WARNING"))
        COMMANDS[args.command](args, router)
        return 0
    except LoopLimitExceeded as e:
        _emit(e.snapshot)
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return e.exit_code
    except RouterError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return e.exit_code
    finally:
        if router is not None:
            router.close()


if __name__ == "__main__":
    sys.exit(main())
