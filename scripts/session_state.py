#!/usr/bin/env python3
"""Inspect or reset persisted session and lockout state.

Usage:
    # Show the stored session (if still valid) and lockout status for an identity:
    STATE_DIR=/var/lib/sessionkeeper python scripts/session_state.py status --identity a@x.com

    # Unlock an identity by clearing its failed attempts:
    python scripts/session_state.py clear-attempts a@x.com

    # Drop the stored session:
    python scripts/session_state.py end-session

Environment Variables:
    STORE_BACKEND: memory, file or redis (default: file)
    STATE_DIR: Directory for the file store
    REDIS_URL: Redis connection string when STORE_BACKEND=redis
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _status(runtime, identity: str | None) -> dict:
    coordinator = runtime.coordinator
    session = coordinator.session
    result: dict = {
        "state": coordinator.state.value,
        "session": None,
    }
    if session is not None:
        result["session"] = {
            "identity": session.identity,
            "login_time": session.login_time.isoformat(),
            "last_activity": session.last_activity.isoformat(),
            "expires_at": session.expires_at.isoformat(),
            "device_info": session.device_info,
            "is_remembered": session.is_remembered,
            "time_remaining_seconds": coordinator.time_remaining_seconds(),
        }
    if identity:
        status = coordinator.lockout_status(identity)
        result["lockout"] = {
            "identity": status.identity,
            "locked": status.locked,
            "remaining_attempts": status.remaining_attempts,
            "retry_after_seconds": status.retry_after_seconds,
        }
    return result


def run(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect or reset session state")
    sub = parser.add_subparsers(dest="command", required=True)

    status_cmd = sub.add_parser("status", help="Show session and lockout state")
    status_cmd.add_argument("--identity", help="Identity (email) to report lockout for")

    clear_cmd = sub.add_parser("clear-attempts", help="Clear failed attempts for an identity")
    clear_cmd.add_argument("identity")
    clear_cmd.add_argument("--dry-run", action="store_true", help="Report without clearing")

    sub.add_parser("end-session", help="End and delete the stored session")

    args = parser.parse_args(argv)

    # Import here to avoid loading config before env vars are set
    from sessionkeeper.logging import set_correlation_id
    from sessionkeeper.service.runtime import get_runtime

    # One id ties together every log line of this invocation
    set_correlation_id()
    runtime = get_runtime()
    try:
        if args.command == "status":
            output = _status(runtime, args.identity)
        elif args.command == "clear-attempts":
            failures = len(runtime.coordinator.ledger.failed_attempts(args.identity))
            if args.dry_run:
                print(f"[DRY RUN] Would clear {failures} failed attempt(s) for {args.identity}")
                return 0
            runtime.coordinator.clear_attempts(args.identity)
            output = {"identity": args.identity, "cleared": failures}
        else:
            output = {"ended": runtime.coordinator.end_session()}
    finally:
        runtime.close()

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(run())
