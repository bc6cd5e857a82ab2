"""
Operator commands for the outbox and the consumed-nonce table.

Usage:
    python -m linkbox.scripts.outbox_admin stats
    python -m linkbox.scripts.outbox_admin dead-letters [--limit 20] [--job-type send_transactional_email]
    python -m linkbox.scripts.outbox_admin requeue JOB_ID
    python -m linkbox.scripts.outbox_admin cancel JOB_ID [--reason "customer asked"]
    python -m linkbox.scripts.outbox_admin purge-nonces
    python -m linkbox.scripts.outbox_admin purge-completed --days 30
"""

import argparse
import json
import sys
from datetime import timedelta
from typing import List, Optional

from linkbox.outbox.errors import JobNotFound, JobNotRequeueable
from linkbox.outbox.store import OutboxService
from linkbox.tokens.replay_guard import ReplayGuard


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and repair outbox jobs.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    dead_parser = subparsers.add_parser("dead-letters", help="List failed_permanent jobs, newest first")
    dead_parser.add_argument("--limit", type=int, default=50, help="Maximum jobs to show")
    dead_parser.add_argument("--job-type", default=None, help="Only show jobs of this type")
    dead_parser.add_argument("--json", action="store_true", help="Print raw JSON instead of a table")

    requeue_parser = subparsers.add_parser("requeue", help="Return a dead-lettered job to pending")
    requeue_parser.add_argument("job_id")

    cancel_parser = subparsers.add_parser("cancel", help="Dead-letter a job so it never runs again")
    cancel_parser.add_argument("job_id")
    cancel_parser.add_argument("--reason", default="cancelled by operator")

    subparsers.add_parser("stats", help="Job counts per status")
    subparsers.add_parser("purge-nonces", help="Delete consumed nonces whose tokens have expired")

    purge_parser = subparsers.add_parser("purge-completed", help="Delete old completed jobs")
    purge_parser.add_argument("--days", type=int, required=True, help="Keep jobs completed within this many days")

    return parser


def print_dead_letters(jobs, as_json=False):
    if as_json:
        print(json.dumps([job.to_dict() for job in jobs], indent=2))
        return

    print("=" * 70)
    print(f"DEAD-LETTERED JOBS ({len(jobs)})")
    print("=" * 70)
    for job in jobs:
        print(f"{job.job_id}  {job.job_type}  attempts={job.attempts}/{job.max_attempts}")
        print(f"    updated: {job.updated_at}")
        print(f"    error:   {job.last_error}")
    if not jobs:
        print("No dead-lettered jobs.")
    print("=" * 70)


def run_command(args) -> int:
    """Execute a parsed command inside an app context. Returns the exit code."""
    if args.command == "dead-letters":
        jobs = OutboxService.list_dead_letters(limit=args.limit, job_type=args.job_type)
        print_dead_letters(jobs, as_json=args.json)
        return 0

    if args.command == "requeue":
        try:
            job = OutboxService.requeue(args.job_id)
        except JobNotFound:
            print(f"✗ Job {args.job_id} not found")
            return 1
        except JobNotRequeueable as e:
            print(f"✗ {e}")
            return 1
        print(f"✓ Requeued {job.job_id} ({job.job_type})")
        return 0

    if args.command == "cancel":
        try:
            cancelled = OutboxService.cancel(args.job_id, reason=args.reason)
        except JobNotFound:
            print(f"✗ Job {args.job_id} not found")
            return 1
        if not cancelled:
            print(f"✗ Job {args.job_id} already finished")
            return 1
        print(f"✓ Cancelled {args.job_id}")
        return 0

    if args.command == "stats":
        counts = OutboxService.counts_by_status()
        for status, count in counts.items():
            print(f"{status:<18} {count}")
        return 0

    if args.command == "purge-nonces":
        deleted = ReplayGuard.purge_expired()
        print(f"Deleted {deleted} expired nonce(s)")
        return 0

    if args.command == "purge-completed":
        deleted = OutboxService.purge_completed(timedelta(days=args.days))
        print(f"Deleted {deleted} completed job(s) older than {args.days} day(s)")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    from linkbox import create_app

    app = create_app()
    with app.app_context():
        return run_command(args)


if __name__ == "__main__":
    sys.exit(main())
