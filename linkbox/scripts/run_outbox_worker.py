"""
Run the outbox dispatcher as a stand-alone process.

Use this instead of the in-app scheduler when the web process should not do
background work, e.g. one worker container next to several web containers.

Usage:
    python -m linkbox.scripts.run_outbox_worker                 # poll forever
    python -m linkbox.scripts.run_outbox_worker --once          # drain once and exit
    python -m linkbox.scripts.run_outbox_worker --interval 15 --batch-size 25
"""

import argparse
import sys
import time
from typing import List, Optional

from linkbox.logging_config import get_logger

logger = get_logger(__name__)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drain the outbox job table.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Drain until idle (or the run budget is spent) and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds to sleep between polls (default: OUTBOX_POLL_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Jobs claimed per batch (default: OUTBOX_BATCH_SIZE)",
    )
    parser.add_argument(
        "--worker-id",
        default=None,
        help="Identifier recorded on claimed jobs (default: host:pid:random)",
    )
    return parser


def run_worker(app, once=False, interval=None, batch_size=None, worker_id=None):
    """
    Poll loop. Returns the number of completed polls.

    Each poll drains the queue until it is empty or OUTBOX_RUN_BUDGET_SECONDS
    has been used, then sleeps for ``interval`` seconds.
    """
    from linkbox.models import db
    from linkbox.outbox.dispatcher import dispatcher_from_config, get_registry

    with app.app_context():
        dispatcher = dispatcher_from_config(app.config, get_registry(), worker_id=worker_id)
    if batch_size:
        try:
            dispatcher.batch_size = batch_size
        except ValueError:
            dispatcher.shutdown()
            raise
    interval = interval if interval is not None else app.config.get("OUTBOX_POLL_INTERVAL_SECONDS", 60)
    budget = app.config.get("OUTBOX_RUN_BUDGET_SECONDS", 50)

    logger.info("Outbox worker starting", worker_id=dispatcher.worker_id, once=once,
                interval=interval, batch_size=dispatcher.batch_size)
    polls = 0
    try:
        while True:
            with app.app_context():
                try:
                    dispatcher.run_until_idle(budget_seconds=budget, trigger="worker")
                except Exception as e:
                    if once:
                        raise
                    logger.error("Outbox poll failed", error=str(e), exc_info=True)
                finally:
                    db.session.remove()
            polls += 1
            if once:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Outbox worker interrupted", worker_id=dispatcher.worker_id)
    finally:
        dispatcher.shutdown()

    logger.info("Outbox worker stopped", worker_id=dispatcher.worker_id, polls=polls)
    return polls


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    from linkbox import create_app

    app = create_app()
    try:
        run_worker(
            app,
            once=args.once,
            interval=args.interval,
            batch_size=args.batch_size,
            worker_id=args.worker_id,
        )
    except ValueError as e:
        parser.error(str(e))
    return 0


if __name__ == "__main__":
    sys.exit(main())
