"""
Outbox dispatcher.

Per job: pending -> claimed -> completed | pending (retry) | failed_permanent.

Claim, execute and record are separate steps, so a crash after a handler ran
but before its outcome was recorded leads to the job running again once its
claim lease expires. Handlers are written to be idempotent for that reason.
"""
import os
import random
import socket
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Optional

from flask import current_app

from linkbox.datetime_utils import to_naive_utc, utcnow
from linkbox.logging_config import DispatchContext, get_logger
from linkbox.outbox.errors import (
    HandlerPermanentError,
    HandlerTimeout,
    MaxAttemptsExceeded,
    UnknownJobType,
)
from linkbox.outbox.job import JobContext
from linkbox.outbox.registry import HandlerRegistry
from linkbox.outbox.store import OutboxService

logger = get_logger(__name__)


def default_worker_id():
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


@dataclass
class DispatchReport:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead: int = 0
    recovered: int = 0

    def add(self, other: "DispatchReport"):
        self.claimed += other.claimed
        self.completed += other.completed
        self.retried += other.retried
        self.dead += other.dead
        self.recovered += other.recovered

    @property
    def failed(self):
        return self.retried + self.dead

    def to_dict(self):
        data = asdict(self)
        data["failed"] = self.failed
        return data


class OutboxDispatcher:
    """Claims due jobs, runs the registered handler for each, records the outcome."""

    def __init__(
        self,
        registry: HandlerRegistry,
        worker_id: Optional[str] = None,
        batch_size: int = 10,
        handler_timeout: Optional[float] = 30,
        backoff_base: float = 300,
        backoff_max: float = 86400,
        jitter: float = 30,
        lease_seconds: int = 600,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.worker_id = worker_id or default_worker_id()
        self.handler_timeout = handler_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="outbox-handler")

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @batch_size.setter
    def batch_size(self, value: int):
        # The last job of a batch must still be inside its lease when it starts
        if self.handler_timeout and self.lease_seconds <= value * self.handler_timeout:
            raise ValueError(
                f"Claim lease ({self.lease_seconds}s) must exceed batch_size x handler_timeout "
                f"({value} x {self.handler_timeout}s)"
            )
        self._batch_size = value

    def compute_backoff(self, attempts: int) -> timedelta:
        """base * 2^attempts, capped, plus random jitter."""
        delay = min(self.backoff_base * (2 ** attempts), self.backoff_max)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return timedelta(seconds=delay)

    def _invoke(self, handler, payload, ctx: JobContext):
        if not self.handler_timeout:
            return handler(payload, ctx)

        app = current_app._get_current_object()

        def run():
            with app.app_context():
                return handler(payload, ctx)

        future = self._executor.submit(run)
        try:
            return future.result(timeout=self.handler_timeout)
        except FutureTimeout:
            # Only a handler that has not started yet can be cancelled; a running one keeps its thread
            future.cancel()
            raise HandlerTimeout(f"Handler exceeded {self.handler_timeout}s")

    def process_job(self, job, now=None) -> str:
        """
        Run one claimed job and record the outcome.

        Returns:
            str: 'completed', 'retried' or 'dead'
        """
        fixed_now = to_naive_utc(now)
        now = fixed_now or utcnow()
        log = logger.bind(job_id=job.job_id, job_type=job.job_type, worker_id=self.worker_id)

        handler = self.registry.get(job.job_type)
        if handler is None:
            error = UnknownJobType(f"No handler registered for job type '{job.job_type}'")
            log.error("Outbox job has no handler; dead-lettering", error=str(error))
            OutboxService.mark_dead(job, f"UnknownJobType: {error}", worker_id=self.worker_id, now=now,
                                   count_attempt=False)
            return "dead"

        ctx = JobContext.for_job(job)
        payload = dict(job.payload or {})
        try:
            result = self._invoke(handler, payload, ctx)
        except HandlerPermanentError as e:
            now = fixed_now or utcnow()
            log.error("Outbox job failed permanently", attempt=ctx.attempt, error=str(e))
            OutboxService.mark_dead(job, f"HandlerPermanentError: {e}", worker_id=self.worker_id, now=now)
            return "dead"
        except Exception as e:
            now = fixed_now or utcnow()
            error_text = f"{type(e).__name__}: {e}"
            attempts = job.attempts + 1
            if attempts < job.max_attempts:
                retry_at = now + self.compute_backoff(attempts)
                log.warning(
                    f"Outbox job failed, will retry (attempt {attempts}/{job.max_attempts})",
                    attempts=attempts,
                    next_retry_at=retry_at.isoformat(),
                    error=error_text,
                    exc_info=True,
                )
                OutboxService.mark_retry(job, error_text, retry_at, worker_id=self.worker_id, now=now)
                return "retried"

            exhausted = MaxAttemptsExceeded(
                f"gave up after {attempts} attempts; last error: {error_text}"
            )
            log.error(
                f"Outbox job failed after {job.max_attempts} attempts",
                attempts=attempts,
                error=error_text,
                exc_info=True,
            )
            OutboxService.mark_dead(job, f"MaxAttemptsExceeded: {exhausted}", worker_id=self.worker_id, now=now)
            return "dead"

        now = fixed_now or utcnow()
        stored_result = result if isinstance(result, (dict, list, str, int, float, bool)) else None
        OutboxService.mark_completed(job, worker_id=self.worker_id, result=stored_result, now=now)
        log.info("Outbox job completed", attempt=ctx.attempt)
        return "completed"

    def run_once(self, now=None) -> DispatchReport:
        """
        Recover expired claims, claim one batch, and process it.

        Each job records its outcome at its own finish time unless ``now`` is given.
        """
        fixed_now = to_naive_utc(now)
        now = fixed_now or utcnow()
        report = DispatchReport()
        report.recovered = OutboxService.recover_expired_claims(now=now)

        jobs = OutboxService.claim_batch(
            self.batch_size, self.worker_id, now=now, lease_seconds=self.lease_seconds
        )
        report.claimed = len(jobs)

        for job in jobs:
            outcome = self.process_job(job, now=fixed_now)
            if outcome == "completed":
                report.completed += 1
            elif outcome == "retried":
                report.retried += 1
            else:
                report.dead += 1

        if jobs:
            logger.info("Processed outbox batch", worker_id=self.worker_id, **report.to_dict())
        return report

    def run_until_idle(self, budget_seconds: float = 50, trigger: str = "manual") -> DispatchReport:
        """Keep draining batches until the queue is empty or the time budget is used."""
        total = DispatchReport()
        deadline = time.monotonic() + budget_seconds
        with DispatchContext(trigger, worker_id=self.worker_id):
            while time.monotonic() < deadline:
                report = self.run_once()
                total.add(report)
                if report.claimed == 0:
                    break
        return total

    def shutdown(self):
        self._executor.shutdown(wait=False)


def dispatcher_from_config(config, registry: HandlerRegistry, worker_id: Optional[str] = None) -> OutboxDispatcher:
    return OutboxDispatcher(
        registry,
        worker_id=worker_id,
        batch_size=config.get("OUTBOX_BATCH_SIZE", 10),
        handler_timeout=config.get("OUTBOX_HANDLER_TIMEOUT_SECONDS", 30),
        backoff_base=config.get("OUTBOX_BACKOFF_BASE_SECONDS", 300),
        backoff_max=config.get("OUTBOX_BACKOFF_MAX_SECONDS", 86400),
        jitter=config.get("OUTBOX_BACKOFF_JITTER_SECONDS", 30),
        lease_seconds=config.get("OUTBOX_CLAIM_LEASE_SECONDS", 600),
    )


def get_dispatcher() -> OutboxDispatcher:
    """Dispatcher for the current Flask app, built once per app."""
    dispatcher = current_app.extensions.get("linkbox.dispatcher")
    if dispatcher is None:
        dispatcher = dispatcher_from_config(current_app.config, get_registry())
        current_app.extensions["linkbox.dispatcher"] = dispatcher
    return dispatcher


def get_registry() -> HandlerRegistry:
    return current_app.extensions["linkbox.registry"]
