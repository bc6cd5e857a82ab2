import json
from datetime import timedelta
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import func, select, update

from linkbox.datetime_utils import to_naive_utc, utcnow
from linkbox.logging_config import get_logger
from linkbox.models import JobStatus, OutboxJob, db
from linkbox.outbox.errors import InvalidPayload, JobNotFound, JobNotRequeueable

logger = get_logger(__name__)

_jobs = OutboxJob.__table__

REQUEUEABLE_STATUSES = (JobStatus.FAILED_PERMANENT, JobStatus.FAILED_RETRYABLE)
FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED_PERMANENT)


def _config(key, default):
    return current_app.config.get(key, default)


def _truncate(error, limit=2000):
    text = str(error)
    return text if len(text) <= limit else text[:limit] + "..."


class OutboxService:
    """Durable job table: enqueue, exclusive claim, status transitions, operator surface."""

    @staticmethod
    def enqueue(job_type: str, payload: dict, scheduled_for=None, max_attempts: Optional[int] = None) -> str:
        """
        Add a pending job in the caller's transaction.

        The row is flushed, not committed: it becomes durable when the caller
        commits the business change that caused it, and disappears if that
        change rolls back.

        Args:
            job_type: registry key, e.g. 'send_transactional_email'
            payload: JSON-serialisable dict, opaque to the outbox
            scheduled_for: earliest run time (defaults to now)
            max_attempts: retry budget (defaults to OUTBOX_MAX_ATTEMPTS)

        Returns:
            str: the new job_id
        """
        if not job_type or not isinstance(job_type, str):
            raise InvalidPayload("job_type must be a non-empty string")
        if not isinstance(payload, dict):
            raise InvalidPayload("payload must be a JSON object")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"payload is not JSON-serialisable: {e}") from e

        now = utcnow()
        job = OutboxJob(
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts or _config("OUTBOX_MAX_ATTEMPTS", 5),
            scheduled_for=to_naive_utc(scheduled_for) or now,
            created_at=now,
            updated_at=now,
        )
        db.session.add(job)
        db.session.flush()

        logger.info("Outbox job enqueued", job_id=job.job_id, job_type=job_type,
                    scheduled_for=job.scheduled_for.isoformat())
        return job.job_id

    @staticmethod
    def claim_batch(limit: int, worker_id: str, now=None, lease_seconds: Optional[int] = None) -> List[OutboxJob]:
        """
        Atomically move up to ``limit`` due pending jobs to 'claimed' for this worker.

        A single UPDATE ... WHERE status = 'pending' ... RETURNING statement does
        the selection and the transition, so concurrent dispatchers never get the
        same row. On PostgreSQL the inner select also skips rows another
        dispatcher is locking.
        """
        now = to_naive_utc(now) or utcnow()
        lease = timedelta(seconds=lease_seconds or _config("OUTBOX_CLAIM_LEASE_SECONDS", 600))

        due = (
            select(_jobs.c.job_id)
            .where(_jobs.c.status == JobStatus.PENDING, _jobs.c.scheduled_for <= now)
            .order_by(_jobs.c.scheduled_for, _jobs.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(_jobs)
            .where(_jobs.c.job_id.in_(due), _jobs.c.status == JobStatus.PENDING)
            .values(
                status=JobStatus.CLAIMED,
                claimed_by=worker_id,
                claimed_at=now,
                locked_until=now + lease,
                updated_at=now,
            )
            .returning(_jobs.c.job_id)
        )
        claimed_ids = list(db.session.execute(stmt).scalars())
        db.session.commit()

        if not claimed_ids:
            return []

        logger.info("Claimed outbox jobs", worker_id=worker_id, count=len(claimed_ids))
        return (
            OutboxJob.query.filter(OutboxJob.job_id.in_(claimed_ids))
            .order_by(OutboxJob.scheduled_for, OutboxJob.created_at)
            .all()
        )

    @staticmethod
    def _transition(job_id: str, expected, values: dict, worker_id: Optional[str] = None) -> bool:
        """
        Apply ``values`` only if the job is still in one of the ``expected`` statuses.

        With ``worker_id`` the job must also still be claimed by that worker, so an
        outcome reported after the lease was recovered and re-claimed is dropped.
        """
        conditions = [_jobs.c.job_id == job_id, _jobs.c.status.in_(expected)]
        if worker_id is not None:
            conditions.append(_jobs.c.claimed_by == worker_id)
        stmt = (
            update(_jobs)
            .where(*conditions)
            .values(**values)
        )
        updated = db.session.execute(stmt).rowcount == 1
        db.session.commit()
        return updated

    @staticmethod
    def mark_completed(job: OutboxJob, *, worker_id: str, result=None, now=None) -> bool:
        now = to_naive_utc(now) or utcnow()
        updated = OutboxService._transition(job.job_id, (JobStatus.CLAIMED,), {
            "status": JobStatus.COMPLETED,
            "completed_at": now,
            "updated_at": now,
            "result": result,
            "last_error": None,
            "locked_until": None,
        }, worker_id=worker_id)
        if not updated:
            logger.warning("Completed job was no longer claimed by this worker; status left unchanged",
                           job_id=job.job_id, worker_id=worker_id)
        return updated

    @staticmethod
    def mark_retry(job: OutboxJob, error, scheduled_for, *, worker_id: str, now=None) -> bool:
        now = to_naive_utc(now) or utcnow()
        updated = OutboxService._transition(job.job_id, (JobStatus.CLAIMED,), {
            "status": JobStatus.PENDING,
            "attempts": _jobs.c.attempts + 1,
            "scheduled_for": to_naive_utc(scheduled_for),
            "last_error": _truncate(error),
            "claimed_by": None,
            "locked_until": None,
            "updated_at": now,
        }, worker_id=worker_id)
        if not updated:
            logger.warning("Retried job was no longer claimed by this worker; status left unchanged",
                           job_id=job.job_id, worker_id=worker_id)
        return updated

    @staticmethod
    def mark_dead(job: OutboxJob, error, *, worker_id: str, now=None, count_attempt: bool = True) -> bool:
        now = to_naive_utc(now) or utcnow()
        values = {
            "status": JobStatus.FAILED_PERMANENT,
            "last_error": _truncate(error),
            "locked_until": None,
            "updated_at": now,
        }
        if count_attempt:
            values["attempts"] = _jobs.c.attempts + 1
        updated = OutboxService._transition(job.job_id, (JobStatus.CLAIMED,), values, worker_id=worker_id)
        if not updated:
            logger.warning("Dead-lettered job was no longer claimed by this worker; status left unchanged",
                           job_id=job.job_id, worker_id=worker_id)
        return updated

    @staticmethod
    def recover_expired_claims(now=None) -> int:
        """
        Return jobs whose claim lease ran out (crashed or stuck dispatcher) to the queue.

        The lost run counts as an attempt; jobs with no budget left are dead-lettered.
        """
        now = to_naive_utc(now) or utcnow()
        expired = (_jobs.c.status == JobStatus.CLAIMED, _jobs.c.locked_until < now)

        dead = db.session.execute(
            update(_jobs)
            .where(*expired, _jobs.c.attempts + 1 >= _jobs.c.max_attempts)
            .values(
                status=JobStatus.FAILED_PERMANENT,
                attempts=_jobs.c.attempts + 1,
                last_error="MaxAttemptsExceeded: claim lease expired before the job finished",
                locked_until=None,
                updated_at=now,
            )
        ).rowcount
        retried = db.session.execute(
            update(_jobs)
            .where(*expired)
            .values(
                status=JobStatus.PENDING,
                attempts=_jobs.c.attempts + 1,
                scheduled_for=now,
                last_error="Claim lease expired before the job finished",
                claimed_by=None,
                locked_until=None,
                updated_at=now,
            )
        ).rowcount
        db.session.commit()

        if dead or retried:
            logger.warning("Recovered expired outbox claims", requeued=retried, dead_lettered=dead)
        return dead + retried

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    @staticmethod
    def get(job_id: str) -> Optional[OutboxJob]:
        return db.session.get(OutboxJob, job_id)

    @staticmethod
    def list_dead_letters(limit: int = 50, job_type: Optional[str] = None) -> List[OutboxJob]:
        query = OutboxJob.query.filter(OutboxJob.status == JobStatus.FAILED_PERMANENT)
        if job_type:
            query = query.filter(OutboxJob.job_type == job_type)
        return query.order_by(OutboxJob.updated_at.desc()).limit(limit).all()

    @staticmethod
    def requeue(job_id: str, now=None) -> OutboxJob:
        """Put a dead-lettered job back in the queue with a fresh retry budget."""
        now = to_naive_utc(now) or utcnow()
        updated = OutboxService._transition(job_id, REQUEUEABLE_STATUSES, {
            "status": JobStatus.PENDING,
            "attempts": 0,
            "scheduled_for": now,
            "completed_at": None,
            "claimed_by": None,
            "locked_until": None,
            "updated_at": now,
        })
        job = OutboxService.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if not updated:
            raise JobNotRequeueable(f"Job {job_id} is {job.status.value}, only failed jobs can be requeued")

        logger.info("Outbox job requeued", job_id=job_id, job_type=job.job_type)
        return job

    @staticmethod
    def cancel(job_id: str, reason: str = "cancelled by operator", now=None) -> bool:
        """
        Stop a job from running again by dead-lettering it.

        A handler already running is not interrupted; its outcome is discarded
        because the dispatcher only records results for jobs still claimed.
        """
        now = to_naive_utc(now) or utcnow()
        cancellable = [s for s in JobStatus if s not in FINISHED_STATUSES]
        updated = OutboxService._transition(job_id, cancellable, {
            "status": JobStatus.FAILED_PERMANENT,
            "last_error": f"Cancelled: {reason}",
            "locked_until": None,
            "updated_at": now,
        })
        if not updated and OutboxService.get(job_id) is None:
            raise JobNotFound(job_id)
        if updated:
            logger.info("Outbox job cancelled", job_id=job_id, reason=reason)
        return updated

    @staticmethod
    def counts_by_status() -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        rows = db.session.query(OutboxJob.status, func.count(OutboxJob.job_id)).group_by(OutboxJob.status).all()
        for status, count in rows:
            counts[status.value] = count
        return counts

    @staticmethod
    def purge_completed(older_than: timedelta, now=None) -> int:
        now = to_naive_utc(now) or utcnow()
        deleted = OutboxJob.query.filter(
            OutboxJob.status == JobStatus.COMPLETED,
            OutboxJob.completed_at < now - older_than,
        ).delete(synchronize_session=False)
        db.session.commit()
        if deleted:
            logger.info("Purged completed outbox jobs", count=deleted)
        return deleted
