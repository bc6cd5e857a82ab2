import hashlib
from dataclasses import dataclass


def idempotency_key_for(job_type: str, job_id: str) -> str:
    """Stable across retries and re-claims of the same job."""
    return hashlib.sha256(f"{job_type}:{job_id}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class JobContext:
    job_id: str                 # outbox_jobs.job_id
    job_type: str               # registry key
    attempt: int                # 1-based number of this execution
    max_attempts: int
    idempotency_key: str        # pass to external services so duplicates are no-ops

    @classmethod
    def for_job(cls, job):
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            idempotency_key=idempotency_key_for(job.job_type, job.job_id),
        )
