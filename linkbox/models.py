from flask_sqlalchemy import SQLAlchemy
from enum import Enum
import uuid

from linkbox.datetime_utils import utcnow, format_datetime_utc

db = SQLAlchemy()


class JobStatus(Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"


def _new_job_id():
    return str(uuid.uuid4())


class OutboxJob(db.Model):
    """Durable side-effect job, drained by the outbox dispatcher."""
    __tablename__ = "outbox_jobs"

    job_id = db.Column(db.String(36), primary_key=True, default=_new_job_id)
    job_type = db.Column(db.String(100), nullable=False, index=True)  # key into the handler registry
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.Enum(JobStatus, values_callable=lambda e: [m.value for m in e],
                               native_enum=False, length=32),
                       nullable=False, default=JobStatus.PENDING)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=5)
    scheduled_for = db.Column(db.DateTime, nullable=False, default=utcnow)

    last_error = db.Column(db.Text, nullable=True)
    result = db.Column(db.JSON, nullable=True)

    # Claim bookkeeping
    claimed_by = db.Column(db.String(64), nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("idx_outbox_status_scheduled", "status", "scheduled_for"),
        db.Index("idx_outbox_locked_until", "locked_until"),
    )

    def __repr__(self):
        return f"<OutboxJob {self.job_id} - {self.job_type} - {self.status.value if self.status else None}>"

    def to_dict(self):
        return {
            'job_id': self.job_id,
            'job_type': self.job_type,
            'payload': self.payload,
            'status': self.status.value,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'scheduled_for': format_datetime_utc(self.scheduled_for),
            'last_error': self.last_error,
            'result': self.result,
            'claimed_by': self.claimed_by,
            'claimed_at': format_datetime_utc(self.claimed_at),
            'locked_until': format_datetime_utc(self.locked_until),
            'created_at': format_datetime_utc(self.created_at),
            'updated_at': format_datetime_utc(self.updated_at),
            'completed_at': format_datetime_utc(self.completed_at),
        }


class ConsumedNonce(db.Model):
    """Replay-guard record for single-use tokens. Rows may be purged after expires_at."""
    __tablename__ = "consumed_nonces"

    id = db.Column(db.Integer, primary_key=True)
    purpose = db.Column(db.String(32), nullable=False)
    nonce = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    consumed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    consumed_by = db.Column(db.String(128), nullable=True)  # e.g. client IP

    __table_args__ = (
        db.UniqueConstraint("purpose", "nonce", name="uq_consumed_nonce_purpose_nonce"),
    )

    def __repr__(self):
        return f"<ConsumedNonce {self.purpose} - {self.nonce[:8]}>"
