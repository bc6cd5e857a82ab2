class OutboxError(Exception):
    """Base class for outbox errors."""


class HandlerTransientError(OutboxError):
    """Network, timeout or external-service failure; the job is retried with backoff."""


class HandlerTimeout(HandlerTransientError):
    """Handler ran past its time limit."""


class HandlerPermanentError(OutboxError):
    """The payload will never succeed; the job is dead-lettered without retry."""


class MaxAttemptsExceeded(OutboxError):
    """Retry budget exhausted. Recorded on the job, never raised to a caller."""


class UnknownJobType(OutboxError):
    """No handler registered for a job's type. Recorded on the job, never raised to a caller."""


class InvalidPayload(OutboxError, ValueError):
    """Enqueue called with an empty job type or a payload that is not JSON."""


class JobNotFound(OutboxError, LookupError):
    pass


class JobNotRequeueable(OutboxError):
    """Only dead-lettered jobs can be put back in the queue."""
