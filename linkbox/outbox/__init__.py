# Package
from linkbox.outbox.dispatcher import DispatchReport, OutboxDispatcher, get_dispatcher
from linkbox.outbox.errors import HandlerPermanentError, HandlerTransientError
from linkbox.outbox.job import JobContext
from linkbox.outbox.registry import HandlerRegistry
from linkbox.outbox.store import OutboxService
