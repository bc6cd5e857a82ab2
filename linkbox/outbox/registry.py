from typing import Callable, Dict, List, Optional

from linkbox.logging_config import get_logger

logger = get_logger(__name__)

# handler(payload, ctx) -> result. Returning is success; raising
# HandlerPermanentError dead-letters the job; anything else is retried.
Handler = Callable[[dict, "JobContext"], object]


class HandlerRegistry:
    """Maps job_type strings to handler callables."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, job_type: str, handler: Handler) -> Handler:
        if not job_type:
            raise ValueError("job_type is required")
        if not callable(handler):
            raise TypeError(f"handler for {job_type!r} is not callable")
        if job_type in self._handlers:
            raise ValueError(f"A handler is already registered for {job_type!r}")
        self._handlers[job_type] = handler
        logger.debug("Handler registered", job_type=job_type, handler=getattr(handler, "__name__", repr(handler)))
        return handler

    def handler(self, job_type: str):
        """Decorator form of register()."""
        def decorator(func):
            return self.register(job_type, func)
        return decorator

    def get(self, job_type: str) -> Optional[Handler]:
        return self._handlers.get(job_type)

    def job_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type):
        return job_type in self._handlers
