import logging
import logging.config
import structlog
from datetime import datetime, timezone
import uuid
from typing import Optional
import sys


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path for a rotating JSON log. If None, logs to stdout only.
    """

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Records arrive already rendered as JSON by the structlog chain above
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "json": {
                "format": "%(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "detailed",
                "stream": sys.stdout
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }

    if log_file:
        log_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5
        }
        log_config["root"]["handlers"].append("file")

    logging.config.dictConfig(log_config)

    get_logger("linkbox").info("Logging configured", level=log_level, file=log_file)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def token_prefix(token: Optional[str]) -> Optional[str]:
    """Only ever log the first few characters of a bearer token."""
    if not token:
        return None
    return token[:8] + "..."


class DispatchContext:
    """Context manager for a dispatcher run with a correlation ID."""

    def __init__(self, trigger: str, worker_id: Optional[str] = None):
        self.trigger = trigger
        self.run_id = str(uuid.uuid4())[:8]
        self.logger = get_logger("linkbox.outbox").bind(run_id=self.run_id, worker_id=worker_id)
        self.start_time = None

    def __enter__(self):
        self.start_time = datetime.now(timezone.utc)
        self.logger.info(
            "Dispatch run started",
            trigger=self.trigger,
            start_time=self.start_time.isoformat()
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.info(
                "Dispatch run completed",
                trigger=self.trigger,
                duration_seconds=duration,
                status="success"
            )
        else:
            self.logger.error(
                "Dispatch run failed",
                trigger=self.trigger,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val)
            )

        return False
