"""Shared-secret checks for the cron trigger and the operator endpoints."""
import hmac
from functools import wraps

from flask import current_app, jsonify, request

from linkbox.logging_config import get_logger

logger = get_logger(__name__)


def secrets_match(expected: str, provided: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _header_secret_required(config_key: str, header: str):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            expected = current_app.config.get(config_key)
            if not expected:
                logger.error(f"{config_key} is not configured; refusing request", path=request.path)
                return jsonify({'error': 'Endpoint not configured'}), 503
            if not secrets_match(expected, request.headers.get(header)):
                logger.warning(f"Invalid or missing {header} header", path=request.path,
                               remote_addr=request.remote_addr)
                return jsonify({'error': 'Unauthorized'}), 401
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def cron_secret_required(f):
    """
    Decorator for scheduler-triggered routes.

    Returns 503 if CRON_SECRET is unset, 401 if X-Cron-Secret does not match.
    """
    return _header_secret_required("CRON_SECRET", "X-Cron-Secret")(f)


def ops_key_required(f):
    """
    Decorator for the operator (dead-letter) routes.

    Returns 503 if OPS_API_KEY is unset, 401 if X-Ops-Key does not match.
    """
    return _header_secret_required("OPS_API_KEY", "X-Ops-Key")(f)
