"""Shared requests plumbing for handlers that call external services."""
import requests
from requests.exceptions import ConnectionError, RequestException, Timeout

from linkbox.outbox.errors import HandlerPermanentError, HandlerTransientError

DEFAULT_TIMEOUT = 20


def request_json(session: requests.Session, method: str, url: str, idempotency_key: str = None,
                 timeout: float = DEFAULT_TIMEOUT, **kwargs):
    """
    Make one HTTP call and translate failures into the handler error taxonomy.

    Connection problems, timeouts, 429 and 5xx are transient; any other 4xx means
    the request itself is wrong and retrying will not help.
    """
    headers = dict(kwargs.pop("headers", None) or {})
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key

    try:
        r = session.request(method, url, timeout=timeout, headers=headers, **kwargs)
    except (ConnectionError, Timeout) as e:
        raise HandlerTransientError(f"{method} {url} failed: {e}") from e
    except RequestException as e:
        raise HandlerPermanentError(f"{method} {url} could not be sent: {e}") from e

    if r.status_code == 429 or r.status_code >= 500:
        raise HandlerTransientError(f"{r.status_code} from {url}: {r.text[:200]}")
    if r.status_code >= 400:
        raise HandlerPermanentError(f"{r.status_code} from {url}: {r.text[:200]}")

    return r.json() if r.text else None
