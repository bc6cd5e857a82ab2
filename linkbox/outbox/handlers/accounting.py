from typing import Optional

import requests

from linkbox.logging_config import get_logger
from linkbox.outbox.errors import HandlerPermanentError, HandlerTransientError
from linkbox.outbox.handlers.http import request_json

logger = get_logger(__name__)

QUOTE_JOB_TYPE = "create_accounting_quote"
INVOICE_JOB_TYPE = "create_accounting_invoice"


class AccountingClient:
    """Contract for the accounting system. Both calls must honour idempotency_key."""

    def create_quote(self, payload: dict, idempotency_key: str) -> Optional[dict]:
        raise NotImplementedError

    def create_invoice(self, payload: dict, idempotency_key: str) -> Optional[dict]:
        raise NotImplementedError


class HttpAccountingClient(AccountingClient):
    """JSON-over-HTTP accounting API connection layer."""

    def __init__(self, base_url, api_key):
        if not base_url or not api_key:
            raise ValueError("Missing accounting API configuration")
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def create_quote(self, payload, idempotency_key):
        return request_json(self.session, "POST", f"{self.base_url}/quotes",
                            idempotency_key=idempotency_key, json=payload)

    def create_invoice(self, payload, idempotency_key):
        return request_json(self.session, "POST", f"{self.base_url}/invoices",
                            idempotency_key=idempotency_key, json=payload)


class UnconfiguredAccountingClient(AccountingClient):

    def create_quote(self, payload, idempotency_key):
        raise HandlerTransientError("Accounting API is not configured (ACCOUNTING_API_URL)")

    create_invoice = create_quote


def _require(payload, *fields):
    missing = [f for f in fields if not payload.get(f)]
    if missing:
        raise HandlerPermanentError(f"Accounting payload missing required fields: {', '.join(missing)}")


class CreateAccountingQuote:
    """Handler for 'create_accounting_quote' jobs."""

    def __init__(self, client: AccountingClient):
        self.client = client

    def __call__(self, payload, ctx):
        _require(payload, "company_id", "line_items")
        created = self.client.create_quote(payload, ctx.idempotency_key) or {}
        logger.info("Accounting quote created", job_id=ctx.job_id, company_id=payload["company_id"],
                    external_id=created.get("id"))
        return created


class CreateAccountingInvoice:
    """Handler for 'create_accounting_invoice' jobs."""

    def __init__(self, client: AccountingClient):
        self.client = client

    def __call__(self, payload, ctx):
        _require(payload, "company_id", "order_id", "items")
        created = self.client.create_invoice(payload, ctx.idempotency_key) or {}
        logger.info("Accounting invoice created", job_id=ctx.job_id, order_id=payload["order_id"],
                    external_id=created.get("id"))
        return created


def accounting_client_from_config(config) -> AccountingClient:
    if not config.get("ACCOUNTING_API_URL") or not config.get("ACCOUNTING_API_KEY"):
        logger.warning("Accounting API not configured; accounting jobs will retry until it is")
        return UnconfiguredAccountingClient()
    return HttpAccountingClient(config.get("ACCOUNTING_API_URL"), config.get("ACCOUNTING_API_KEY"))
