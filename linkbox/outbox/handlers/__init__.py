# Package
from linkbox.outbox.handlers import accounting, email


def register_default_handlers(registry, config, email_sender=None, accounting_client=None):
    """Register the built-in job types. Collaborators can be injected for tests."""
    sender = email_sender or email.email_sender_from_config(config)
    client = accounting_client or accounting.accounting_client_from_config(config)

    registry.register(email.JOB_TYPE, email.SendTransactionalEmail(sender))
    registry.register(accounting.QUOTE_JOB_TYPE, accounting.CreateAccountingQuote(client))
    registry.register(accounting.INVOICE_JOB_TYPE, accounting.CreateAccountingInvoice(client))
    return registry
