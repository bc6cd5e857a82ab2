"""
Shared fixtures.

``app`` is an in-memory SQLite app for single-threaded tests. ``file_app`` uses
a SQLite file so several threads (each with its own app context, session and
connection) can race against the same tables.
"""
import pytest

from linkbox import create_app
from linkbox.models import db
from linkbox.outbox.handlers.email import EmailSender


class RecordingEmailSender(EmailSender):
    """Fake provider that de-duplicates on idempotency key, like Resend does."""

    def __init__(self):
        self.calls = []
        self.delivered = {}

    def send(self, message, idempotency_key):
        self.calls.append((idempotency_key, message))
        if idempotency_key not in self.delivered:
            self.delivered[idempotency_key] = f"msg_{len(self.delivered) + 1}"
        return self.delivered[idempotency_key]


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def app(email_sender):
    """Create Flask application for testing."""
    app = create_app("testing", email_sender=email_sender)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path, email_sender):
    """App backed by a SQLite file, for tests that use several threads."""
    app = create_app(
        "testing",
        config_overrides={
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'linkbox-test.sqlite'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        },
        email_sender=email_sender,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def ops_headers(app):
    return {"X-Ops-Key": app.config["OPS_API_KEY"]}


@pytest.fixture
def cron_headers(app):
    return {"X-Cron-Secret": app.config["CRON_SECRET"]}
