"""
Tests for the worker and admin command-line entry points.
"""
from datetime import timedelta

import pytest

from linkbox.datetime_utils import utcnow
from linkbox.models import JobStatus, db
from linkbox.outbox.store import OutboxService
from linkbox.scripts import outbox_admin
from linkbox.scripts.run_outbox_worker import _build_arg_parser as worker_args
from linkbox.scripts.run_outbox_worker import run_worker
from linkbox.tokens.codec import new_nonce
from linkbox.tokens.purposes import TokenPurpose
from linkbox.tokens.replay_guard import ReplayGuard

EMAIL_PAYLOAD = {"to": "a@example.com", "subject": "Hi", "text": "Hello"}


def _admin(*argv):
    return outbox_admin.run_command(outbox_admin._build_arg_parser().parse_args(list(argv)))


def _dead_job():
    job_id = OutboxService.enqueue("no_such_job", {})
    db.session.commit()
    OutboxService.mark_dead(OutboxService.claim_batch(1, "w")[0], "UnknownJobType: no handler",
                            worker_id="w", count_attempt=False)
    return job_id


class TestWorker:

    def test_arguments(self):
        args = worker_args().parse_args(["--once", "--interval", "5", "--batch-size", "3", "--worker-id", "w1"])
        assert args.once is True
        assert args.interval == 5
        assert args.batch_size == 3
        assert args.worker_id == "w1"

    def test_once_drains_and_exits(self, app, email_sender):
        job_id = OutboxService.enqueue("send_transactional_email", EMAIL_PAYLOAD)
        db.session.commit()

        assert run_worker(app, once=True, batch_size=5, worker_id="cli-worker") == 1
        assert len(email_sender.calls) == 1
        assert OutboxService.get(job_id).status is JobStatus.COMPLETED

    def test_batch_size_that_outruns_the_lease_is_rejected(self, app):
        lease = app.config["OUTBOX_CLAIM_LEASE_SECONDS"]
        timeout = app.config["OUTBOX_HANDLER_TIMEOUT_SECONDS"]
        with pytest.raises(ValueError):
            run_worker(app, once=True, batch_size=lease // timeout, worker_id="cli-worker")


class TestAdmin:

    def test_stats(self, app, capsys):
        _dead_job()
        assert _admin("stats") == 0
        assert "failed_permanent" in capsys.readouterr().out

    def test_dead_letters(self, app, capsys):
        job_id = _dead_job()
        assert _admin("dead-letters", "--limit", "5") == 0
        assert job_id in capsys.readouterr().out

    def test_requeue(self, app):
        job_id = _dead_job()
        assert _admin("requeue", job_id) == 0
        assert OutboxService.get(job_id).status is JobStatus.PENDING

    def test_requeue_missing(self, app, capsys):
        assert _admin("requeue", "missing") == 1
        assert "not found" in capsys.readouterr().out

    def test_cancel(self, app):
        job_id = OutboxService.enqueue("noop", {})
        db.session.commit()
        assert _admin("cancel", job_id, "--reason", "duplicate") == 0
        assert OutboxService.get(job_id).last_error == "Cancelled: duplicate"
        assert _admin("cancel", job_id) == 1

    def test_purge_nonces(self, app, capsys):
        ReplayGuard.check_and_consume(TokenPurpose.PASSWORD_RESET, new_nonce(), utcnow() - timedelta(days=1))
        assert _admin("purge-nonces") == 0
        assert "Deleted 1" in capsys.readouterr().out

    def test_purge_completed(self, app, capsys):
        OutboxService.enqueue("noop", {})
        db.session.commit()
        job = OutboxService.claim_batch(1, "w")[0]
        OutboxService.mark_completed(job, worker_id="w", now=utcnow() - timedelta(days=10))
        assert _admin("purge-completed", "--days", "7") == 0
        assert "Deleted 1" in capsys.readouterr().out
