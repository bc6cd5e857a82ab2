"""
Tests for OutboxDispatcher: outcomes per job, retry schedule, timeouts and
crash recovery.
"""
import time
from datetime import timedelta

import pytest

from linkbox.config import Config
from linkbox.datetime_utils import utcnow
from linkbox.models import JobStatus, db
from linkbox.outbox.dispatcher import DispatchReport, OutboxDispatcher, dispatcher_from_config, get_dispatcher
from linkbox.outbox.errors import HandlerPermanentError, HandlerTransientError
from linkbox.outbox.registry import HandlerRegistry
from linkbox.outbox.store import OutboxService
from linkbox.tokens.links import issue_link
from linkbox.tokens.purposes import TokenPurpose


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def dispatcher(app, registry):
    dispatcher = OutboxDispatcher(
        registry,
        worker_id="test-worker",
        batch_size=10,
        handler_timeout=5,
        backoff_base=10,
        backoff_max=3600,
        jitter=0,
        lease_seconds=60,
    )
    yield dispatcher
    dispatcher.shutdown()


def _enqueue(job_type, payload=None, **kwargs):
    job_id = OutboxService.enqueue(job_type, payload or {}, **kwargs)
    db.session.commit()
    return job_id


class TestProcessOutcomes:

    def test_successful_job_completes_and_is_not_reclaimed(self, dispatcher, registry):
        calls = []

        @registry.handler("send_trial_email")
        def send_trial_email(payload, ctx):
            calls.append(payload["contact_id"])
            return {"sent": True}

        link = issue_link(TokenPurpose.TRIAL_REQUEST, {"company": "cmp_1", "contact": "C1"})
        job_id = _enqueue("send_trial_email", {"contact_id": "C1", "token": link.token})

        report = dispatcher.run_once()
        assert report.claimed == 1
        assert report.completed == 1

        job = OutboxService.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.result == {"sent": True}
        assert job.completed_at is not None

        later = utcnow() + timedelta(days=1)
        assert dispatcher.run_once(now=later).claimed == 0
        assert calls == ["C1"]

    def test_missing_handler_dead_letters_without_attempt(self, dispatcher):
        job_id = _enqueue("no_such_job")
        report = dispatcher.run_once()
        assert report.dead == 1

        job = OutboxService.get(job_id)
        assert job.status is JobStatus.FAILED_PERMANENT
        assert job.attempts == 0
        assert job.last_error.startswith("UnknownJobType")

    def test_permanent_error_dead_letters_immediately(self, dispatcher, registry):
        @registry.handler("bad_payload")
        def bad_payload(payload, ctx):
            raise HandlerPermanentError("missing recipient")

        job_id = _enqueue("bad_payload")

        assert dispatcher.run_once().dead == 1
        job = OutboxService.get(job_id)
        assert job.status is JobStatus.FAILED_PERMANENT
        assert job.attempts == 1
        assert job.last_error == "HandlerPermanentError: missing recipient"

    def test_unexpected_exception_is_retried(self, dispatcher, registry):
        @registry.handler("flaky")
        def flaky(payload, ctx):
            raise KeyError("boom")

        job_id = _enqueue("flaky")
        assert dispatcher.run_once().retried == 1
        job = OutboxService.get(job_id)
        assert job.status is JobStatus.PENDING
        assert job.last_error.startswith("KeyError")

    def test_non_json_result_not_stored(self, dispatcher, registry):
        registry.register("returns_object", lambda payload, ctx: object())
        job_id = _enqueue("returns_object")
        dispatcher.run_once()
        job = OutboxService.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.result is None

    def test_handler_gets_a_copy_of_the_payload(self, dispatcher, registry):
        @registry.handler("mutating")
        def mutating(payload, ctx):
            payload["touched"] = True

        job_id = _enqueue("mutating", {"a": 1})
        dispatcher.run_once()
        assert OutboxService.get(job_id).payload == {"a": 1}


class TestRetrySchedule:

    def test_transient_failures_back_off_then_dead_letter(self, dispatcher, registry):
        @registry.handler("always_down")
        def always_down(payload, ctx):
            raise HandlerTransientError("503 from provider")

        job_id = _enqueue("always_down")
        max_attempts = OutboxService.get(job_id).max_attempts

        now = utcnow()
        claims = 0
        previous = None
        for _ in range(max_attempts + 2):
            report = dispatcher.run_once(now=now)
            if report.claimed == 0:
                break
            claims += 1
            job = OutboxService.get(job_id)
            if job.status is JobStatus.PENDING:
                assert job.scheduled_for > now
                if previous is not None:
                    assert job.scheduled_for - now > previous
                previous = job.scheduled_for - now
                # Not due yet: nothing to claim until the backoff has passed
                assert dispatcher.run_once(now=now).claimed == 0
                now = job.scheduled_for

        job = OutboxService.get(job_id)
        assert claims == max_attempts
        assert job.status is JobStatus.FAILED_PERMANENT
        assert job.attempts == max_attempts
        assert job.last_error.startswith("MaxAttemptsExceeded")
        assert "503 from provider" in job.last_error

    def test_idempotency_key_stable_across_retries(self, dispatcher, registry):
        seen = []

        @registry.handler("eventually_ok")
        def eventually_ok(payload, ctx):
            seen.append((ctx.attempt, ctx.idempotency_key))
            if ctx.attempt == 1:
                raise HandlerTransientError("timeout")
            return {"ok": True}

        job_id = _enqueue("eventually_ok")
        dispatcher.run_once()
        dispatcher.run_once(now=OutboxService.get(job_id).scheduled_for)

        assert [attempt for attempt, _ in seen] == [1, 2]
        assert seen[0][1] == seen[1][1]
        assert OutboxService.get(job_id).status is JobStatus.COMPLETED

    def test_slow_handler_times_out_and_retries(self, app, registry):
        @registry.handler("slow")
        def slow(payload, ctx):
            time.sleep(0.5)

        dispatcher = OutboxDispatcher(registry, worker_id="t", handler_timeout=0.05, jitter=0)
        try:
            job_id = _enqueue("slow")
            assert dispatcher.run_once().retried == 1
        finally:
            dispatcher.shutdown()
        assert OutboxService.get(job_id).last_error.startswith("HandlerTimeout")

    def test_timed_out_job_that_never_started_does_not_run_later(self, app, registry):
        calls = []

        @registry.handler("slow")
        def slow(payload, ctx):
            calls.append("slow")
            time.sleep(1.0)

        @registry.handler("fast")
        def fast(payload, ctx):
            calls.append("fast")

        dispatcher = OutboxDispatcher(registry, worker_id="t", handler_timeout=0.1, jitter=0, max_workers=1)
        try:
            slow_id = _enqueue("slow", scheduled_for=utcnow() - timedelta(seconds=1))
            fast_id = _enqueue("fast")
            assert dispatcher.run_once().retried == 2
            # Outlive the slow handler so the single worker thread is free again
            time.sleep(1.5)
        finally:
            dispatcher.shutdown()

        assert calls == ["slow"]
        for job_id in (slow_id, fast_id):
            assert OutboxService.get(job_id).last_error.startswith("HandlerTimeout")


class TestBackoff:

    def test_exponential(self, registry):
        dispatcher = OutboxDispatcher(registry, backoff_base=300, backoff_max=86400, jitter=0)
        assert dispatcher.compute_backoff(1) == timedelta(seconds=600)
        assert dispatcher.compute_backoff(2) == timedelta(seconds=1200)
        assert dispatcher.compute_backoff(3) == timedelta(seconds=2400)
        dispatcher.shutdown()

    def test_capped(self, registry):
        dispatcher = OutboxDispatcher(registry, backoff_base=300, backoff_max=3600, jitter=0)
        assert dispatcher.compute_backoff(10) == timedelta(seconds=3600)
        dispatcher.shutdown()

    def test_jitter_bounds(self, registry):
        dispatcher = OutboxDispatcher(registry, backoff_base=10, backoff_max=3600, jitter=5)
        for _ in range(50):
            delay = dispatcher.compute_backoff(1).total_seconds()
            assert 20 <= delay <= 25
        dispatcher.shutdown()


class TestRecoveryAndDraining:

    def test_crashed_claim_is_recovered_and_rerun(self, dispatcher, registry):
        registry.register("noop", lambda payload, ctx: None)
        job_id = _enqueue("noop")

        now = utcnow()
        OutboxService.claim_batch(10, "crashed-worker", now=now, lease_seconds=30)

        assert dispatcher.run_once(now=now + timedelta(seconds=5)).claimed == 0

        report = dispatcher.run_once(now=now + timedelta(minutes=1))
        assert report.recovered == 1
        assert report.completed == 1
        job = OutboxService.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 1

    def test_run_until_idle_drains_all_batches(self, dispatcher, registry):
        registry.register("noop", lambda payload, ctx: None)
        for _ in range(5):
            _enqueue("noop")
        dispatcher.batch_size = 2

        report = dispatcher.run_until_idle(budget_seconds=30)
        assert report.claimed == 5
        assert report.completed == 5
        assert OutboxService.counts_by_status()["completed"] == 5

    def test_app_dispatcher_runs_built_in_email_handler(self, app, email_sender):
        job_id = _enqueue("send_transactional_email", {
            "to": "jane@example.com",
            "subject": "Your trial",
            "html": "<p>Welcome</p>",
        })
        report = get_dispatcher().run_once()
        assert report.completed == 1
        assert OutboxService.get(job_id).result == {"provider_id": "msg_1"}
        assert len(email_sender.calls) == 1


class TestClaimOwnership:

    def test_outcome_dropped_when_claim_moved_to_another_worker(self, app, registry):
        dispatcher = OutboxDispatcher(registry, worker_id="slow-worker", handler_timeout=None, lease_seconds=30)

        @registry.handler("outlives_lease")
        def outlives_lease(payload, ctx):
            later = utcnow() + timedelta(minutes=5)
            OutboxService.recover_expired_claims(now=later)
            OutboxService.claim_batch(1, "other-worker", now=later)
            return {"sent": True}

        job_id = _enqueue("outlives_lease")
        dispatcher.run_once()

        job = OutboxService.get(job_id)
        assert job.status is JobStatus.CLAIMED
        assert job.claimed_by == "other-worker"
        assert job.result is None
        dispatcher.shutdown()


class TestLeaseValidation:

    def test_lease_must_outlast_a_full_batch(self, registry):
        with pytest.raises(ValueError):
            OutboxDispatcher(registry, batch_size=10, handler_timeout=30, lease_seconds=300)

    def test_batch_size_change_is_checked(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.batch_size = 12
        assert dispatcher.batch_size == 10

    def test_unbounded_handlers_skip_the_check(self, registry):
        dispatcher = OutboxDispatcher(registry, batch_size=50, handler_timeout=None, lease_seconds=30)
        assert dispatcher.batch_size == 50
        dispatcher.shutdown()

    def test_default_config_is_consistent(self, registry):
        config = {key: getattr(Config, key) for key in dir(Config) if key.startswith("OUTBOX_")}
        dispatcher = dispatcher_from_config(config, registry)
        assert dispatcher.lease_seconds > dispatcher.batch_size * dispatcher.handler_timeout
        dispatcher.shutdown()


class TestOutcomeTimestamps:

    def test_each_job_records_its_own_finish_time(self, dispatcher, registry):
        finished = {}

        @registry.handler("takes_a_while")
        def takes_a_while(payload, ctx):
            time.sleep(0.3)
            finished[ctx.job_id] = utcnow()

        first = _enqueue("takes_a_while", scheduled_for=utcnow() - timedelta(seconds=1))
        second = _enqueue("takes_a_while")
        started = utcnow()
        assert dispatcher.run_once().completed == 2

        for job_id in (first, second):
            assert OutboxService.get(job_id).completed_at >= finished[job_id]
        assert OutboxService.get(second).completed_at - started >= timedelta(seconds=0.6)

    def test_explicit_now_is_used_for_every_job(self, dispatcher, registry):
        registry.register("noop", lambda payload, ctx: None)
        now = utcnow() + timedelta(minutes=1)
        job_ids = [_enqueue("noop"), _enqueue("noop")]
        dispatcher.run_once(now=now)
        assert [OutboxService.get(job_id).completed_at for job_id in job_ids] == [now, now]


def test_report_totals():
    total = DispatchReport(claimed=2, completed=1, retried=1)
    total.add(DispatchReport(claimed=1, dead=1, recovered=1))
    assert total.to_dict() == {
        "claimed": 3, "completed": 1, "retried": 1, "dead": 1, "recovered": 1, "failed": 2,
    }
