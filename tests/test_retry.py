from datetime import timedelta

from drudge.core.broker import Broker
from drudge.errors import HandlerError
from .fixtures import NOW, engine, broker


def _claim_and_fail(broker: Broker, at, message="Something went wrong"):
    job = broker.claim_next("newsProcessing", "worker-1", now=at)
    assert job is not None
    return broker.fail(job, "worker-1", RuntimeError(message), now=at)


def test_fixed_backoff_until_failed(broker: Broker):
    job = broker.enqueue(
        "newsProcessing",
        {"articleId": "A1"},
        max_attempts=3,
        backoff={"type": "fixed", "delay": 5000},
        now=NOW,
    )

    first = _claim_and_fail(broker, NOW)
    assert first.state == broker.DELAYED
    assert first.attempts == 1
    assert first.run_at == NOW + timedelta(seconds=5)
    assert first.failure_reason == "Something went wrong"
    assert "RuntimeError" in first.failure_trace

    # Not eligible before the backoff elapsed
    assert broker.claim_next("newsProcessing", "worker-1", now=NOW + timedelta(seconds=4)) is None

    second = _claim_and_fail(broker, NOW + timedelta(seconds=5))
    assert second.state == broker.DELAYED
    assert second.attempts == 2
    assert second.run_at == NOW + timedelta(seconds=10)

    third = _claim_and_fail(broker, NOW + timedelta(seconds=10))
    assert third.state == broker.FAILED
    assert third.attempts == 3
    assert third.finished_at == NOW + timedelta(seconds=10)

    stored = broker.get("newsProcessing", job.id)
    assert stored.state == broker.FAILED
    assert stored.attempts <= stored.max_attempts
    assert broker.claim_next("newsProcessing", "worker-1", now=NOW + timedelta(hours=1)) is None


def test_exponential_backoff(broker: Broker):
    broker.enqueue(
        "newsProcessing",
        max_attempts=4,
        backoff={"type": "exponential", "delay": 1000, "maxDelay": 3000},
        now=NOW,
    )

    first = _claim_and_fail(broker, NOW)
    assert first.run_at == NOW + timedelta(seconds=1)

    at = NOW + timedelta(seconds=1)
    second = _claim_and_fail(broker, at)
    assert second.run_at == at + timedelta(seconds=2)

    at += timedelta(seconds=2)
    third = _claim_and_fail(broker, at)
    # Capped by max delay
    assert third.run_at == at + timedelta(seconds=3)


def test_single_attempt_fails_immediately(broker: Broker):
    broker.enqueue("newsProcessing", max_attempts=1, now=NOW)
    failed = _claim_and_fail(broker, NOW, "boom")

    assert failed.state == broker.FAILED
    assert failed.attempts == 1
    assert failed.failure_reason == "boom"


def test_fail_with_handler_error(broker: Broker):
    broker.enqueue("newsProcessing", max_attempts=1, now=NOW)
    job = broker.claim_next("newsProcessing", "w", now=NOW)

    failed = broker.fail(job, "w", HandlerError(job.id, KeyError("articleId")), now=NOW)
    assert failed.failure_reason == "'articleId'"


def test_retry_all_resets_failed_jobs(broker: Broker):
    for i in range(3):
        broker.enqueue("newsProcessing", i, max_attempts=1, now=NOW)
        _claim_and_fail(broker, NOW)
    broker.enqueue("newsProcessing", "untouched", now=NOW)

    assert broker.count("newsProcessing", broker.FAILED) == 3

    retried = broker.retry_all("newsProcessing", now=NOW + timedelta(minutes=1))

    assert retried == 3
    assert broker.count("newsProcessing", broker.FAILED) == 0
    assert broker.count("newsProcessing", broker.WAITING) == 4
    for job in broker.jobs("newsProcessing"):
        assert job.attempts == 0
        assert job.failure_reason is None
        assert job.finished_at is None


def test_retry_all_only_touches_its_queue(broker: Broker):
    broker.enqueue("newsProcessing", max_attempts=1, now=NOW)
    _claim_and_fail(broker, NOW)

    assert broker.retry_all("userDigest") == 0
    assert broker.count("newsProcessing", broker.FAILED) == 1


def test_clean_respects_grace(broker: Broker):
    # Completed two hours ago
    broker.enqueue("newsProcessing", "old", now=NOW)
    old = broker.claim_next("newsProcessing", "w", now=NOW)
    broker.complete(old, "w", now=NOW)

    # Completed ten minutes ago
    recent_at = NOW + timedelta(minutes=110)
    broker.enqueue("newsProcessing", "recent", now=recent_at)
    recent = broker.claim_next("newsProcessing", "w", now=recent_at)
    broker.complete(recent, "w", now=recent_at)

    # Failed two hours ago
    broker.enqueue("newsProcessing", "failed", max_attempts=1, now=NOW)
    _claim_and_fail(broker, NOW)

    # Never finished
    broker.enqueue("newsProcessing", "waiting", now=NOW)

    now = NOW + timedelta(hours=2)
    assert broker.clean("newsProcessing", grace=3600000, now=now) == 2

    remaining = {job.payload for job in broker.jobs("newsProcessing")}
    assert remaining == {"recent", "waiting"}


def test_cancel_pending_only(broker: Broker):
    waiting = broker.enqueue("newsProcessing", "waiting", now=NOW)
    delayed = broker.enqueue("newsProcessing", "delayed", delay=1000, now=NOW)
    active_job = broker.enqueue("userDigest", "active", now=NOW)
    broker.claim_next("userDigest", "w", now=NOW)

    assert broker.cancel("newsProcessing", waiting.id)
    assert broker.cancel("newsProcessing", str(delayed.id))
    assert not broker.cancel("userDigest", active_job.id)
    # Wrong queue
    assert not broker.cancel("newsProcessing", active_job.id)

    assert broker.get("newsProcessing", waiting.id) is None
    assert broker.get("userDigest", active_job.id).state == broker.ACTIVE


def test_stats_include_empty_queues(broker: Broker):
    broker.enqueue("newsProcessing", now=NOW)
    broker.enqueue("newsProcessing", delay=1000, now=NOW)

    stats = broker.stats()

    assert set(stats) == {"newsProcessing", "userDigest"}
    assert stats["newsProcessing"].counts() == {
        "waiting": 1,
        "active": 0,
        "completed": 0,
        "failed": 0,
        "delayed": 1,
    }
    assert stats["userDigest"].total == 0
