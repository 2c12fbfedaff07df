from datetime import timedelta
from uuid import UUID, uuid4

import pytest

from drudge import Engine, ValidationError
from drudge.core.broker import Broker
from .fixtures import NOW, engine, broker


def test_enqueue_waiting(broker: Broker):
    job = broker.enqueue(
        "newsProcessing",
        {"articleId": "A1", "operations": ["extract_entities"]},
        now=NOW,
    )

    assert isinstance(job.id, UUID)
    assert job.queue == "newsProcessing"
    assert job.state == broker.WAITING
    assert job.payload == {"articleId": "A1", "operations": ["extract_entities"]}
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.priority == 0
    assert job.progress == 0
    assert job.created_at == NOW
    assert job.run_at == NOW

    stored = broker.get("newsProcessing", job.id)
    assert stored == job


@pytest.mark.parametrize("payload", ["A2", "42", "null", "true", "[1]", '{"a": 1}', ""])
def test_enqueue_string_payload_stored_verbatim(broker: Broker, payload: str):
    job = broker.enqueue("newsProcessing", payload, now=NOW)

    stored = broker.get("newsProcessing", job.id).payload
    assert stored == payload
    assert isinstance(stored, str)


def test_string_result_keeps_its_type(broker: Broker):
    broker.enqueue("newsProcessing", {"articleId": "A1"}, now=NOW)
    claimed = broker.claim_next("newsProcessing", "worker-1", now=NOW)

    broker.complete(claimed, "worker-1", "42", now=NOW + timedelta(seconds=1))

    assert broker.get("newsProcessing", claimed.id).result == "42"


def test_enqueue_empty_payload(broker: Broker):
    job = broker.enqueue("newsProcessing", now=NOW)
    assert job.payload is None


def test_enqueue_with_delay_is_delayed(broker: Broker):
    job = broker.enqueue("newsProcessing", {"a": 1}, delay=5000, now=NOW)

    assert job.state == broker.DELAYED
    assert job.run_at == NOW + timedelta(seconds=5)


def test_enqueue_run_at_in_future(broker: Broker):
    run_at = NOW + timedelta(minutes=10)
    job = broker.enqueue("newsProcessing", run_at=run_at, delay=timedelta(seconds=1), now=NOW)

    assert job.state == broker.DELAYED
    assert job.run_at == run_at + timedelta(seconds=1)


def test_enqueue_options(broker: Broker):
    job = broker.enqueue(
        "newsProcessing",
        {"a": 1},
        priority=-5,
        max_attempts=7,
        backoff={"type": "fixed", "delay": 5000},
        now=NOW,
    )

    assert job.priority == -5
    assert job.max_attempts == 7
    assert job.backoff.type == "fixed"
    assert job.backoff.delay == 5000


def test_enqueue_bare_backoff_number_is_fixed(broker: Broker):
    job = broker.enqueue("newsProcessing", backoff=2000, now=NOW)

    assert job.backoff.type == "fixed"
    assert job.backoff.delay == 2000
    assert job.backoff.delay_for(5) == 2000


def test_enqueue_with_job_id(broker: Broker):
    job_id = uuid4()
    job = broker.enqueue("newsProcessing", job_id=str(job_id), now=NOW)
    assert job.id == job_id


def test_enqueue_unknown_queue(broker: Broker):
    with pytest.raises(ValidationError, match="Unknown queue"):
        broker.enqueue("nope", {"a": 1})

    assert broker.jobs() == []


@pytest.mark.parametrize(
    "options",
    [
        {"priority": "high"},
        {"max_attempts": 0},
        {"delay": -1},
        {"backoff": {"type": "linear"}},
        {"backoff": True},
    ],
)
def test_enqueue_malformed_options(broker: Broker, options):
    with pytest.raises(ValidationError):
        broker.enqueue("newsProcessing", {"a": 1}, **options)


def test_enqueue_unserializable_payload(broker: Broker):
    with pytest.raises(ValidationError, match="JSON serializable"):
        broker.enqueue("newsProcessing", {"data": b"bytes"})


def test_enqueue_uses_queue_defaults(engine: Engine):
    from drudge import BackoffPolicy, QueueConfig

    engine.add_queue(
        QueueConfig(
            "emailQueue",
            max_attempts=5,
            backoff=BackoffPolicy(type="fixed", delay=250),
        )
    )
    job = engine.enqueue("emailQueue", {"to": "someone"}, now=NOW)

    assert job.max_attempts == 5
    assert job.backoff == BackoffPolicy(type="fixed", delay=250)


def test_count_and_jobs(broker: Broker):
    broker.enqueue("newsProcessing", 1, now=NOW)
    broker.enqueue("newsProcessing", 2, delay=1000, now=NOW)
    broker.enqueue("userDigest", 3, now=NOW)

    assert broker.count("newsProcessing", broker.WAITING) == 1
    assert broker.count("newsProcessing", broker.DELAYED) == 1
    assert [job.payload for job in broker.jobs("newsProcessing")] == [2, 1]
    assert len(broker.jobs()) == 3
