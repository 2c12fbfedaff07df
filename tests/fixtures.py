import logging
from datetime import datetime, timezone

import pytest

from drudge import Engine, QueueConfig
from drudge.config import Settings


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_settings(**kwargs) -> Settings:
    defaults = dict(
        queues={},
        triggers={},
        internal_token="secret",
        poll_interval=10,
        max_poll_interval=50,
        stall_interval=50,
        scheduler_interval=50,
    )
    defaults.update(kwargs)
    return Settings(**defaults)


@pytest.fixture
def engine(tmp_path):
    logging.getLogger("drudge").setLevel(logging.DEBUG)

    instance = Engine(f"sqlite:///{tmp_path / 'jobs.db'}", make_settings())
    instance.add_queue(QueueConfig("newsProcessing"))
    instance.add_queue(QueueConfig("userDigest"))
    instance.create_all()
    try:
        yield instance
    finally:
        instance.stop()
        instance.db.dispose()


@pytest.fixture
def broker(engine):
    return engine.broker


@pytest.fixture
def engine_pg(postgres_dsn):
    logging.getLogger("drudge").setLevel(logging.DEBUG)

    instance = Engine(postgres_dsn, make_settings())
    instance.add_queue(QueueConfig("newsProcessing", concurrency=4))
    instance.create_all()
    try:
        yield instance
    finally:
        instance.stop()
        instance.drop_all()
        instance.db.dispose()
