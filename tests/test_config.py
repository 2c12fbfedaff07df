from datetime import datetime, timedelta, timezone

import pytest

from drudge import BackoffPolicy, Engine, ValidationError
from drudge.config import DEFAULT_QUEUES, Settings, TriggerSettings, resolve_import
from drudge.core.worker import Worker


def test_default_queue_catalog():
    settings = Settings()
    assert set(settings.queues) == set(DEFAULT_QUEUES)
    assert "newsProcessing" in settings.queues
    config = settings.queue_configs()["userDigest"]
    assert config.concurrency == 1
    assert config.max_attempts == 3
    assert config.backoff == BackoffPolicy()


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("DRUDGE_LEASE_DURATION", "1000")
    monkeypatch.setenv("DRUDGE_INTERNAL_TOKEN", "s3cret")
    monkeypatch.setenv(
        "DRUDGE_QUEUES",
        '{"emailQueue": {"concurrency": 4, "backoff": {"type": "fixed", "delay": 500}}}',
    )

    settings = Settings()

    assert settings.lease_duration == 1000
    assert settings.internal_token == "s3cret"
    config = settings.queue_configs()["emailQueue"]
    assert config.concurrency == 4
    assert config.backoff == BackoffPolicy(type="fixed", delay=500)


def test_resolve_import():
    assert resolve_import("tests.jobs_pkg.handlers:process_news").__name__ == "process_news"

    with pytest.raises(ValidationError):
        resolve_import("tests.jobs_pkg.handlers")
    with pytest.raises(ValidationError):
        resolve_import("tests.jobs_pkg.nope:process_news")
    with pytest.raises(ValidationError):
        resolve_import("tests.jobs_pkg.handlers:nope")


def test_engine_from_settings(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        handlers={"newsProcessing": "tests.jobs_pkg.handlers:process_news"},
        triggers={
            "dailyDigest": TriggerSettings(
                cron="0 8 * * *",
                queue="userDigest",
                template="tests.jobs_pkg.handlers:subscribers",
            )
        },
    )
    engine = Engine.from_settings(settings)
    try:
        assert set(engine.queues) == set(DEFAULT_QUEUES)
        assert set(engine.handlers) == {"newsProcessing"}

        job = engine.enqueue("newsProcessing", {"articleId": "A1"})
        Worker(engine, "newsProcessing").run_once()
        assert engine.broker.get("newsProcessing", job.id).result == {
            "success": True,
            "articleId": "A1",
        }

        fired = engine.scheduler.tick(
            now=datetime.now(timezone.utc) + timedelta(days=1, minutes=1)
        )
        assert fired == {"dailyDigest": 2}
    finally:
        engine.db.dispose()


def test_default_triggers_registered(tmp_path):
    engine = Engine.from_settings(Settings(database_url=f"sqlite:///{tmp_path / 'jobs.db'}"))
    try:
        states = engine.scheduler.states()
        assert set(states) == {
            "weeklyAnalytics",
            "newsAggregation",
            "dailyBackup",
            "weeklyBackup",
            "dailyCleanup",
        }
        assert states["weeklyAnalytics"].next_due_at.weekday() == 0
        assert states["weeklyBackup"].next_due_at.weekday() == 6

        fired = engine.scheduler.tick(now=datetime.now(timezone.utc) + timedelta(days=8))
        assert fired == {
            "weeklyAnalytics": 1,
            "newsAggregation": 1,
            "dailyBackup": 1,
            "weeklyBackup": 1,
            "dailyCleanup": 3,
        }

        targets = sorted(job.payload["target"] for job in engine.broker.jobs("cleanup"))
        assert targets == ["expired_sessions", "old_logs", "temp_files"]
        backups = sorted(job.payload["type"] for job in engine.broker.jobs("backup"))
        assert backups == ["full", "incremental"]

        aggregation = engine.broker.jobs("newsAggregation")[0].payload
        assert aggregation["sources"] == ["rss", "api", "scraping"]
        last_tick_at = engine.scheduler.states()["newsAggregation"].last_tick_at
        assert datetime.fromisoformat(aggregation["timestamp"]) == last_tick_at
    finally:
        engine.db.dispose()


def test_from_settings_unknown_handler_queue(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        queues={},
        handlers={"newsProcessing": "tests.jobs_pkg.handlers:process_news"},
    )
    with pytest.raises(ValidationError):
        Engine.from_settings(settings)


def test_configure_queues_reload(tmp_path):
    engine = Engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    engine.configure_queues({"backup": {"max_attempts": 2}})
    assert engine.queues["backup"].max_attempts == 2

    engine.configure_queues(
        {"backup": {"max_attempts": 5, "paused": True}, "dataExport": {}}
    )

    assert engine.queues["backup"].max_attempts == 5
    assert engine.queues["backup"].paused
    assert "dataExport" in engine.queues

    with pytest.raises(ValidationError):
        engine.configure_queues({"backup": {"concurrency": 0}})
    engine.db.dispose()
