from uuid import uuid4

from drudge.core.monitoring import EventBus, LifecycleEvent, Monitor


def event(type_="job_completed", queue="newsProcessing") -> LifecycleEvent:
    return LifecycleEvent(type=type_, queue=queue, job_id=uuid4())


def test_bus_drops_when_full():
    bus = EventBus(maxsize=2)

    assert bus.publish(event())
    assert bus.publish(event())
    assert not bus.publish(event())
    assert bus.dropped == 1
    assert len(bus) == 2


def test_monitor_counts_and_forwards():
    bus = EventBus()
    monitor = Monitor(bus)
    received = []
    monitor.add_listener(received.append)

    bus.publish(event())
    bus.publish(event("job_failed"))
    bus.publish(event("job_stalled", queue="aiProcessing"))

    assert monitor.drain() == 3
    assert [e.type for e in received] == ["job_completed", "job_failed", "job_stalled"]
    assert monitor.registry.get_sample_value(
        "drudge_job_events_total", {"queue": "newsProcessing", "event": "job_failed"}
    ) == 1
    assert monitor.registry.get_sample_value(
        "drudge_job_events_total", {"queue": "aiProcessing", "event": "job_stalled"}
    ) == 1


def test_failing_listener_does_not_stop_others():
    bus = EventBus()
    monitor = Monitor(bus)
    received = []

    @monitor.add_listener
    def broken(e):
        raise RuntimeError("listener bug")

    monitor.add_listener(received.append)
    bus.publish(event())

    assert monitor.drain() == 1
    assert len(received) == 1


def test_dropped_events_are_counted():
    bus = EventBus(maxsize=1)
    monitor = Monitor(bus)

    bus.publish(event())
    bus.publish(event())
    monitor.drain()

    assert monitor.registry.get_sample_value("drudge_events_dropped_total") == 1


def test_monitor_thread_drains_on_stop():
    bus = EventBus()
    monitor = Monitor(bus, poll_interval=0.01)
    received = []
    monitor.add_listener(received.append)

    monitor.start()
    for _ in range(5):
        bus.publish(event())
    monitor.stop()

    assert len(received) == 5
    assert len(bus) == 0
