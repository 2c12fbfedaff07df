import threading
import time

from drudge import Engine
from .fixtures import engine_pg


def test_concurrent_workers_process_each_job_once(engine_pg: Engine):
    processed: list = []
    lock = threading.Lock()

    @engine_pg.handler("newsProcessing")
    def process_news(payload, progress):
        with lock:
            processed.append(payload["data"])
        time.sleep(0.01)

    num_jobs = 40
    for i in range(num_jobs):
        engine_pg.enqueue("newsProcessing", {"data": i})

    engine_pg.start()
    deadline = time.monotonic() + 20
    while time.monotonic() < deadline:
        if engine_pg.broker.count("newsProcessing", "completed") == num_jobs:
            break
        time.sleep(0.05)
    engine_pg.stop()

    assert sorted(processed) == list(range(num_jobs))
    assert engine_pg.broker.count("newsProcessing", "completed") == num_jobs


def test_concurrent_claims_skip_locked(engine_pg: Engine):
    broker = engine_pg.broker
    for i in range(20):
        broker.enqueue("newsProcessing", i)

    claimed: list = []
    lock = threading.Lock()

    def claim_all(worker_id: str):
        while (job := broker.claim_next("newsProcessing", worker_id)) is not None:
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=claim_all, args=(f"w{i}",)) for i in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed) == len(set(claimed)) == 20
