import threading
import time
from unittest.mock import MagicMock

import pytest
from conftest import FakeClock

from notebook_digitizer.processing import (
    CapabilityError,
    ExhaustedRetryError,
    InMemoryJobQueue,
    LocalImageStorage,
    PageRecord,
    PageStatus,
    ProcessingJob,
    RetryPolicy,
    RQJobQueue,
    SqlAlchemyNotebookRepository,
    StoragePaths,
    run_page_job,
)
from notebook_digitizer.processing.job_queue import build_processor


def test_retry_policy_intervals_are_exponential():
    policy = RetryPolicy(max_attempts=4, base_delay=10)
    assert policy.retries == 3
    assert policy.intervals() == [10, 20, 40]
    assert RetryPolicy(max_attempts=2, base_delay=30).intervals() == [30]
    assert RetryPolicy(max_attempts=1, base_delay=30).intervals() == []


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay": -1}])
def test_retry_policy_rejects_bad_values(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_successful_job_is_acknowledged():
    seen = []
    queue = InMemoryJobQueue(handler=seen.append)

    job_id = queue.enqueue("p1", "img.png")
    queue.run_due()

    assert seen == [ProcessingJob(page_id="p1", image_ref="img.png")]
    assert queue.pending == {}
    assert queue.completed == [job_id]


def test_enqueue_same_page_twice_keeps_one_job():
    queue = InMemoryJobQueue(handler=lambda job: None)
    assert queue.enqueue("p1", "a.png") == queue.enqueue("p1", "a.png")
    assert len(queue.pending) == 1


def test_failed_job_waits_for_backoff_before_retry():
    clock = FakeClock()
    attempts = []

    def handler(job):
        attempts.append(job)
        if len(attempts) == 1:
            raise RuntimeError("transient")

    queue = InMemoryJobQueue(handler=handler, policy=RetryPolicy(max_attempts=3, base_delay=5), clock=clock)
    queue.enqueue("p1", "img.png")

    assert queue.run_due() == 1
    assert queue.next_due_at() == clock.now + 5
    assert queue.run_due() == 0

    clock.sleep(5)
    assert queue.run_due() == 1
    assert queue.pending == {}
    assert attempts == [ProcessingJob("p1", "img.png")] * 2


def test_exhausted_job_is_dead_lettered_with_unchanged_payload():
    clock = FakeClock()
    seen = []

    def handler(job):
        seen.append(job)
        raise ConnectionError("unreachable")

    queue = InMemoryJobQueue(
        handler=handler,
        policy=RetryPolicy(max_attempts=3, base_delay=2),
        clock=clock,
        sleep=clock.sleep,
    )
    queue.enqueue("p1", "img.png")
    queue.drain()

    assert seen == [ProcessingJob("p1", "img.png")] * 3
    assert clock.now == 1000.0 + 2 + 4
    assert queue.pending == {}
    (dead,) = queue.dead_letters
    assert isinstance(dead.error, ExhaustedRetryError)
    assert dead.error.attempts == 3
    assert isinstance(dead.error.last_error, ConnectionError)


def test_concurrency_is_bounded():
    active = 0
    peak = 0
    lock = threading.Lock()

    def handler(job):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1

    queue = InMemoryJobQueue(handler=handler, concurrency=2)
    for i in range(6):
        queue.enqueue(f"p{i}", f"{i}.png")
    queue.run_due()

    assert len(queue.completed) == 6
    assert peak == 2


def test_run_due_without_handler_fails():
    queue = InMemoryJobQueue()
    queue.enqueue("p1", "img.png")
    with pytest.raises(ValueError):
        queue.run_due()


def _rq_queue(policy):
    queue = RQJobQueue.__new__(RQJobQueue)
    queue.policy = policy
    queue.queue = MagicMock()
    queue.queue.enqueue.return_value.id = "page-p1"
    return queue


def test_rq_retry_matches_policy():
    retry = _rq_queue(RetryPolicy(max_attempts=3, base_delay=30)).build_retry()
    assert retry.max == 2
    assert retry.intervals == [30, 60]
    assert _rq_queue(RetryPolicy(max_attempts=1)).build_retry() is None


def test_rq_enqueue_carries_only_page_and_image():
    queue = _rq_queue(RetryPolicy(max_attempts=2, base_delay=30))

    assert queue.enqueue("p1", "img.png") == "page-p1"

    args, kwargs = queue.queue.enqueue.call_args
    assert args == (run_page_job, "p1", "img.png")
    assert kwargs["job_id"] == "page-p1"
    assert kwargs["retry"].max == 1


@pytest.fixture
def worker_env(monkeypatch, tmp_path):
    database_url = f"sqlite+pysqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("STORAGE_MODE", "local")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    build_processor.cache_clear()
    yield SqlAlchemyNotebookRepository(database_url), LocalImageStorage(StoragePaths(tmp_path / "uploads"))
    build_processor.cache_clear()


def test_run_page_job_without_api_key_marks_page_failed(worker_env):
    repo, storage = worker_env
    image_ref = storage.put(b"\x89PNG fake image", "png")
    repo.create_page(PageRecord(id="p1", image_url=storage.url_for(image_ref), image_ref=image_ref))
    assert repo.transition_page("p1", PageStatus.PROCESSING)

    with pytest.raises(CapabilityError):
        run_page_job("p1", image_ref)

    stored = repo.get_page("p1")
    assert stored.status == PageStatus.FAILED
    assert "GEMINI_API_KEY" in stored.error_message


def test_run_page_job_for_deleted_page_is_a_no_op(worker_env):
    repo, _ = worker_env
    run_page_job("missing", "gone.png")
    assert repo.get_page("missing") is None
