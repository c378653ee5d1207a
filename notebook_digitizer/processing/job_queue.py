from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional

from redis import Redis
from rq import Queue, Retry, Worker

from ..config import Settings
from .errors import ExhaustedRetryError
from .extraction import GeminiExtractionEngine
from .models import ProcessingJob
from .processor import PageProcessor
from .repository import SqlAlchemyNotebookRepository
from .storage import LocalImageStorage, StoragePaths

logger = logging.getLogger(__name__)

JobHandler = Callable[[ProcessingJob], None]


def job_id_for(page_id: str) -> str:
    return f"page-{page_id}"


@dataclass(frozen=True)
class RetryPolicy:
    """
    `max_attempts` counts the first delivery. Retry n (1-based) waits
    `base_delay * 2 ** (n - 1)` seconds.
    """

    max_attempts: int = 2
    base_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    @property
    def retries(self) -> int:
        return self.max_attempts - 1

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt`."""
        return self.base_delay * (2 ** (attempt - 1))

    def intervals(self) -> List[float]:
        return [self.delay_for(attempt) for attempt in range(1, self.retries + 1)]


class JobQueue:
    """
    Hand-off between the submission path and the page processor. Delivery is
    at least once; a job is acknowledged only when its handler returns.
    """

    def enqueue(self, page_id: str, image_ref: str) -> str:
        raise NotImplementedError


@dataclass
class QueuedJob:
    id: str
    job: ProcessingJob
    attempts: int = 0
    due_at: float = 0.0
    last_error: Optional[BaseException] = None


@dataclass
class DeadLetter:
    id: str
    job: ProcessingJob
    error: ExhaustedRetryError


class InMemoryJobQueue(JobQueue):
    """
    Process-local queue for tests and single-process runs. Due jobs run on a
    bounded thread pool; failures are rescheduled per the retry policy and
    exhausted jobs move to `dead_letters`. The clock and sleep functions are
    injectable so backoff can be driven without waiting.
    """

    def __init__(
        self,
        handler: Optional[JobHandler] = None,
        policy: Optional[RetryPolicy] = None,
        concurrency: int = 2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handler = handler
        self.policy = policy or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self.clock = clock
        self.sleep = sleep
        self.pending: Dict[str, QueuedJob] = {}
        self.completed: List[str] = []
        self.dead_letters: List[DeadLetter] = []
        self._lock = threading.Lock()

    def enqueue(self, page_id: str, image_ref: str) -> str:
        job_id = job_id_for(page_id)
        with self._lock:
            if job_id not in self.pending:
                self.pending[job_id] = QueuedJob(
                    id=job_id,
                    job=ProcessingJob(page_id=page_id, image_ref=image_ref),
                    due_at=self.clock(),
                )
        return job_id

    def next_due_at(self) -> Optional[float]:
        with self._lock:
            if not self.pending:
                return None
            return min(item.due_at for item in self.pending.values())

    def run_due(self, handler: Optional[JobHandler] = None) -> int:
        """Run every job that is due now. Returns how many were attempted."""
        handler = handler or self.handler
        if handler is None:
            raise ValueError("No job handler configured")
        now = self.clock()
        with self._lock:
            due = [item for item in self.pending.values() if item.due_at <= now]
            for item in due:
                item.attempts += 1
        if not due:
            return 0

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = [(item, pool.submit(handler, item.job)) for item in due]
            outcomes = [(item, future.exception()) for item, future in futures]

        for item, error in outcomes:
            self._settle(item, error)
        return len(due)

    def _settle(self, item: QueuedJob, error: Optional[BaseException]) -> None:
        with self._lock:
            if error is None:
                self.pending.pop(item.id, None)
                self.completed.append(item.id)
                return
            item.last_error = error
            if item.attempts < self.policy.max_attempts:
                delay = self.policy.delay_for(item.attempts)
                item.due_at = self.clock() + delay
                logger.warning(
                    "Job %s failed (attempt %s/%s), retrying in %ss: %s",
                    item.id,
                    item.attempts,
                    self.policy.max_attempts,
                    delay,
                    error,
                )
                return
            self.pending.pop(item.id, None)
            exhausted = ExhaustedRetryError(item.job, item.attempts, error)
            self.dead_letters.append(DeadLetter(id=item.id, job=item.job, error=exhausted))
            logger.error("Job %s dead-lettered: %s", item.id, exhausted)

    def drain(self, handler: Optional[JobHandler] = None, max_rounds: int = 1000) -> None:
        """Keep running jobs, waiting out backoff delays, until nothing is pending."""
        for _ in range(max_rounds):
            next_due = self.next_due_at()
            if next_due is None:
                return
            wait = next_due - self.clock()
            if wait > 0:
                self.sleep(wait)
            self.run_due(handler)
        raise RuntimeError(f"Queue still has pending jobs after {max_rounds} rounds")


@lru_cache(maxsize=1)
def build_processor(settings: Settings) -> PageProcessor:
    repo = SqlAlchemyNotebookRepository(settings.database_url)
    storage = LocalImageStorage(
        StoragePaths(Path(settings.upload_dir)),
        mode=settings.storage_mode,
        public_base_url=settings.storage_public_url,
    )
    engine = GeminiExtractionEngine(api_key=settings.gemini_api_key, model=settings.gemini_model)
    return PageProcessor(repository=repo, storage=storage, engine=engine)


def run_page_job(page_id: str, image_ref: str) -> None:
    """
    RQ task entrypoint. The payload is only the page id and image reference;
    components are rebuilt from the worker's environment.
    """
    processor = build_processor(Settings.from_env())
    processor.process(ProcessingJob(page_id=page_id, image_ref=image_ref))


class RQJobQueue(JobQueue):
    """
    Redis-backed job queue using RQ. Retries use RQ's scheduler with
    exponential intervals; jobs that exhaust them stay in the failed job
    registry as dead letters.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        queue_name: str = "page-processing",
        policy: Optional[RetryPolicy] = None,
        connection: Optional[Redis] = None,
    ):
        self.redis = connection or Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)
        self.policy = policy or RetryPolicy()

    def build_retry(self) -> Optional[Retry]:
        if self.policy.retries == 0:
            return None
        return Retry(max=self.policy.retries, interval=[int(round(i)) for i in self.policy.intervals()])

    def enqueue(self, page_id: str, image_ref: str) -> str:
        """
        Enqueue a processing job. The RQ job id is derived from the page id
        so re-enqueueing a page replaces its job instead of duplicating it.
        """
        job = self.queue.enqueue(
            run_page_job,
            page_id,
            image_ref,
            job_id=job_id_for(page_id),
            retry=self.build_retry(),
            failure_ttl=7 * 24 * 3600,
        )
        logger.info("Enqueued job %s for page %s", job.id, page_id)
        return job.id

    def dead_letters(self) -> List[str]:
        return self.queue.failed_job_registry.get_job_ids()

    def work(self, concurrency: int = 1, burst: bool = False) -> None:
        if concurrency <= 1:
            worker = Worker([self.queue], connection=self.redis)
            worker.work(with_scheduler=True, burst=burst)
            return
        from rq.worker_pool import WorkerPool

        pool = WorkerPool([self.queue], connection=self.redis, num_workers=concurrency)
        pool.start(burst=burst)
