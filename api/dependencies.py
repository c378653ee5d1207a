from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from notebook_digitizer.config import Settings
from notebook_digitizer.processing import (
    JobQueue,
    LocalImageStorage,
    NotebookRepository,
    PageSubmitter,
    RetryPolicy,
    RQJobQueue,
    SqlAlchemyNotebookRepository,
    StoragePaths,
)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_repo() -> NotebookRepository:
    return SqlAlchemyNotebookRepository(get_settings().database_url)


@lru_cache(maxsize=1)
def get_storage() -> LocalImageStorage:
    settings = get_settings()
    return LocalImageStorage(
        StoragePaths(Path(settings.upload_dir)),
        mode=settings.storage_mode,
        public_base_url=settings.storage_public_url,
    )


@lru_cache(maxsize=1)
def get_queue() -> JobQueue:
    settings = get_settings()
    policy = RetryPolicy(max_attempts=settings.job_attempts, base_delay=settings.job_backoff_seconds)
    return RQJobQueue(settings.redis_url, queue_name=settings.queue_name, policy=policy)


def get_submitter() -> PageSubmitter:
    return PageSubmitter(
        repository=get_repo(),
        storage=get_storage(),
        queue=get_queue(),
        max_upload_bytes=get_settings().max_upload_bytes,
    )
