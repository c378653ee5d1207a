from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+pysqlite:///./data/notebook.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "page-processing"
    worker_concurrency: int = 2
    job_attempts: int = 2
    job_backoff_seconds: float = 30.0
    storage_mode: str = "local"
    upload_dir: str = "./uploads"
    storage_public_url: Optional[str] = None
    max_upload_bytes: int = 20 * 1024 * 1024
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        storage_mode = os.getenv("STORAGE_MODE", cls.storage_mode).strip().lower()
        if storage_mode not in ("local", "remote"):
            raise ValueError(f"STORAGE_MODE must be 'local' or 'remote', got {storage_mode!r}")
        public_url = os.getenv("STORAGE_PUBLIC_URL") or None
        if storage_mode == "remote" and not public_url:
            raise ValueError("STORAGE_PUBLIC_URL is required when STORAGE_MODE=remote")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            queue_name=os.getenv("QUEUE_NAME", cls.queue_name),
            worker_concurrency=_int_env("WORKER_CONCURRENCY", cls.worker_concurrency, minimum=1),
            job_attempts=_int_env("JOB_ATTEMPTS", cls.job_attempts, minimum=1),
            job_backoff_seconds=_float_env("JOB_BACKOFF_SECONDS", cls.job_backoff_seconds),
            storage_mode=storage_mode,
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            storage_public_url=public_url,
            max_upload_bytes=_int_env("MAX_UPLOAD_BYTES", cls.max_upload_bytes, minimum=1),
            gemini_api_key=os.getenv("GEMINI_API_KEY", cls.gemini_api_key),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            frontend_url=os.getenv("FRONTEND_URL", cls.frontend_url),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
