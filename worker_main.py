"""
Start the page-processing worker against the Redis queue.

Usage:
    python3 worker_main.py [--concurrency 2] [--burst] [--log-file logs/worker.log]
"""

import argparse
import logging
from pathlib import Path

from notebook_digitizer.config import Settings
from notebook_digitizer.logs import setup_logging
from notebook_digitizer.processing import RetryPolicy, RQJobQueue

logger = logging.getLogger("worker_main")


def main():
    settings = Settings.from_env()
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.worker_concurrency,
        help="Parallel worker slots (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    args = parser.parse_args()

    setup_logging(settings.log_level, log_file=args.log_file)
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; every job will fail until it is configured")

    queue = RQJobQueue(
        settings.redis_url,
        queue_name=settings.queue_name,
        policy=RetryPolicy(max_attempts=settings.job_attempts, base_delay=settings.job_backoff_seconds),
    )
    logger.info(
        "Worker starting on %s (queue=%s, concurrency=%s, attempts=%s, backoff=%ss)",
        settings.redis_url,
        settings.queue_name,
        args.concurrency,
        settings.job_attempts,
        settings.job_backoff_seconds,
    )
    queue.work(concurrency=args.concurrency, burst=args.burst)
    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
