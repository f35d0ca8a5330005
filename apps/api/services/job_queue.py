"""Durable background solve queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


SOLVE_QUEUE_NAME = "solve_jobs"
SOLVE_JOB_TIMEOUT_SECONDS = 600


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_solve_queue() -> Queue:
    """Return the configured background solve queue."""
    return Queue(
        name=SOLVE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=SOLVE_JOB_TIMEOUT_SECONDS,
    )


def enqueue_task_solve_job(task_id: str) -> Job:
    """Enqueue a background solve for every unfinished link of a task."""
    queue = get_solve_queue()
    return queue.enqueue(
        "services.orchestrator.process_task_solve_job",
        task_id,
        job_id=f"solve-{task_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=SOLVE_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )
