"""Redis/RQ queue for out-of-band retention sweeps."""

from __future__ import annotations

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings


CLEANUP_QUEUE_NAME = "cleanup_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_cleanup_queue() -> Queue:
    return Queue(
        name=CLEANUP_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_cleanup_sweep() -> Job:
    """Enqueue one sweep. Concurrent enqueues collapse onto the same job id."""
    queue = get_cleanup_queue()
    return queue.enqueue(
        "services.cleanup.run_cleanup_sweep_job",
        job_id="cleanup:sweep",
        job_timeout=600,
        result_ttl=3600,
        failure_ttl=86400,
    )
