"""
Job Recovery Service for handling stale in-progress jobs.

Recovers jobs left in the in-progress queue by a crash or restart once they
are older than the in-progress age limit. Called before the first cycle.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from scrapi.core.exceptions import TimeoutExceededError
from scrapi.core.models import JobRecord, JobStatus, utcnow
from scrapi.jobs.lifecycle import JobLifecycleManager

logger = structlog.get_logger()


def in_progress_age_seconds(job: JobRecord, now: datetime) -> float:
    """Age measured from when the job entered the in-progress queue."""
    started = job.started_at or job.submitted_at
    return (now - started).total_seconds()


async def recover_stale_jobs(
    lifecycle: JobLifecycleManager,
    max_age_seconds: float = 3600,
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """
    Fail in-progress jobs that exceeded the age limit.

    Args:
        lifecycle: Lifecycle manager owning the queues
        max_age_seconds: Consider jobs stale if in progress longer than this
        clock: Time source

    Returns:
        Number of recovered jobs
    """
    log = logger.bind(max_age_seconds=max_age_seconds)
    log.info("Checking for stale in-progress jobs")

    now = clock()
    recovered_count = 0
    for job in await lifecycle.list_jobs(JobStatus.IN_PROGRESS):
        age = in_progress_age_seconds(job, now)
        if age <= max_age_seconds:
            continue
        error = TimeoutExceededError(job.id, age, max_age_seconds)
        if await lifecycle.move_to_failed(job.id, error):
            log.warning(
                "Recovered stale job",
                job_id=job.id,
                query=job.query[:80],
                stuck_since=job.started_at.isoformat() if job.started_at else None,
            )
            recovered_count += 1

    if recovered_count > 0:
        log.info("Recovered stale jobs", count=recovered_count)
    else:
        log.debug("No stale jobs found")

    return recovered_count
