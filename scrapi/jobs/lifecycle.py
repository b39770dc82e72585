"""
Job Lifecycle Manager.

Owns the queue state machine: submitted -> in_progress -> completed | failed.
Every transition goes through the store's atomic move, so a job is in exactly
one queue at any time. Moves are idempotent: a job that already sits in the
target queue is reported as success without touching the store.
"""

import asyncio
import math
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from scrapi.core.constants import ALLOWED_TRANSITIONS, STATS_RECENT_WINDOW
from scrapi.core.exceptions import DuplicateJobError, ValidationError
from scrapi.core.models import JobRecord, JobStatistics, JobStatus, utcnow
from scrapi.core.parsers import extract_location_from_query
from scrapi.jobs.store import JobRecordStore

logger = structlog.get_logger()


def describe_error(error_info: Any) -> str:
    """Turn an exception, dict or string into the message stored on the job."""
    if isinstance(error_info, BaseException):
        return str(error_info) or type(error_info).__name__
    if isinstance(error_info, dict):
        return str(error_info.get("message") or error_info.get("error") or error_info)
    return str(error_info)


class JobLifecycleManager:
    """Moves jobs between queues and reports queue statistics."""

    def __init__(
        self,
        store: JobRecordStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clock = clock
        self._submit_lock = asyncio.Lock()
        self.log = logger.bind(component="JobLifecycleManager")

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, record: JobRecord | dict[str, Any]) -> JobRecord:
        """
        Validate a record and append it to the submitted queue.

        Raises:
            ValidationError: malformed record
            DuplicateJobError: the id is already tracked in some queue
        """
        if isinstance(record, dict):
            data = dict(record)
            data.setdefault("submitted_at", self.clock())
            if not data.get("location") and data.get("query"):
                data["location"] = extract_location_from_query(str(data["query"]))
            try:
                record = JobRecord.model_validate(data)
            except PydanticValidationError as e:
                errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                raise ValidationError("Invalid job record", errors) from e

        record = record.model_copy(
            update={
                "status": JobStatus.SUBMITTED,
                "started_at": None,
                "completed_at": None,
                "processing_time_ms": None,
                "error": None,
            }
        )

        async with self._submit_lock:
            found = await self.store.find(record.id)
            if found is not None:
                raise DuplicateJobError(record.id, found[0].value)
            await self.store.append(JobStatus.SUBMITTED, record)

        self.log.info("Job submitted", job_id=record.id, query=record.query[:80])
        return record

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _transition(
        self,
        job_id: str,
        target: JobStatus,
        build_patch: Callable[[JobRecord], dict[str, Any]],
    ) -> bool:
        log = self.log.bind(job_id=job_id, target=target.value)

        found = await self.store.find(job_id)
        if found is None:
            log.warning("Job not found in any queue")
            return False

        current, record = found
        if current == target:
            log.debug("Job already in target queue")
            return True

        if target not in ALLOWED_TRANSITIONS[current]:
            log.warning("Illegal queue transition", current=current.value)
            return False

        moved = await self.store.move_job(job_id, current, target, build_patch(record))
        if moved is None:
            # Lost a race with another move; report what the store says now
            log.warning("Job vanished from source queue during move", current=current.value)
            return False

        log.info(f"Job moved to {target.value}", previous=current.value)
        return True

    async def move_to_in_progress(self, job_id: str) -> bool:
        return await self._transition(
            job_id,
            JobStatus.IN_PROGRESS,
            lambda record: {"started_at": self.clock()},
        )

    async def move_to_completed(
        self,
        job_id: str,
        result_metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Complete a job; processing time comes from the metadata or from started_at."""
        metadata = dict(result_metadata or {})

        def build_patch(record: JobRecord) -> dict[str, Any]:
            now = self.clock()
            processing_time_ms = metadata.get("processing_time_ms")
            if processing_time_ms is None and record.started_at is not None:
                elapsed = (now - record.started_at).total_seconds() * 1000
                processing_time_ms = max(0, math.ceil(elapsed))
            return {
                "completed_at": now,
                "processing_time_ms": processing_time_ms,
                "result": metadata or None,
                "error": None,
            }

        return await self._transition(job_id, JobStatus.COMPLETED, build_patch)

    async def move_to_failed(self, job_id: str, error_info: Any) -> bool:
        message = describe_error(error_info)
        return await self._transition(
            job_id,
            JobStatus.FAILED,
            lambda record: {"completed_at": self.clock(), "error": message},
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    async def list_jobs(self, queue: JobStatus, limit: int | None = None) -> list[JobRecord]:
        """Jobs in queue order; with a limit, the most recent ``limit`` entries."""
        jobs = (await self.store.load(queue)).queries
        if limit is not None:
            jobs = jobs[-limit:] if limit > 0 else []
        return jobs

    async def get_statistics(self) -> JobStatistics:
        counts = {queue: len(await self.store.load(queue)) for queue in JobStatus}
        total = sum(counts.values())

        completed = await self.list_jobs(JobStatus.COMPLETED, STATS_RECENT_WINDOW)
        timings = [j.processing_time_ms for j in completed if j.processing_time_ms is not None]

        return JobStatistics(
            submitted_count=counts[JobStatus.SUBMITTED],
            in_progress_count=counts[JobStatus.IN_PROGRESS],
            completed_count=counts[JobStatus.COMPLETED],
            failed_count=counts[JobStatus.FAILED],
            total_count=total,
            completion_rate=round(counts[JobStatus.COMPLETED] / total * 100, 2) if total else 0.0,
            average_processing_time_ms=round(sum(timings) / len(timings)) if timings else None,
        )
