"""
Job Record Store.

Durable keyed collections of job records, one per lifecycle queue. The file
backend keeps one JSON document per queue (``{"queries": [...]}``) inside the
queue directory, written atomically via a temp file and ``os.replace``.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import structlog
from pydantic import ValidationError as PydanticValidationError

from scrapi.core.constants import BACKUP_SUFFIX, QUEUE_FILES
from scrapi.core.exceptions import PersistenceError
from scrapi.core.models import JobRecord, JobStatus, Queue

logger = structlog.get_logger()


class JobRecordStore(ABC):
    """Storage backend for the four job queues."""

    @abstractmethod
    async def load(self, queue: JobStatus) -> Queue:
        """Load a queue; a queue that was never written is empty."""

    @abstractmethod
    async def save(self, queue: JobStatus, data: Queue) -> None:
        """Replace a queue's contents."""

    @abstractmethod
    async def move_job(
        self,
        job_id: str,
        from_queue: JobStatus,
        to_queue: JobStatus,
        patch: dict[str, Any] | None = None,
    ) -> JobRecord | None:
        """
        Move one record between queues, applying ``patch`` on the way.

        Returns the moved record, or None if the job is not in ``from_queue``.
        """

    async def append(self, queue: JobStatus, record: JobRecord) -> None:
        data = await self.load(queue)
        data.queries.append(record)
        await self.save(queue, data)

    async def find(self, job_id: str) -> tuple[JobStatus, JobRecord] | None:
        """Locate a job across all queues."""
        for queue in JobStatus:
            record = (await self.load(queue)).get(job_id)
            if record is not None:
                return queue, record
        return None


class JsonFileJobStore(JobRecordStore):
    """JSON-document store: ``batch-<queue>.json`` files plus a backup per source queue."""

    def __init__(self, queue_dir: Path | str):
        self.queue_dir = Path(queue_dir)
        self._lock = asyncio.Lock()
        self.log = logger.bind(component="JsonFileJobStore")

    def path_for(self, queue: JobStatus) -> Path:
        return self.queue_dir / QUEUE_FILES[queue]

    def backup_path_for(self, queue: JobStatus) -> Path:
        return self.queue_dir / f"{self.path_for(queue).stem}{BACKUP_SUFFIX}"

    async def _read(self, path: Path) -> Queue:
        if not path.exists():
            return Queue()
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            raise PersistenceError(f"Cannot read queue document {path}", str(path), e) from e

        if not raw.strip():
            return Queue()
        try:
            return Queue.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise PersistenceError(f"Corrupt queue document {path}: {e}", str(path), e) from e

    async def _write(self, path: Path, data: Queue) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        payload = json.dumps(data.model_dump(mode="json"), indent=2)
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"Cannot write queue document {path}", str(path), e) from e

    async def load(self, queue: JobStatus) -> Queue:
        return await self._read(self.path_for(queue))

    async def save(self, queue: JobStatus, data: Queue) -> None:
        await self._write(self.path_for(queue), data)

    async def append(self, queue: JobStatus, record: JobRecord) -> None:
        async with self._lock:
            await super().append(queue, record)

    async def move_job(
        self,
        job_id: str,
        from_queue: JobStatus,
        to_queue: JobStatus,
        patch: dict[str, Any] | None = None,
    ) -> JobRecord | None:
        log = self.log.bind(job_id=job_id, from_queue=from_queue.value, to_queue=to_queue.value)

        async with self._lock:
            source = await self.load(from_queue)
            index = source.index_of(job_id)
            if index < 0:
                log.debug("Job not in source queue")
                return None

            target = await self.load(to_queue)
            prior_source = source.model_copy(deep=True)

            moved = source.queries.pop(index).model_copy(
                update={**(patch or {}), "status": to_queue}
            )
            # A leftover copy from an interrupted move is replaced, not duplicated
            existing = target.index_of(job_id)
            if existing >= 0:
                target.queries[existing] = moved
            else:
                target.queries.append(moved)

            # Target first: a crash between the writes leaves a duplicate, never a loss
            await self._write(self.backup_path_for(from_queue), prior_source)
            await self.save(to_queue, target)
            await self.save(from_queue, source)

        log.debug("Job moved")
        return moved
