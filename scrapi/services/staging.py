"""
Staging Deduplicator.

Normalizes provider payloads into StagingRecords and writes them to the
staging table exactly once per external job id. A second ingestion of the
same id is short-circuited and reported as a success carrying the existing
record; the unique constraint on ``staging_serps.job_id`` is the backstop.

Organized into sections:
- Normalization (pure, no I/O)
- Repositories (storage backends)
- Deduplicator (check-then-insert, processing status)
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scrapi.core.constants import MAX_ORGANIC_RESULTS, PAID_FIELD_ALIASES, STAGING_REQUIRED_FIELDS
from scrapi.core.exceptions import DuplicateDetected, ValidationError
from scrapi.core.models import (
    OrganicListing,
    PaidListing,
    SerpContent,
    StagingRecord,
    StagingStatus,
)
from scrapi.core.parsers import coerce_str
from scrapi.db.database import get_db_session
from scrapi.db.models import SerpAdModel, SerpModel, StagingSerpModel

logger = structlog.get_logger()


# ==============================================================================
# Normalization
# ==============================================================================


def _project(entry: Any, fields: Any, aliases: dict[str, str] | None = None) -> dict[str, Any]:
    """Pick the listing fields from a raw entry; unknown keys are dropped."""
    if not isinstance(entry, dict):
        return {}
    out = {name: entry.get(name) for name in fields if name in entry}
    for raw_name, name in (aliases or {}).items():
        if raw_name in entry and out.get(name) is None:
            out[name] = entry[raw_name]
    return out


def _normalize_page(page: Any) -> dict[str, Any]:
    page = page if isinstance(page, dict) else {}
    content = page.get("content") if isinstance(page.get("content"), dict) else {}
    listings = content.get("results") if isinstance(content.get("results"), dict) else {}

    paid = [
        _project(ad, PaidListing.model_fields, PAID_FIELD_ALIASES)
        for ad in (listings.get("paid") or [])
    ]
    organic = [
        _project(r, OrganicListing.model_fields)
        for r in (listings.get("organic") or [])[:MAX_ORGANIC_RESULTS]
    ]
    return {
        "content": {"url": content.get("url"), "results": {"paid": paid, "organic": organic}},
        "created_at": coerce_str(page.get("created_at")),
        "job_id": coerce_str(page.get("job_id")),
    }


def map_to_normalized_form(
    raw_payload: dict[str, Any],
    request_params: dict[str, Any] | None = None,
) -> StagingRecord:
    """
    Build the staging record for a parsed provider payload.

    Job metadata comes from ``raw_payload["job"]``; the request parameters
    (job_id, query, location, timestamp) fill whatever the payload lacks.
    Paid and organic listings are projected onto fixed field sets, missing
    collections become empty lists and only the first organic results per
    page are kept.

    Raises:
        ValidationError: a required field is missing or the payload is malformed
    """
    params = request_params or {}
    if not isinstance(raw_payload, dict):
        raise ValidationError("Provider payload must be an object", ["content: not an object"])

    job = raw_payload.get("job") if isinstance(raw_payload.get("job"), dict) else {}
    job_id = coerce_str(job.get("id")) or coerce_str(params.get("job_id"))
    query = coerce_str(job.get("query")) or coerce_str(params.get("query"))
    location = coerce_str(job.get("geo_location")) or coerce_str(params.get("location"))
    timestamp = coerce_str(job.get("created_at")) or coerce_str(params.get("timestamp"))
    pages = raw_payload.get("results")

    present = {
        "job_id": job_id,
        "query": query,
        "location": location,
        "timestamp": timestamp,
        "content": pages if isinstance(pages, list) else None,
    }
    missing = [name for name in STAGING_REQUIRED_FIELDS if present[name] is None]
    if missing:
        raise ValidationError(
            f"Staging record is missing required fields: {', '.join(missing)}",
            [f"{name}: missing" for name in missing],
        )

    content = {
        "job": {
            "id": job_id,
            "query": query,
            "geo_location": location,
            "created_at": timestamp,
            "status": coerce_str(job.get("status")),
        },
        "results": [_normalize_page(page) for page in pages],
    }

    try:
        return StagingRecord(
            external_job_id=job_id,
            query=query,
            location=location,
            timestamp=timestamp,
            content=SerpContent.model_validate(content),
        )
    except PydanticValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError("Staging record failed validation", errors) from e


# ==============================================================================
# Repositories
# ==============================================================================


class StagingRepository(ABC):
    """Storage backend for staging records and the downstream tables they feed."""

    @abstractmethod
    async def get_by_job_id(self, external_job_id: str) -> StagingRecord | None: ...

    @abstractmethod
    async def add(self, record: StagingRecord) -> StagingRecord:
        """Insert a record; raises DuplicateDetected on a unique-constraint violation."""

    @abstractmethod
    async def get_status(self, external_job_id: str) -> tuple[StagingStatus, str | None] | None:
        """Status and error message of a staging row, None if there is no row."""

    @abstractmethod
    async def count_serp_ads(self, external_job_id: str) -> int | None:
        """Ads linked to the SERP created for this job, None while no SERP exists."""


class SqlStagingRepository(StagingRepository):
    """SQLAlchemy async repository on ``staging_serps`` (plus read-only ``serps``/``serp_ads``)."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    @staticmethod
    def _to_record(row: StagingSerpModel) -> StagingRecord:
        return StagingRecord(
            id=row.id,
            external_job_id=row.job_id,
            query=row.query,
            location=row.location,
            timestamp=row.timestamp,
            content=SerpContent.model_validate(row.content),
            status=StagingStatus(row.status),
            error_message=row.error_message,
        )

    async def get_by_job_id(self, external_job_id: str) -> StagingRecord | None:
        async with get_db_session(self.session_maker) as db:
            result = await db.execute(
                select(StagingSerpModel).where(StagingSerpModel.job_id == external_job_id)
            )
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def add(self, record: StagingRecord) -> StagingRecord:
        async with get_db_session(self.session_maker) as db:
            row = StagingSerpModel(
                job_id=record.external_job_id,
                query=record.query,
                location=record.location,
                timestamp=record.timestamp,
                content=record.content.model_dump(mode="json"),
                status=record.status.value,
                error_message=record.error_message,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateDetected(record.external_job_id) from e
            await db.refresh(row)
            return self._to_record(row)

    async def get_status(self, external_job_id: str) -> tuple[StagingStatus, str | None] | None:
        async with get_db_session(self.session_maker) as db:
            result = await db.execute(
                select(StagingSerpModel.status, StagingSerpModel.error_message).where(
                    StagingSerpModel.job_id == external_job_id
                )
            )
            row = result.one_or_none()
            if row is None:
                return None
            return StagingStatus(row.status), row.error_message

    async def count_serp_ads(self, external_job_id: str) -> int | None:
        async with get_db_session(self.session_maker) as db:
            serp_id = (
                await db.execute(
                    select(SerpModel.id).where(SerpModel.job_id == external_job_id).limit(1)
                )
            ).scalar_one_or_none()
            if serp_id is None:
                return None
            result = await db.execute(
                select(func.count()).select_from(SerpAdModel).where(SerpAdModel.serp_id == serp_id)
            )
            return int(result.scalar_one())


# ==============================================================================
# Deduplicator
# ==============================================================================


@dataclass
class ExistingCheck:
    exists: bool
    record: StagingRecord | None = None


@dataclass
class InsertResult:
    """Outcome of an insert. A duplicate is success-shaped and carries the existing row."""

    success: bool
    id: int | None = None
    duplicate: bool = False
    reason: str | None = None
    record: StagingRecord | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class ProcessingStatus:
    status: StagingStatus | None
    error_message: str | None = None
    attempts: int = 0

    @property
    def finished(self) -> bool:
        return self.status in (StagingStatus.PROCESSED, StagingStatus.ERROR)


class StagingDeduplicator:
    """Sole writer of staging records."""

    def __init__(
        self,
        repository: StagingRepository,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.repository = repository
        self.sleep = sleep
        self.log = logger.bind(component="StagingDeduplicator")

    map_to_normalized_form = staticmethod(map_to_normalized_form)

    async def check_existing(self, external_job_id: str) -> ExistingCheck:
        record = await self.repository.get_by_job_id(external_job_id)
        return ExistingCheck(exists=record is not None, record=record)

    def _duplicate(self, existing: StagingRecord | None) -> InsertResult:
        return InsertResult(
            success=True,
            id=existing.id if existing else None,
            duplicate=True,
            reason="duplicate",
            record=existing,
        )

    async def insert(self, record: StagingRecord | dict[str, Any]) -> InsertResult:
        """
        Insert a staging record unless one already exists for its job id.

        Returns:
            InsertResult: ``success`` with the new id, ``duplicate`` with the
            existing record, or ``success=False, reason="validation"``.
        """
        if not isinstance(record, StagingRecord):
            try:
                record = StagingRecord.model_validate(record)
            except PydanticValidationError as e:
                errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                self.log.warning("Rejected invalid staging record", errors=errors)
                return InsertResult(success=False, reason="validation", errors=errors)

        log = self.log.bind(job_id=record.external_job_id)

        existing = await self.check_existing(record.external_job_id)
        if existing.exists:
            log.info(
                "Staging record already exists",
                staging_id=existing.record.id,
                status=existing.record.status.value,
            )
            return self._duplicate(existing.record)

        try:
            stored = await self.repository.add(record)
        except DuplicateDetected as e:
            log.info("Staging insert hit unique constraint, treating as duplicate")
            return self._duplicate(e.existing or await self.repository.get_by_job_id(record.external_job_id))

        log.info(
            "Inserted staging record",
            staging_id=stored.id,
            paid=len(stored.content.paid),
            organic=len(stored.content.organic),
        )
        return InsertResult(success=True, id=stored.id, record=stored)

    async def ingest(
        self,
        raw_payload: dict[str, Any],
        request_params: dict[str, Any] | None = None,
    ) -> InsertResult:
        """Normalize then insert; validation problems come back as a failed result."""
        try:
            record = map_to_normalized_form(raw_payload, request_params)
        except ValidationError as e:
            self.log.warning("Rejected provider payload", errors=e.errors)
            return InsertResult(success=False, reason="validation", errors=e.errors)
        return await self.insert(record)

    async def wait_for_processing(
        self,
        external_job_id: str,
        attempts: int = 30,
        delay: float = 2.0,
    ) -> ProcessingStatus:
        """Poll the staging row until the downstream trigger marks it processed or error."""
        outcome = ProcessingStatus(status=None)
        for attempt in range(1, attempts + 1):
            found = await self.repository.get_status(external_job_id)
            outcome = ProcessingStatus(
                status=found[0] if found else None,
                error_message=found[1] if found else None,
                attempts=attempt,
            )
            if outcome.finished:
                break
            if attempt < attempts:
                await self.sleep(delay)

        self.log.debug(
            "Staging processing status",
            job_id=external_job_id,
            status=outcome.status.value if outcome.status else None,
            attempts=outcome.attempts,
        )
        return outcome
