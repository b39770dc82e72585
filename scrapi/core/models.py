"""
Core models and types for the SERP job runner.

Job records and queue documents are persisted as JSON, staging records are
written to the datastore, workflow runs live only for the duration of one job.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 timestamp as written by the provider or the queue files.

    Naive values are assumed to be UTC. Returns None if not parseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


# =============================================================================
# Enums
# =============================================================================


class JobStatus(str, Enum):
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StagingStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class ProviderJobStatus(str, Enum):
    """Job states reported by the scraping provider."""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Base Models
# =============================================================================


class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Job Records
# =============================================================================


class JobRecord(BaseSchema):
    """Local tracking entity for one submitted scraping task."""

    id: str = Field(default_factory=lambda: uuid4().hex, min_length=1)
    query: str = Field(min_length=1)
    location: str = Field(min_length=1)
    status: JobStatus = JobStatus.SUBMITTED
    submitted_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_ms: int | None = None
    error: str | None = None
    provider_job_id: str | None = None
    result: dict[str, Any] | None = None

    @field_validator("query", "location")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("submitted_at", "started_at", "completed_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        """Queue documents written by other tools may carry naive timestamps."""
        return parse_timestamp(v)

    @property
    def poll_id(self) -> str:
        """Identifier the provider knows this job by."""
        return self.provider_job_id or self.id


class Queue(BaseSchema):
    """One queue document: ``{"queries": [JobRecord, ...]}``."""

    queries: list[JobRecord] = Field(default_factory=list)

    def index_of(self, job_id: str) -> int:
        for i, job in enumerate(self.queries):
            if job.id == job_id:
                return i
        return -1

    def get(self, job_id: str) -> JobRecord | None:
        i = self.index_of(job_id)
        return self.queries[i] if i >= 0 else None

    def __len__(self) -> int:
        return len(self.queries)


class JobStatistics(BaseSchema):
    submitted_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    completion_rate: float = 0.0  # percent
    average_processing_time_ms: int | None = None

    @property
    def has_work(self) -> bool:
        return self.submitted_count + self.in_progress_count > 0


# =============================================================================
# Workflow Models
# =============================================================================


class StepResult(BaseSchema):
    """Outcome of one workflow step. Frozen once the step has ended."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    status: StepStatus = StepStatus.RUNNING
    critical: bool = True
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    duration_ms: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


class WorkflowRun(BaseSchema):
    job_id: str
    workflow: str
    steps: list[StepResult] = Field(default_factory=list)
    success: bool = False
    total_duration_ms: int = 0
    started_at: datetime
    ended_at: datetime
    result: dict[str, Any] | None = None
    error: str | None = None
    # Aborted by a transient error; the job can be retried later
    retryable: bool = False

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    def step(self, name: str) -> StepResult | None:
        return next((s for s in self.steps if s.name == name), None)


# =============================================================================
# Staging Models
# =============================================================================


class PaidListing(BaseSchema):
    """Paid (ad) entry projected onto a fixed field set."""

    pos: int | None = None
    url: str | None = None
    title: str | None = None
    desc: str | None = None
    url_shown: str | None = None
    pos_overall: int | None = None
    data_rw: str | None = None
    data_pcu: Any = None
    sitelinks: Any = None
    price: Any = None
    seller: str | None = None
    image_url: str | None = None
    call_extension: Any = None
    currency: str | None = None
    rating: float | str | None = None
    review_count: int | str | None = None
    previous_price: Any = None


class OrganicListing(BaseSchema):
    pos: int | None = None
    url: str | None = None
    title: str | None = None
    desc: str | None = None
    url_shown: str | None = None
    pos_overall: int | None = None
    rating: float | str | None = None
    review_count: int | str | None = None
    favicon_text: str | None = None
    images: Any = None
    sitelinks: Any = None


class SerpListings(BaseSchema):
    paid: list[PaidListing] = Field(default_factory=list)
    organic: list[OrganicListing] = Field(default_factory=list)


class SerpPageContent(BaseSchema):
    url: str | None = None
    results: SerpListings = Field(default_factory=SerpListings)


class SerpPage(BaseSchema):
    """One result page: ``{content: {url, results: {paid, organic}}, created_at, job_id}``."""

    content: SerpPageContent = Field(default_factory=SerpPageContent)
    created_at: str | None = None
    job_id: str | None = None


class SerpJobInfo(BaseSchema):
    id: str
    query: str
    geo_location: str
    created_at: str
    status: str | None = None


class SerpContent(BaseSchema):
    job: SerpJobInfo
    results: list[SerpPage] = Field(default_factory=list)

    @property
    def paid(self) -> list[PaidListing]:
        return [ad for page in self.results for ad in page.content.results.paid]

    @property
    def organic(self) -> list[OrganicListing]:
        return [r for page in self.results for r in page.content.results.organic]


class StagingRecord(BaseSchema):
    """Normalized, deduplicated scrape result awaiting downstream processing."""

    external_job_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    location: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    content: SerpContent
    status: StagingStatus = StagingStatus.PENDING
    error_message: str | None = None
    id: int | None = None  # assigned by the datastore


# =============================================================================
# Processing Models
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: attempts, fixed delay between them, per-attempt timeout."""
    max_attempts: int = 15
    delay: float = 4.0
    timeout: float = 20.0


class CycleSummary(BaseSchema):
    cycle: int = 0
    selected: int = 0
    processed: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    timed_out: int = 0
    duration_ms: int = 0
    has_work: bool = False
