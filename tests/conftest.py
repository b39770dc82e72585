"""
Pytest configuration and fixtures for the job runner tests.

Everything runs against a temporary queue directory, an in-memory staging
repository and a scripted provider; no network or database is touched.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from scrapi.context import AppContext
from scrapi.core.config import Settings
from scrapi.core.exceptions import DuplicateDetected, JobNotReadyError
from scrapi.core.models import StagingRecord, StagingStatus
from scrapi.jobs.lifecycle import JobLifecycleManager
from scrapi.jobs.store import JsonFileJobStore
from scrapi.services.staging import StagingDeduplicator, StagingRepository


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Deterministic time source; advance it explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self, on_sleep: Callable[[float], None] | None = None):
        self.calls: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)


class InMemoryStagingRepository(StagingRepository):
    """Staging rows keyed by external job id; statuses can be set by tests."""

    def __init__(self):
        self.rows: dict[str, StagingRecord] = {}
        self.serp_ads: dict[str, int] = {}
        self.add_calls = 0
        self._next_id = 1

    async def get_by_job_id(self, external_job_id: str) -> StagingRecord | None:
        return self.rows.get(external_job_id)

    async def add(self, record: StagingRecord) -> StagingRecord:
        self.add_calls += 1
        if record.external_job_id in self.rows:
            raise DuplicateDetected(record.external_job_id, self.rows[record.external_job_id])
        stored = record.model_copy(update={"id": self._next_id})
        self._next_id += 1
        self.rows[record.external_job_id] = stored
        return stored

    async def get_status(self, external_job_id: str) -> tuple[StagingStatus, str | None] | None:
        row = self.rows.get(external_job_id)
        return (row.status, row.error_message) if row else None

    async def count_serp_ads(self, external_job_id: str) -> int | None:
        return self.serp_ads.get(external_job_id)

    def set_status(self, external_job_id: str, status: StagingStatus, error: str | None = None) -> None:
        row = self.rows[external_job_id]
        self.rows[external_job_id] = row.model_copy(update={"status": status, "error_message": error})


class FakeProvider:
    """
    Scripted provider. Each job id maps to a list of responses consumed in
    order (the last one repeats); a response is a payload dict or an exception.
    """

    def __init__(self):
        self.responses: dict[str, list[Any]] = {}
        self.calls: list[str] = []

    def script(self, job_id: str, *responses: Any) -> None:
        self.responses[job_id] = list(responses)

    async def fetch_ready_results(self, job_id: str) -> dict[str, Any]:
        self.calls.append(job_id)
        queue = self.responses.get(job_id) or [JobNotReadyError(job_id, "pending")]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        pass


# =============================================================================
# Payloads
# =============================================================================


def _paid(pos: int) -> dict[str, Any]:
    return {
        "pos": pos,
        "url": f"https://www.plumber-{pos}.example.com/",
        "title": f"Emergency Plumber {pos}",
        "desc": "24/7 service. Licensed & insured.",
        "url_shown": f"plumber-{pos}.example.com",
        "pos_overall": pos,
        "data_rw": "https://www.googleadservices.com/pagead/aclk?sa=L",
        "url_image": f"https://img.example.com/{pos}.png",
        "tracking_only_field": "dropped",
    }


def _organic(pos: int) -> dict[str, Any]:
    return {
        "pos": pos,
        "url": f"https://organic-{pos}.example.org/",
        "title": f"Organic result {pos}",
        "desc": "Local plumbers near you.",
        "url_shown": f"organic-{pos}.example.org",
        "pos_overall": pos + 2,
    }


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    """Build a parsed provider payload ``{job, results}``."""

    def _make(
        job_id: str = "7135289437452340225",
        query: str = "plumbers near me",
        location: str = "Boston, MA",
        paid: int = 2,
        organic: int = 7,
        pages: int = 1,
    ) -> dict[str, Any]:
        return {
            "job": {
                "id": job_id,
                "query": query,
                "geo_location": location,
                "created_at": "2025-03-01 11:59:30",
                "status": "done",
            },
            "results": [
                {
                    "content": {
                        "url": f"https://www.google.com/search?q={query.replace(' ', '+')}",
                        "results": {
                            "paid": [_paid(i + 1) for i in range(paid)],
                            "organic": [_organic(i + 1) for i in range(organic)],
                        },
                    },
                    "created_at": "2025-03-01 11:59:31",
                    "job_id": job_id,
                }
                for _ in range(pages)
            ],
        }

    return _make


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        queue_dir=tmp_path / "queues",
        results_dir=tmp_path / "results",
        renderings_dir=tmp_path / "renderings",
        poll_max_attempts=3,
        poll_delay_seconds=0.0,
        poll_timeout_seconds=5.0,
        downstream_wait_attempts=2,
        downstream_wait_delay_seconds=0.0,
        oxylabs_username="user",
        oxylabs_password="secret",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(settings) -> JsonFileJobStore:
    return JsonFileJobStore(settings.queue_dir)


@pytest.fixture
def lifecycle(store, clock) -> JobLifecycleManager:
    return JobLifecycleManager(store, clock=clock)


@pytest.fixture
def staging_repo() -> InMemoryStagingRepository:
    return InMemoryStagingRepository()


@pytest.fixture
def staging(staging_repo) -> StagingDeduplicator:
    return StagingDeduplicator(staging_repo, sleep=RecordingSleep())


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def app_ctx(settings, store, lifecycle, provider, staging, clock) -> AppContext:
    return AppContext(
        settings=settings,
        store=store,
        lifecycle=lifecycle,
        provider=provider,
        staging=staging,
        sleep=RecordingSleep(),
        clock=clock,
    )


@pytest.fixture
def loop_sleep() -> RecordingSleep:
    """Sleep used between processor cycles."""
    return RecordingSleep()
