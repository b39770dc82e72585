"""
Unit tests for the job lifecycle manager.
"""

import pytest
import pytest_asyncio

from scrapi.core.exceptions import DuplicateJobError, TimeoutExceededError, ValidationError
from scrapi.core.models import JobRecord, JobStatus

pytestmark = pytest.mark.asyncio


async def _queues_of(store, job_id: str) -> list[JobStatus]:
    return [q for q in JobStatus if (await store.load(q)).get(job_id) is not None]


class TestSubmit:
    async def test_submit_appends_to_submitted(self, lifecycle, store) -> None:
        record = await lifecycle.submit(
            JobRecord(id="j1", query="plumbers near me", location="Boston, MA")
        )

        assert record.status == JobStatus.SUBMITTED
        assert await _queues_of(store, "j1") == [JobStatus.SUBMITTED]

    async def test_submit_dict_derives_location_from_query(self, lifecycle) -> None:
        record = await lifecycle.submit(
            {"id": "j2", "query": "roofers in Austin, Texas, United States"}
        )
        assert record.location == "Austin, Texas, United States"

    async def test_submit_dict_without_suffix_falls_back(self, lifecycle) -> None:
        record = await lifecycle.submit({"id": "j3", "query": "roofers near me"})
        assert record.location == "United States"

    async def test_submit_rejects_blank_query(self, lifecycle, store) -> None:
        with pytest.raises(ValidationError) as exc:
            await lifecycle.submit({"id": "j4", "query": "   ", "location": "Boston, MA"})

        assert any("query" in e for e in exc.value.errors)
        assert not store.path_for(JobStatus.SUBMITTED).exists()

    async def test_submit_rejects_id_tracked_elsewhere(self, lifecycle) -> None:
        await lifecycle.submit({"id": "j5", "query": "q", "location": "Boston, MA"})
        await lifecycle.move_to_in_progress("j5")

        with pytest.raises(DuplicateJobError) as exc:
            await lifecycle.submit({"id": "j5", "query": "q", "location": "Boston, MA"})
        assert exc.value.queue == "in_progress"


class TestTransitions:
    @pytest_asyncio.fixture
    async def submitted(self, lifecycle) -> JobRecord:
        return await lifecycle.submit(
            JobRecord(id="j1", query="plumbers near me", location="Boston, MA")
        )

    async def test_move_to_in_progress_stamps_started_at(self, lifecycle, store, clock, submitted) -> None:
        assert await lifecycle.move_to_in_progress("j1") is True

        queue, record = await store.find("j1")
        assert queue == JobStatus.IN_PROGRESS
        assert record.started_at == clock()

    async def test_completion_computes_processing_time(self, lifecycle, store, clock, submitted) -> None:
        await lifecycle.move_to_in_progress("j1")
        clock.advance(2.5004)

        assert await lifecycle.move_to_completed("j1", {"summary": {"paid_ads": 2}}) is True

        _, record = await store.find("j1")
        assert record.status == JobStatus.COMPLETED
        assert record.processing_time_ms == 2501
        assert record.completed_at == clock()
        assert record.result == {"summary": {"paid_ads": 2}}

    async def test_completion_prefers_metadata_timing(self, lifecycle, store, submitted) -> None:
        await lifecycle.move_to_in_progress("j1")
        await lifecycle.move_to_completed("j1", {"processing_time_ms": 42})

        _, record = await store.find("j1")
        assert record.processing_time_ms == 42

    async def test_completion_is_idempotent(self, lifecycle, store, submitted) -> None:
        await lifecycle.move_to_in_progress("j1")
        assert await lifecycle.move_to_completed("j1") is True
        first = (await store.load(JobStatus.COMPLETED)).queries

        assert await lifecycle.move_to_completed("j1") is True

        second = (await store.load(JobStatus.COMPLETED)).queries
        assert second == first
        assert await _queues_of(store, "j1") == [JobStatus.COMPLETED]

    async def test_completed_job_cannot_fail(self, lifecycle, store, submitted) -> None:
        await lifecycle.move_to_in_progress("j1")
        await lifecycle.move_to_completed("j1")

        assert await lifecycle.move_to_failed("j1", "late error") is False
        assert await _queues_of(store, "j1") == [JobStatus.COMPLETED]

    async def test_failed_job_cannot_complete(self, lifecycle, store, submitted) -> None:
        await lifecycle.move_to_failed("j1", "rejected")

        assert await lifecycle.move_to_completed("j1") is False
        assert await lifecycle.move_to_in_progress("j1") is False
        assert await _queues_of(store, "j1") == [JobStatus.FAILED]

    async def test_submitted_job_cannot_skip_to_completed(self, lifecycle, store, submitted) -> None:
        assert await lifecycle.move_to_completed("j1") is False
        assert await _queues_of(store, "j1") == [JobStatus.SUBMITTED]

    async def test_move_to_failed_records_error_message(self, lifecycle, store, submitted) -> None:
        await lifecycle.move_to_in_progress("j1")
        error = TimeoutExceededError("j1", 7200, 3600)

        assert await lifecycle.move_to_failed("j1", error) is True

        _, record = await store.find("j1")
        assert record.status == JobStatus.FAILED
        assert record.error.startswith("Job timeout - exceeded 1 hour processing limit")
        assert record.completed_at is not None

    async def test_unknown_job_is_non_fatal(self, lifecycle) -> None:
        assert await lifecycle.move_to_in_progress("ghost") is False
        assert await lifecycle.move_to_completed("ghost") is False
        assert await lifecycle.move_to_failed("ghost", "x") is False

    async def test_job_is_in_exactly_one_queue_throughout(self, lifecycle, store, submitted) -> None:
        assert await _queues_of(store, "j1") == [JobStatus.SUBMITTED]
        await lifecycle.move_to_in_progress("j1")
        assert await _queues_of(store, "j1") == [JobStatus.IN_PROGRESS]
        await lifecycle.move_to_completed("j1")
        assert await _queues_of(store, "j1") == [JobStatus.COMPLETED]


class TestStatistics:
    async def test_empty_statistics(self, lifecycle) -> None:
        stats = await lifecycle.get_statistics()
        assert stats.total_count == 0
        assert stats.completion_rate == 0.0
        assert stats.average_processing_time_ms is None
        assert stats.has_work is False

    async def test_counts_rate_and_average(self, lifecycle) -> None:
        for i in range(3):
            await lifecycle.submit({"id": f"c{i}", "query": "q", "location": "Boston, MA"})
            await lifecycle.move_to_in_progress(f"c{i}")
            await lifecycle.move_to_completed(f"c{i}", {"processing_time_ms": (i + 1) * 1000})
        await lifecycle.submit({"id": "f1", "query": "q", "location": "Boston, MA"})
        await lifecycle.move_to_failed("f1", "bad")
        await lifecycle.submit({"id": "s1", "query": "q", "location": "Boston, MA"})
        await lifecycle.submit({"id": "s2", "query": "q", "location": "Boston, MA"})

        stats = await lifecycle.get_statistics()

        assert stats.completed_count == 3
        assert stats.failed_count == 1
        assert stats.submitted_count == 2
        assert stats.total_count == 6
        assert stats.completion_rate == 50.0
        assert stats.average_processing_time_ms == 2000
        assert stats.has_work is True

    async def test_average_uses_last_ten_completed(self, lifecycle) -> None:
        for i in range(12):
            await lifecycle.submit({"id": f"c{i}", "query": "q", "location": "Boston, MA"})
            await lifecycle.move_to_in_progress(f"c{i}")
            # First two are outliers outside the window
            timing = 100_000 if i < 2 else 1000
            await lifecycle.move_to_completed(f"c{i}", {"processing_time_ms": timing})

        stats = await lifecycle.get_statistics()
        assert stats.average_processing_time_ms == 1000

    async def test_completion_rate_rounds_to_two_decimals(self, lifecycle) -> None:
        await lifecycle.submit({"id": "c1", "query": "q", "location": "Boston, MA"})
        await lifecycle.move_to_in_progress("c1")
        await lifecycle.move_to_completed("c1")
        await lifecycle.submit({"id": "s1", "query": "q", "location": "Boston, MA"})
        await lifecycle.submit({"id": "s2", "query": "q", "location": "Boston, MA"})

        stats = await lifecycle.get_statistics()
        assert stats.completion_rate == 33.33

    async def test_list_jobs_limit_returns_most_recent(self, lifecycle) -> None:
        for i in range(4):
            await lifecycle.submit({"id": f"s{i}", "query": "q", "location": "Boston, MA"})

        jobs = await lifecycle.list_jobs(JobStatus.SUBMITTED, limit=2)
        assert [j.id for j in jobs] == ["s2", "s3"]
