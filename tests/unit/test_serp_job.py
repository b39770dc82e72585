"""
Unit tests for the SERP workflow run over one job.
"""

import json
from pathlib import Path

import pytest

from scrapi.core.exceptions import ConnectivityError
from scrapi.core.models import JobRecord, JobStatus, StagingStatus, StepStatus
from scrapi.jobs.serp_job import process_serp_job, summarize_run
from scrapi.jobs.steps import SERP_WORKFLOW_STEPS

pytestmark = pytest.mark.asyncio

PROVIDER_JOB_ID = "7135289437452340225"


@pytest.fixture
def job() -> JobRecord:
    return JobRecord(
        id=PROVIDER_JOB_ID,
        query="plumbers near me",
        location="Boston, MA",
        status=JobStatus.IN_PROGRESS,
        provider_job_id=PROVIDER_JOB_ID,
    )


class FakeHtmlRenderer:
    def __init__(self, tmp_path: Path, fail: bool = False):
        self.tmp_path = tmp_path
        self.fail = fail

    async def render(self, job_id, ads):
        if self.fail:
            return []
        paths = []
        for ad in ads:
            path = self.tmp_path / f"{job_id}-{ad.pos}.html"
            path.write_text("<html></html>")
            paths.append(path)
        return paths


class FakePngRenderer:
    async def render(self, job_id, html_files):
        return [p.with_suffix(".png") for p in html_files]


class FakeUploader:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def upload(self, job_id, files):
        if self.error:
            raise self.error
        return [f"https://cdn.example.com/{job_id}/{f.name}" for f in files]


def _statuses(run) -> dict[str, StepStatus]:
    return {s.name: s.status for s in run.steps}


class TestSerpWorkflow:
    async def test_runs_all_steps_in_order(self, app_ctx, job, make_payload) -> None:
        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert [s.name for s in run.steps] == [s.name for s in SERP_WORKFLOW_STEPS]
        assert run.success is True

    async def test_stages_normalized_record(self, app_ctx, job, make_payload, staging_repo) -> None:
        run = await process_serp_job(app_ctx, job, make_payload(paid=2), PROVIDER_JOB_ID)

        staged = staging_repo.rows[PROVIDER_JOB_ID]
        assert staged.status == StagingStatus.PENDING
        assert len(staged.content.paid) == 2
        assert run.result["staging_id"] == staged.id
        assert run.result["duplicate"] is False
        assert run.result["paid_ads"] == 2
        assert run.result["organic_results"] == 5

    async def test_raw_results_are_kept_on_disk(self, app_ctx, job, make_payload, settings) -> None:
        payload = make_payload()
        run = await process_serp_job(app_ctx, job, payload, PROVIDER_JOB_ID)

        path = settings.results_dir / f"ads-results-{PROVIDER_JOB_ID}.json"
        assert run.result["results_file"] == str(path)
        assert json.loads(path.read_text()) == payload
        assert run.step("collect").result["bytes"] == path.stat().st_size

    async def test_resubmission_creates_no_new_record(
        self, app_ctx, job, make_payload, staging_repo
    ) -> None:
        first = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)
        second = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert second.success is True
        assert second.result["duplicate"] is True
        assert second.result["staging_id"] == first.result["staging_id"]
        assert staging_repo.add_calls == 1
        assert len(staging_repo.rows) == 1

    async def test_invalid_payload_fails_before_anything_is_written(
        self, app_ctx, job, settings, staging_repo
    ) -> None:
        run = await process_serp_job(app_ctx, job, {"job": {}, "results": "nope"}, PROVIDER_JOB_ID)

        assert run.success is False
        assert [s.name for s in run.steps] == ["validate"]
        assert run.error.startswith("Step 'validate' failed:")
        assert staging_repo.add_calls == 0
        assert not settings.results_dir.exists()

    async def test_staging_failure_is_critical(self, app_ctx, job, make_payload, monkeypatch, staging_repo) -> None:
        async def broken_add(record):
            raise RuntimeError("constraint check crashed")

        monkeypatch.setattr(staging_repo, "add", broken_add)

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.success is False
        assert run.retryable is False
        assert _statuses(run)["process"] == StepStatus.FAILED
        assert "finalize" not in _statuses(run)
        assert run.error == "Step 'process' failed: constraint check crashed"

    async def test_staging_outage_is_retryable(self, app_ctx, job, make_payload, monkeypatch, staging_repo) -> None:
        async def unreachable_add(record):
            raise ConnectivityError("Database unreachable: connection refused")

        monkeypatch.setattr(staging_repo, "add", unreachable_add)

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.success is False
        assert run.retryable is True
        assert _statuses(run)["process"] == StepStatus.FAILED
        assert run.error == "Step 'process' failed: Database unreachable: connection refused"

    async def test_without_staging_the_process_step_is_skipped(self, app_ctx, job, make_payload) -> None:
        app_ctx.staging = None

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.success is True
        assert run.step("process").result == {"skipped": True, "reason": "staging not configured"}
        assert run.result["staging_id"] is None


class TestOptionalSteps:
    async def test_downstream_timeout_does_not_fail_the_run(self, app_ctx, job, make_payload) -> None:
        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        step = run.step("wait_for_downstream")
        assert step.status == StepStatus.FAILED
        assert step.result["skipped"] is True
        assert run.success is True
        assert run.result["serp_ads"] is None

    async def test_downstream_processed_reports_serp_ads(
        self, app_ctx, job, make_payload, staging_repo, monkeypatch
    ) -> None:
        async def processed(external_job_id):
            return StagingStatus.PROCESSED, None

        monkeypatch.setattr(staging_repo, "get_status", processed)
        staging_repo.serp_ads[PROVIDER_JOB_ID] = 2

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.step("wait_for_downstream").status == StepStatus.COMPLETED
        assert run.result["serp_ads"] == 2

    async def test_downstream_error_is_recorded(
        self, app_ctx, job, make_payload, staging_repo, monkeypatch
    ) -> None:
        async def errored(external_job_id):
            return StagingStatus.ERROR, "trigger exploded"

        monkeypatch.setattr(staging_repo, "get_status", errored)

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        step = run.step("wait_for_downstream")
        assert step.status == StepStatus.FAILED
        assert "trigger exploded" in step.error
        assert run.success is True

    async def test_renderings_and_upload(self, app_ctx, job, make_payload, tmp_path) -> None:
        app_ctx.html_renderer = FakeHtmlRenderer(tmp_path)
        app_ctx.png_renderer = FakePngRenderer()
        app_ctx.storage = FakeUploader()

        run = await process_serp_job(app_ctx, job, make_payload(paid=3), PROVIDER_JOB_ID)

        assert run.result["html_rendered"] == 3
        assert run.result["png_rendered"] == 3
        assert run.result["uploaded"] == 6
        assert run.step("upload_storage").result["urls"][0].startswith("https://cdn.example.com/")

    async def test_missing_renderers_are_skipped(self, app_ctx, job, make_payload) -> None:
        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.step("render_html").result == {"skipped": True, "reason": "html renderer not configured"}
        assert run.step("render_png").result["skipped"] is True
        assert run.step("upload_storage").result["skipped"] is True

    async def test_disabled_rendering(self, app_ctx, job, make_payload, tmp_path) -> None:
        app_ctx.html_renderer = FakeHtmlRenderer(tmp_path)
        app_ctx.settings = app_ctx.settings.model_copy(update={"render_html": False})

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.step("render_html").result == {"skipped": True, "reason": "disabled"}
        assert run.result["html_rendered"] == 0

    async def test_renderer_producing_nothing_is_an_optional_failure(
        self, app_ctx, job, make_payload, tmp_path
    ) -> None:
        app_ctx.html_renderer = FakeHtmlRenderer(tmp_path, fail=True)

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.step("render_html").status == StepStatus.FAILED
        assert run.success is True

    async def test_upload_failure_is_optional(self, app_ctx, job, make_payload, tmp_path) -> None:
        app_ctx.html_renderer = FakeHtmlRenderer(tmp_path)
        app_ctx.storage = FakeUploader(error=RuntimeError("bucket missing"))

        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        assert run.step("upload_storage").status == StepStatus.FAILED
        assert run.success is True
        assert run.result["uploaded"] == 0


class TestSummarizeRun:
    async def test_summary_metadata(self, app_ctx, job, make_payload) -> None:
        run = await process_serp_job(app_ctx, job, make_payload(), PROVIDER_JOB_ID)

        meta = summarize_run(run)

        assert meta["workflow"] == "serp"
        assert meta["steps"]["validate"] == "completed"
        assert meta["steps"]["render_html"] == "skipped"
        assert meta["steps"]["wait_for_downstream"] == "failed"
        assert meta["failed_steps"] == ["wait_for_downstream"]
        assert meta["summary"]["paid_ads"] == 2
