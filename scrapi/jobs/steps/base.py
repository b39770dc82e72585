"""
Step building blocks for the SERP workflow.

A step subclasses ``BaseStep`` and implements ``run``; ``execute`` records the
step on the workflow engine. A critical step that raises aborts the run, an
optional one is recorded as failed and the run continues.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from scrapi.core.config import Settings
from scrapi.core.exceptions import StepError
from scrapi.core.models import JobRecord, StagingRecord, StepResult
from scrapi.services.rendering import HtmlRenderer, PngRenderer, StorageUploader
from scrapi.services.staging import InsertResult, StagingDeduplicator

if TYPE_CHECKING:
    from scrapi.jobs.workflow import WorkflowEngine

logger = structlog.get_logger()

__all__ = ["BaseStep", "StepContext", "StepError", "StepSkipped"]


class StepSkipped(Exception):
    """Raised from run() when a step has nothing to do; recorded as completed + skipped."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


@dataclass
class StepContext:
    """Everything the SERP steps read and hand to each other for one job."""

    job: JobRecord
    payload: dict[str, Any]
    provider_job_id: str
    settings: Settings
    staging: StagingDeduplicator | None = None
    html_renderer: HtmlRenderer | None = None
    png_renderer: PngRenderer | None = None
    storage: StorageUploader | None = None

    # Filled in as the steps run
    record: StagingRecord | None = None
    results_path: Path | None = None
    insert_result: InsertResult | None = None
    downstream: dict[str, Any] = field(default_factory=dict)
    html_files: list[Path] = field(default_factory=list)
    png_files: list[Path] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)


class BaseStep(ABC):
    """Base class for all workflow steps."""

    name: str = "base"
    label: str = "Base Step"
    description: str = "Performing base step..."
    critical: bool = True

    def __init__(self):
        self.log = logger.bind(step=self.name)

    def is_enabled(self, ctx: StepContext) -> bool:
        """Disabled steps are recorded as skipped without running."""
        return True

    @abstractmethod
    async def run(self, ctx: StepContext) -> dict[str, Any] | None:
        """Logic for the step goes here."""
        pass

    async def execute(
        self,
        engine: "WorkflowEngine",
        ctx: StepContext,
        step_num: int,
        total_steps: int | None,
    ) -> StepResult:
        """Wrapper around run() that records the step on the engine and logs."""
        progress = f"{step_num}/{total_steps}" if total_steps else str(step_num)
        log = self.log.bind(job_id=ctx.job.id)
        engine.start_step(self.name, self.description, critical=self.critical)

        if not self.is_enabled(ctx):
            log.info(f"Step {progress} disabled, skipping")
            return engine.complete_step(self.name, {"skipped": True, "reason": "disabled"})

        log.info(f"Starting step {progress}")
        try:
            result = await self.run(ctx)
        except StepSkipped as e:
            log.info(f"Step {progress} skipped", reason=e.reason)
            return engine.complete_step(self.name, {"skipped": True, "reason": e.reason})
        except Exception as e:
            if self.critical:
                log.error(f"Step {progress} failed", error=str(e))
                engine.fail_step(self.name, e)
                raise
            log.warning(f"Optional step {progress} failed, continuing", error=str(e))
            return engine.fail_step(self.name, e, {"skipped": True, "reason": str(e) or type(e).__name__})

        log.info(f"Step {progress} completed")
        return engine.complete_step(self.name, result)
