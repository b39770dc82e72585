"""
Workflow Step Engine.

Tracks one workflow run for one job: an ordered list of steps, each started,
then completed or failed exactly once. Critical step failures abort the run;
optional step failures are recorded as skipped and the run continues.
``WorkflowRun.success`` is true iff no critical step failed.
"""

from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from scrapi.core.exceptions import ScrapiError, WorkflowStateError
from scrapi.core.models import StepResult, StepStatus, WorkflowRun, utcnow

if TYPE_CHECKING:
    from scrapi.jobs.steps.base import BaseStep, StepContext

logger = structlog.get_logger()


def _duration_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


class WorkflowEngine:
    """State holder for a single workflow run; not reusable once finished."""

    def __init__(
        self,
        job_id: str,
        workflow: str = "serp",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_id = job_id
        self.workflow = workflow
        self.clock = clock
        self.started_at = clock()
        self.steps: list[StepResult] = []
        self._current: int | None = None
        self._run: WorkflowRun | None = None
        self.log = logger.bind(job_id=job_id, workflow=workflow)

    @property
    def finished(self) -> bool:
        return self._run is not None

    @property
    def current_step(self) -> StepResult | None:
        return self.steps[self._current] if self._current is not None else None

    def _check_open(self, action: str) -> None:
        if self._run is not None:
            raise WorkflowStateError(f"Cannot {action}: workflow for job {self.job_id} already finished")

    def _close_current(self, name: str, action: str) -> tuple[int, StepResult]:
        self._check_open(action)
        step = self.current_step
        if step is None or step.name != name:
            running = step.name if step else None
            raise WorkflowStateError(f"Cannot {action} '{name}': running step is {running!r}")
        return self._current, step

    # =========================================================================
    # Step Tracking
    # =========================================================================

    def start_step(self, name: str, description: str = "", critical: bool = True) -> StepResult:
        self._check_open(f"start step '{name}'")
        if self._current is not None:
            raise WorkflowStateError(
                f"Cannot start '{name}' while '{self.steps[self._current].name}' is running"
            )
        if any(s.name == name for s in self.steps):
            raise WorkflowStateError(f"Step '{name}' already ran in this workflow")

        step = StepResult(name=name, description=description, critical=critical, started_at=self.clock())
        self.steps.append(step)
        self._current = len(self.steps) - 1
        return step

    def complete_step(self, name: str, result: dict[str, Any] | None = None) -> StepResult:
        index, step = self._close_current(name, "complete step")
        ended = self.clock()
        done = step.model_copy(
            update={
                "status": StepStatus.COMPLETED,
                "ended_at": ended,
                "duration_ms": _duration_ms(step.started_at, ended),
                "result": result,
            }
        )
        self.steps[index] = done
        self._current = None
        return done

    def fail_step(
        self,
        name: str,
        error: BaseException | str,
        result: dict[str, Any] | None = None,
    ) -> StepResult:
        index, step = self._close_current(name, "fail step")
        ended = self.clock()
        failed = step.model_copy(
            update={
                "status": StepStatus.FAILED,
                "ended_at": ended,
                "duration_ms": _duration_ms(step.started_at, ended),
                "result": result,
                "error": str(error) or type(error).__name__,
            }
        )
        self.steps[index] = failed
        self._current = None
        return failed

    # =========================================================================
    # Run Completion
    # =========================================================================

    def _finish(
        self,
        result: dict[str, Any] | None,
        error: str | None,
        retryable: bool = False,
    ) -> WorkflowRun:
        ended = self.clock()
        success = error is None and not any(
            s.critical and s.status == StepStatus.FAILED for s in self.steps
        )
        self._run = WorkflowRun(
            job_id=self.job_id,
            workflow=self.workflow,
            steps=list(self.steps),
            success=success,
            total_duration_ms=_duration_ms(self.started_at, ended),
            started_at=self.started_at,
            ended_at=ended,
            result=result,
            error=error,
            retryable=retryable and not success,
        )
        self.log.info(
            "Workflow finished",
            success=success,
            duration_ms=self._run.total_duration_ms,
            failed_steps=[s.name for s in self._run.failed_steps],
        )
        return self._run

    def complete(self, final_result: dict[str, Any] | None = None) -> WorkflowRun:
        self._check_open("complete")
        if self._current is not None:
            raise WorkflowStateError(
                f"Cannot complete while step '{self.steps[self._current].name}' is running"
            )
        critical = next(
            (s for s in self.steps if s.critical and s.status == StepStatus.FAILED), None
        )
        error = f"Step '{critical.name}' failed: {critical.error}" if critical else None
        return self._finish(final_result, error)

    def fail(self, error: BaseException | str) -> WorkflowRun:
        """
        Abort the run; a step still running is closed as failed with the same error.

        The run is marked retryable when the error is a transient domain error.
        """
        self._check_open("fail")
        message = str(error) or type(error).__name__
        step = self.current_step
        if step is not None:
            self.fail_step(step.name, message)
        else:
            step = next(
                (s for s in reversed(self.steps) if s.critical and s.status == StepStatus.FAILED),
                None,
            )
        if step is not None:
            message = f"Step '{step.name}' failed: {message}"
        return self._finish(None, message, retryable=isinstance(error, ScrapiError) and error.retryable)

    # =========================================================================
    # Step Execution
    # =========================================================================

    async def run_step(self, step: "BaseStep", ctx: "StepContext") -> StepResult:
        """Execute one step under this engine. Critical failures propagate."""
        return await step.execute(self, ctx, len(self.steps) + 1, None)
