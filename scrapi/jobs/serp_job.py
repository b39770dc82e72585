"""
SERP Job - runs the workflow steps over one job's provider results.

1. Step 00: Validate - normalize the payload into a staging record
2. Step 01: Collect - keep the raw payload on disk
3. Step 02: Process - staging insert (duplicates short-circuit)
4. Steps 03-06: downstream wait, renderings, upload (optional)
5. Step 07: Finalize - summary stored on the completed job

The returned WorkflowRun is summarized into the job's result metadata by the
processor and then discarded.
"""

from typing import TYPE_CHECKING, Any

import structlog

from scrapi.core.models import JobRecord, StepResult, StepStatus, WorkflowRun
from scrapi.jobs.steps import SERP_WORKFLOW_STEPS, BaseStep, StepContext
from scrapi.jobs.workflow import WorkflowEngine

if TYPE_CHECKING:
    from scrapi.context import AppContext

logger = structlog.get_logger()


async def process_serp_job(
    ctx: "AppContext",
    job: JobRecord,
    payload: dict[str, Any],
    provider_job_id: str,
    steps: list[BaseStep] | None = None,
) -> WorkflowRun:
    """
    Execute the SERP workflow for one job.

    Args:
        ctx: Application context (settings and collaborators)
        job: The in-progress job record
        payload: Parsed provider results ``{job, results}``
        provider_job_id: Id the provider knows the job by
        steps: Override the step list (defaults to SERP_WORKFLOW_STEPS)

    Returns:
        WorkflowRun; ``success`` is False iff a critical step failed
    """
    log = logger.bind(job_id=job.id, job_type="serp")
    log.info("SERP workflow starting")

    steps = steps if steps is not None else SERP_WORKFLOW_STEPS
    engine = WorkflowEngine(job.id, workflow="serp", clock=ctx.clock)
    state = StepContext(
        job=job,
        payload=payload,
        provider_job_id=provider_job_id,
        settings=ctx.settings,
        staging=ctx.staging,
        html_renderer=ctx.html_renderer,
        png_renderer=ctx.png_renderer,
        storage=ctx.storage,
    )

    try:
        for i, step in enumerate(steps, 1):
            await step.execute(engine, state, i, len(steps))
    except Exception as e:
        log.error("SERP workflow failed", error=str(e))
        return engine.fail(e)

    return engine.complete(state.summary or None)


def _step_outcome(step: StepResult) -> str:
    if step.status == StepStatus.COMPLETED and (step.result or {}).get("skipped"):
        return "skipped"
    return step.status.value


def summarize_run(run: WorkflowRun) -> dict[str, Any]:
    """Compact result metadata for the completed JobRecord."""
    return {
        "workflow": run.workflow,
        "workflow_duration_ms": run.total_duration_ms,
        "steps": {s.name: _step_outcome(s) for s in run.steps},
        "failed_steps": [s.name for s in run.failed_steps],
        "summary": run.result or {},
    }
