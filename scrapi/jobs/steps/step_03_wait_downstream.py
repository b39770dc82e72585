from typing import Any

from scrapi.core.models import StagingStatus
from scrapi.jobs.steps.base import BaseStep, StepContext, StepError, StepSkipped


class WaitForDownstreamStep(BaseStep):
    name = "wait_for_downstream"
    label = "Waiting for SERP processing"
    description = "Waiting for the staging trigger to build the SERP and its ads..."
    critical = False

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        if ctx.staging is None or ctx.insert_result is None:
            raise StepSkipped("staging not configured")

        settings = ctx.settings
        status = await ctx.staging.wait_for_processing(
            ctx.provider_job_id,
            attempts=settings.downstream_wait_attempts,
            delay=settings.downstream_wait_delay_seconds,
        )
        if status.status == StagingStatus.ERROR:
            raise StepError(f"Downstream processing failed: {status.error_message or 'unknown error'}")
        if not status.finished:
            raise StepError(f"SERP not processed after {status.attempts} checks")

        serp_ads = await ctx.staging.repository.count_serp_ads(ctx.provider_job_id)
        ctx.downstream = {"status": status.status.value, "serp_ads": serp_ads or 0}
        return {**ctx.downstream, "attempts": status.attempts}
