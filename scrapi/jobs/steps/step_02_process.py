from typing import Any

from scrapi.jobs.steps.base import BaseStep, StepContext, StepError, StepSkipped


class ProcessStep(BaseStep):
    name = "process"
    label = "Processing"
    description = "Writing the normalized SERP to the staging table..."

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        if ctx.staging is None:
            raise StepSkipped("staging not configured")

        result = await ctx.staging.insert(ctx.record)
        ctx.insert_result = result
        if not result.success:
            raise StepError(f"Staging insert rejected ({result.reason}): {'; '.join(result.errors)}")

        if result.duplicate:
            self.log.info("SERP already staged, continuing with existing record", staging_id=result.id)
        return {"staging_id": result.id, "duplicate": result.duplicate}
