from typing import Any

from scrapi.jobs.steps.base import BaseStep, StepContext
from scrapi.services.staging import map_to_normalized_form


class ValidateStep(BaseStep):
    name = "validate"
    label = "Validating"
    description = "Checking the provider payload and normalizing listings..."

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        # Raises ValidationError before anything is written
        ctx.record = map_to_normalized_form(
            ctx.payload,
            {
                "job_id": ctx.provider_job_id,
                "query": ctx.job.query,
                "location": ctx.job.location,
                "timestamp": ctx.job.submitted_at.isoformat(),
            },
        )
        content = ctx.record.content
        return {
            "pages": len(content.results),
            "paid_ads": len(content.paid),
            "organic_results": len(content.organic),
        }
