from typing import Any

from scrapi.jobs.steps.base import BaseStep, StepContext


class FinalizeStep(BaseStep):
    name = "finalize"
    label = "Finalizing"
    description = "Summarizing the run..."

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        insert = ctx.insert_result
        ctx.summary = {
            "provider_job_id": ctx.provider_job_id,
            "paid_ads": len(ctx.record.content.paid),
            "organic_results": len(ctx.record.content.organic),
            "results_file": str(ctx.results_path) if ctx.results_path else None,
            "staging_id": insert.id if insert else None,
            "duplicate": insert.duplicate if insert else False,
            "serp_ads": ctx.downstream.get("serp_ads"),
            "html_rendered": len(ctx.html_files),
            "png_rendered": len(ctx.png_files),
            "uploaded": len(ctx.uploaded),
        }
        return ctx.summary
