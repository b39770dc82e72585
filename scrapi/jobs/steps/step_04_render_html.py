from typing import Any

from scrapi.jobs.steps.base import BaseStep, StepContext, StepError, StepSkipped


class RenderHtmlStep(BaseStep):
    name = "render_html"
    label = "Rendering HTML"
    description = "Capturing HTML snapshots of the ad landing pages..."
    critical = False

    def is_enabled(self, ctx: StepContext) -> bool:
        return ctx.settings.render_html

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        if ctx.html_renderer is None:
            raise StepSkipped("html renderer not configured")

        ads = [ad for ad in ctx.record.content.paid if ad.url][: ctx.settings.max_ads_to_render]
        if not ads:
            raise StepSkipped("no ads to render")

        ctx.html_files = await ctx.html_renderer.render(ctx.provider_job_id, ads)
        if not ctx.html_files:
            raise StepError(f"None of {len(ads)} landing pages could be rendered")
        return {"rendered": len(ctx.html_files), "requested": len(ads)}
