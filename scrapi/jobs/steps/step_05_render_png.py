from typing import Any

from scrapi.jobs.steps.base import BaseStep, StepContext, StepSkipped


class RenderPngStep(BaseStep):
    name = "render_png"
    label = "Rendering PNG"
    description = "Rendering screenshots of the HTML snapshots..."
    critical = False

    def is_enabled(self, ctx: StepContext) -> bool:
        return ctx.settings.render_png

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        if ctx.png_renderer is None:
            raise StepSkipped("png renderer not configured")
        if not ctx.html_files:
            raise StepSkipped("no html snapshots")

        ctx.png_files = await ctx.png_renderer.render(ctx.provider_job_id, ctx.html_files)
        return {"rendered": len(ctx.png_files)}
