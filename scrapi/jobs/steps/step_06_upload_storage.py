from typing import Any

from scrapi.jobs.steps.base import BaseStep, StepContext, StepSkipped


class UploadStorageStep(BaseStep):
    name = "upload_storage"
    label = "Uploading"
    description = "Uploading renderings to object storage..."
    critical = False

    def is_enabled(self, ctx: StepContext) -> bool:
        return ctx.settings.upload_to_storage

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        if ctx.storage is None:
            raise StepSkipped("storage uploader not configured")

        files = [*ctx.html_files, *ctx.png_files]
        if not files:
            raise StepSkipped("no renderings to upload")

        ctx.uploaded = await ctx.storage.upload(ctx.provider_job_id, files)
        return {"uploaded": len(ctx.uploaded), "urls": ctx.uploaded}
