import json
from typing import Any

import aiofiles
import aiofiles.os

from scrapi.jobs.steps.base import BaseStep, StepContext


class CollectStep(BaseStep):
    name = "collect"
    label = "Collecting"
    description = "Saving the raw provider results..."

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        results_dir = ctx.settings.results_dir
        await aiofiles.os.makedirs(results_dir, exist_ok=True)
        path = results_dir / f"ads-results-{ctx.provider_job_id}.json"

        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(ctx.payload, indent=2, default=str))

        ctx.results_path = path
        stat = await aiofiles.os.stat(path)
        return {"path": str(path), "bytes": stat.st_size}
