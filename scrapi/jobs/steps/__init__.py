"""
SERP Workflow Steps

Pipeline:
    step_00: Validate          - Normalize the provider payload (critical)
    step_01: Collect           - Save raw results to disk (critical)
    step_02: Process           - Insert into staging, dedup by job id (critical)
    step_03: Wait Downstream   - Wait for trigger-built SERP + ads (optional)
    step_04: Render HTML       - Landing page snapshots (optional)
    step_05: Render PNG        - Screenshots of the snapshots (optional)
    step_06: Upload Storage    - Push renderings to object storage (optional)
    step_07: Finalize          - Build the result summary (critical)
"""

from scrapi.jobs.steps.base import BaseStep, StepContext, StepError, StepSkipped
from scrapi.jobs.steps.step_00_validate import ValidateStep
from scrapi.jobs.steps.step_01_collect import CollectStep
from scrapi.jobs.steps.step_02_process import ProcessStep
from scrapi.jobs.steps.step_03_wait_downstream import WaitForDownstreamStep
from scrapi.jobs.steps.step_04_render_html import RenderHtmlStep
from scrapi.jobs.steps.step_05_render_png import RenderPngStep
from scrapi.jobs.steps.step_06_upload_storage import UploadStorageStep
from scrapi.jobs.steps.step_07_finalize import FinalizeStep

# Ordered list of steps for SERP jobs
SERP_WORKFLOW_STEPS = [
    ValidateStep(),
    CollectStep(),
    ProcessStep(),
    WaitForDownstreamStep(),
    RenderHtmlStep(),
    RenderPngStep(),
    UploadStorageStep(),
    FinalizeStep(),
]

__all__ = [
    "BaseStep",
    "StepContext",
    "StepError",
    "StepSkipped",
    "ValidateStep",
    "CollectStep",
    "ProcessStep",
    "WaitForDownstreamStep",
    "RenderHtmlStep",
    "RenderPngStep",
    "UploadStorageStep",
    "FinalizeStep",
    "SERP_WORKFLOW_STEPS",
]
