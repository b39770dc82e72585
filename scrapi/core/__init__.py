"""
Core package initialization.
"""

from scrapi.core.config import Settings, get_settings
from scrapi.core.models import (
    CycleSummary,
    JobRecord,
    JobStatistics,
    JobStatus,
    Queue,
    RetryPolicy,
    StagingRecord,
    StagingStatus,
    StepResult,
    StepStatus,
    WorkflowRun,
)

__all__ = [
    "Settings",
    "get_settings",
    "CycleSummary",
    "JobRecord",
    "JobStatistics",
    "JobStatus",
    "Queue",
    "RetryPolicy",
    "StagingRecord",
    "StagingStatus",
    "StepResult",
    "StepStatus",
    "WorkflowRun",
]
