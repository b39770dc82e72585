"""
Shared constants for the job runner.

These constants are used across multiple modules and should be
imported from here to ensure consistency.
"""

from scrapi.core.models import JobStatus

# =============================================================================
# Queue Documents
# =============================================================================

# Queue name -> document file name inside settings.queue_dir
QUEUE_FILES: dict[JobStatus, str] = {
    JobStatus.SUBMITTED: "batch-submitted.json",
    JobStatus.IN_PROGRESS: "batch-in-progress.json",
    JobStatus.COMPLETED: "batch-completed.json",
    JobStatus.FAILED: "batch-failed.json",
}

BACKUP_SUFFIX = "-backup.json"

# Legal transitions between queues
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SUBMITTED: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAILED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Number of recent completed jobs used for the average processing time
STATS_RECENT_WINDOW = 10


# =============================================================================
# Scraping Provider
# =============================================================================

PROVIDER_SOURCE = "google_ads"
PROVIDER_DEVICE = "desktop"
PROVIDER_LOCALE = "en-US"
PROVIDER_PAGES = 2

# Provider job states that mean "keep polling"
PROVIDER_PENDING_STATES = frozenset({"pending", "running", "queued", "in_progress"})
# Provider job states that mean "results are ready"
PROVIDER_DONE_STATES = frozenset({"done", "completed"})
# Provider job states that mean the job itself failed
PROVIDER_FAILED_STATES = frozenset({"failed", "faulted", "error"})


# =============================================================================
# Staging
# =============================================================================

STAGING_TABLE = "staging_serps"

# Organic results kept per SERP page
MAX_ORGANIC_RESULTS = 5

# Required fields of a staging record, checked before any I/O
STAGING_REQUIRED_FIELDS = ("job_id", "query", "location", "timestamp", "content")

# Raw provider ad field -> normalized field (only where the names differ)
PAID_FIELD_ALIASES = {"url_image": "image_url"}


# =============================================================================
# Locations
# =============================================================================

FALLBACK_LOCATION = "United States"
