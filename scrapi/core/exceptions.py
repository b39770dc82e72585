"""
Exception hierarchy for the SERP job runner.

Retryable errors (ConnectivityError, JobNotReadyError, retryable
ExternalServiceError) are retried by the retry executor; once a policy is
exhausted the job is deferred to the next cycle. Terminal errors end up on the job record.
PersistenceError is fatal and halts the processor.
"""

from typing import Any


class ScrapiError(Exception):
    """Base exception for all job runner errors."""

    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ScrapiError):
    """Malformed job record or staging payload; rejected before any I/O."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message, {"errors": self.errors})


class DuplicateJobError(ValidationError):
    """A job with this id is already tracked in one of the queues."""

    def __init__(self, job_id: str, queue: str):
        self.job_id = job_id
        self.queue = queue
        super().__init__(f"Job {job_id} already exists in queue '{queue}'")


class ConnectivityError(ScrapiError):
    """Network timeout or connection failure talking to an external service."""

    retryable = True


class ExternalServiceError(ScrapiError):
    """External service answered with an error.

    5xx and malformed-but-parseable responses are retryable; 4xx responses and
    explicit job failures reported by the provider are terminal.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message, details)


class TimeoutExceededError(ScrapiError):
    """A job stayed in progress longer than the allowed maximum age."""

    def __init__(self, job_id: str, age_seconds: float, max_age_seconds: float):
        self.job_id = job_id
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"Job timeout - exceeded {max_age_seconds / 3600:g} hour processing limit "
            f"(in progress for {age_seconds / 3600:.2f}h)"
        )


class DuplicateDetected(ScrapiError):
    """Ingestion short-circuit: the record already exists. Not a failure."""

    def __init__(self, external_job_id: str, existing: Any = None):
        self.external_job_id = external_job_id
        self.existing = existing
        super().__init__(f"Staging record for job {external_job_id} already exists")


class PersistenceError(ScrapiError):
    """The local queue store is unreadable or unwritable. Fatal."""

    def __init__(self, message: str, path: str | None = None, original_error: Exception | None = None):
        self.path = path
        self.original_error = original_error
        super().__init__(message, {"path": path})


class WorkflowStateError(ScrapiError):
    """Workflow step calls made out of order."""


class StepError(ScrapiError):
    """Controlled step failure with a message meant for the job record.

    Use this for expected failures, as opposed to unexpected exceptions.
    """


class JobNotReadyError(ScrapiError):
    """Provider reports the job as still pending or running."""

    retryable = True

    def __init__(self, job_id: str, provider_status: str):
        self.job_id = job_id
        self.provider_status = provider_status
        super().__init__(f"Job {job_id} not ready (provider status: {provider_status})")


class RetryExhaustedError(ScrapiError):
    """All attempts of a retry policy ended in a retryable error."""

    retryable = True

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            {"attempts": attempts, "last_error": type(last_error).__name__},
        )
