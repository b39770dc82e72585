"""
Polling Processor.

Long-running loop that drives jobs through their lifecycle:

1. Pick up to ``batch_size`` submitted jobs and move them to in_progress
2. For every in-progress job: enforce the age limit, poll the provider under
   the retry policy, run the SERP workflow on the results
3. Complete or fail the job, or leave it in progress for the next cycle
4. Sleep: short while work remains, longer when idle, longest after several
   idle cycles in a row

Transient provider or staging datastore trouble never fails a job; it only
defers it, and so does an unexpected error inside one job. A corrupt or
unwritable queue store halts the loop.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from scrapi.context import AppContext
from scrapi.core.exceptions import (
    PersistenceError,
    RetryExhaustedError,
    ScrapiError,
    TimeoutExceededError,
)
from scrapi.core.logging import emit_cycle_event, enrich_event, init_cycle_event
from scrapi.core.models import CycleSummary, JobRecord, JobStatus
from scrapi.jobs.serp_job import process_serp_job, summarize_run
from scrapi.services.job_recovery import in_progress_age_seconds, recover_stale_jobs
from scrapi.services.retry_utils import with_retries

logger = structlog.get_logger()


class JobOutcome(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    DEFERRED = "deferred"
    TIMED_OUT = "timed_out"


@dataclass
class ProcessorResult:
    """How the loop ended."""

    ok: bool
    cycles: int
    error: str | None = None


class PollingProcessor:
    """Single-writer job processor; one instance per process."""

    def __init__(
        self,
        ctx: AppContext,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        if ctx.provider is None:
            raise ValueError("PollingProcessor needs a provider client")
        self.ctx = ctx
        self.settings = ctx.settings
        self.lifecycle = ctx.lifecycle
        self._stop = asyncio.Event()
        self._sleep = sleep or self._interruptible_sleep
        self.log = logger.bind(component="PollingProcessor")

    # =========================================================================
    # Control
    # =========================================================================

    def request_stop(self) -> None:
        """Finish the in-flight cycle, then stop. Safe to call from a signal handler."""
        if not self._stop.is_set():
            self.log.info("Stop requested, finishing current cycle")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def _interruptible_sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except TimeoutError:
            pass

    # =========================================================================
    # Per-Job Processing
    # =========================================================================

    async def process_job(self, job: JobRecord) -> JobOutcome:
        """
        Drive one in-progress job as far as it can go this cycle.

        An unexpected error leaves the job in progress for the next cycle; it
        never reaches the other jobs of the batch. Only a queue store failure
        propagates.
        """
        log = self.log.bind(job_id=job.id, query=job.query[:80])
        try:
            return await self._advance_job(job, log)
        except PersistenceError:
            raise
        except Exception as e:
            log.error(
                "Unexpected error while processing job, deferring",
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                exc_info=True,
            )
            return JobOutcome.DEFERRED

    async def _advance_job(self, job: JobRecord, log: Any) -> JobOutcome:
        age = in_progress_age_seconds(job, self.ctx.clock())
        max_age = self.settings.max_in_progress_age_seconds
        if age > max_age:
            error = TimeoutExceededError(job.id, age, max_age)
            log.warning("Job exceeded in-progress age limit", age_seconds=round(age))
            await self.lifecycle.move_to_failed(job.id, error)
            return JobOutcome.TIMED_OUT

        try:
            payload = await with_retries(
                self.ctx.provider.fetch_ready_results,
                job.poll_id,
                policy=self.settings.retry_policy,
                sleep=self.ctx.sleep,
            )
        except RetryExhaustedError as e:
            log.info("Results not available yet, deferring", reason=str(e.last_error))
            return JobOutcome.DEFERRED
        except ScrapiError as e:
            log.error("Provider rejected job", error=str(e))
            await self.lifecycle.move_to_failed(job.id, e)
            return JobOutcome.FAILED

        run = await process_serp_job(self.ctx, job, payload, job.poll_id)
        if not run.success:
            if run.retryable:
                log.warning("Workflow hit a transient error, deferring", error=run.error)
                return JobOutcome.DEFERRED
            await self.lifecycle.move_to_failed(job.id, run.error or "Workflow failed")
            return JobOutcome.FAILED

        await self.lifecycle.move_to_completed(job.id, summarize_run(run))
        log.info("Job completed", workflow_duration_ms=run.total_duration_ms)
        return JobOutcome.PROCESSED

    async def _process_batch(self, jobs: list[JobRecord]) -> list[JobOutcome]:
        if self.settings.concurrency <= 1:
            return [await self.process_job(job) for job in jobs]

        semaphore = asyncio.Semaphore(self.settings.concurrency)

        async def guarded(job: JobRecord) -> JobOutcome:
            async with semaphore:
                return await self.process_job(job)

        # Every sibling finishes before the cycle moves on
        results = await asyncio.gather(*(guarded(job) for job in jobs), return_exceptions=True)
        for result in results:
            if isinstance(result, PersistenceError):
                raise result
        outcomes = []
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                self.log.error("Job task ended abnormally, deferring", job_id=job.id, error=repr(result))
                outcomes.append(JobOutcome.DEFERRED)
            else:
                outcomes.append(result)
        return outcomes

    # =========================================================================
    # Cycles
    # =========================================================================

    async def run_cycle(self, cycle: int = 1) -> CycleSummary:
        """One pass: pick up submitted jobs, then work every in-progress job."""
        started = asyncio.get_running_loop().time()
        summary = CycleSummary(cycle=cycle)

        submitted = await self.lifecycle.list_jobs(JobStatus.SUBMITTED)
        for job in submitted[: self.settings.batch_size]:
            if await self.lifecycle.move_to_in_progress(job.id):
                summary.selected += 1
            else:
                summary.skipped += 1

        in_progress = await self.lifecycle.list_jobs(JobStatus.IN_PROGRESS)
        for outcome in await self._process_batch(in_progress):
            if outcome == JobOutcome.PROCESSED:
                summary.processed += 1
            elif outcome == JobOutcome.FAILED:
                summary.failed += 1
            elif outcome == JobOutcome.DEFERRED:
                summary.deferred += 1
            else:
                summary.timed_out += 1

        stats = await self.lifecycle.get_statistics()
        summary.has_work = stats.has_work
        summary.duration_ms = int((asyncio.get_running_loop().time() - started) * 1000)

        enrich_event(
            selected=summary.selected,
            processed=summary.processed,
            failed=summary.failed,
            deferred=summary.deferred,
            skipped=summary.skipped,
            timed_out=summary.timed_out,
            has_work=summary.has_work,
            **{
                "queues.submitted": stats.submitted_count,
                "queues.in_progress": stats.in_progress_count,
                "queues.completed": stats.completed_count,
                "queues.failed": stats.failed_count,
            },
        )
        return summary

    def next_delay(self, summary: CycleSummary, empty_cycles: int) -> float:
        if summary.has_work:
            return self.settings.active_interval_seconds
        if empty_cycles >= self.settings.idle_backoff_after:
            return self.settings.idle_backoff_interval_seconds
        return self.settings.idle_interval_seconds

    async def run(self, max_cycles: int | None = None) -> ProcessorResult:
        """
        Run cycles until stopped, ``max_cycles`` is reached or too many
        consecutive cycles fail.

        Raises:
            PersistenceError: the queue store cannot be read or written
        """
        settings = self.settings
        await recover_stale_jobs(
            self.lifecycle, settings.max_in_progress_age_seconds, clock=self.ctx.clock
        )

        cycle = 0
        consecutive_errors = 0
        empty_cycles = 0
        self.log.info("Processor started", max_cycles=max_cycles, batch_size=settings.batch_size)

        while not self.stop_requested and (max_cycles is None or cycle < max_cycles):
            cycle += 1
            init_cycle_event(cycle)
            try:
                summary = await self.run_cycle(cycle)
            except PersistenceError as e:
                emit_cycle_event(e)
                self.log.critical("Queue store unusable, halting", error=str(e), path=e.path)
                raise
            except Exception as e:
                emit_cycle_event(e)
                consecutive_errors += 1
                self.log.error(
                    "Cycle failed",
                    error=str(e),
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors >= settings.max_consecutive_errors:
                    self.log.error("Too many consecutive errors, stopping", cycles=cycle)
                    return ProcessorResult(ok=False, cycles=cycle, error=str(e))
                await self._sleep(settings.error_cooldown_seconds)
                continue

            consecutive_errors = 0
            empty_cycles = 0 if summary.has_work else empty_cycles + 1
            delay = self.next_delay(summary, empty_cycles)
            enrich_event(next_delay_seconds=delay)
            emit_cycle_event()

            if max_cycles is not None and cycle >= max_cycles:
                break
            await self._sleep(delay)

        self.log.info("Processor stopped", cycles=cycle)
        return ProcessorResult(ok=True, cycles=cycle)
