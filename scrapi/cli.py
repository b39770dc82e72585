"""
Operator commands for the SERP job runner.

Usage:
    python -m scrapi run                   # continuous processing until SIGINT/SIGTERM
    python -m scrapi run --cycles 3        # stop after three cycles
    python -m scrapi once                  # single cycle
    python -m scrapi status                # queue counts and recent jobs
    python -m scrapi submit "plumbers near me" --location "Boston, Massachusetts, United States"
    python -m scrapi enqueue 7135289437452340225 --query "plumbers near me"

Exit codes: 0 success, 1 failure, 2 queue store unusable.
"""

import argparse
import asyncio
import signal
import sys

from scrapi.context import create_context
from scrapi.core.config import Settings, get_settings
from scrapi.core.exceptions import PersistenceError, ScrapiError, ValidationError
from scrapi.core.logging import configure_logging
from scrapi.core.models import JobRecord, JobStatus
from scrapi.core.parsers import extract_location_from_query
from scrapi.jobs.processor import PollingProcessor

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PERSISTENCE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scrapi",
        description="Submit, poll and process SERP scraping jobs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process jobs continuously")
    run.add_argument(
        "--cycles",
        type=int,
        default=None,
        help="Stop after this many cycles (default: run until interrupted)",
    )
    run.add_argument(
        "--no-database",
        action="store_true",
        help="Skip the staging datastore (staging steps are recorded as skipped)",
    )

    once = sub.add_parser("once", help="Run a single processing cycle")
    once.add_argument("--no-database", action="store_true", help="Skip the staging datastore")

    status = sub.add_parser("status", help="Show queue statistics")
    status.add_argument(
        "--recent",
        type=int,
        default=5,
        help="Recent jobs listed per queue (default: 5)",
    )

    submit = sub.add_parser("submit", help="Submit a query to the provider and track it")
    submit.add_argument("query", help="Search query")
    submit.add_argument(
        "--location",
        default=None,
        help="Geo location (default: derived from the query suffix)",
    )

    enqueue = sub.add_parser("enqueue", help="Track an already submitted provider job")
    enqueue.add_argument("job_id", help="Provider job id")
    enqueue.add_argument("--query", required=True, help="Query the job was submitted with")
    enqueue.add_argument("--location", default=None, help="Geo location of the job")

    return parser


def _install_signal_handlers(processor: PollingProcessor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, processor.request_stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; Ctrl+C still raises KeyboardInterrupt
            pass


async def _run(settings: Settings, cycles: int | None, with_database: bool) -> int:
    if not settings.has_provider_credentials:
        print("Error: OXYLABS_USERNAME and OXYLABS_PASSWORD must be set")
        return EXIT_FAILURE

    async with create_context(settings, with_database=with_database) as ctx:
        processor = PollingProcessor(ctx)
        _install_signal_handlers(processor)
        result = await processor.run(max_cycles=cycles)

    if not result.ok:
        print(f"Processor stopped after {result.cycles} cycles: {result.error}")
        return EXIT_FAILURE
    return EXIT_OK


async def _status(settings: Settings, recent: int) -> int:
    async with create_context(settings, with_provider=False, with_database=False) as ctx:
        stats = await ctx.lifecycle.get_statistics()
        avg = stats.average_processing_time_ms
        print("Job queues:")
        print(f"  submitted:   {stats.submitted_count}")
        print(f"  in progress: {stats.in_progress_count}")
        print(f"  completed:   {stats.completed_count}")
        print(f"  failed:      {stats.failed_count}")
        print(f"  total:       {stats.total_count}")
        print(f"Completion rate: {stats.completion_rate:.2f}%")
        print(f"Average processing time: {f'{avg / 1000:.1f}s' if avg is not None else 'n/a'}")

        for queue in JobStatus:
            jobs = await ctx.lifecycle.list_jobs(queue, recent)
            if not jobs:
                continue
            print(f"\nRecent {queue.value}:")
            for job in reversed(jobs):
                line = f"  {job.id}  {job.query[:60]}"
                if job.error:
                    line += f"  [{job.error[:80]}]"
                print(line)
    return EXIT_OK


async def _submit(settings: Settings, query: str, location: str | None) -> int:
    if not settings.has_provider_credentials:
        print("Error: OXYLABS_USERNAME and OXYLABS_PASSWORD must be set")
        return EXIT_FAILURE

    location = location or extract_location_from_query(query)
    async with create_context(settings, with_database=False) as ctx:
        try:
            provider_job = await ctx.provider.submit_job(query, location)
        except ScrapiError as e:
            print(f"Error: submission failed: {e}")
            return EXIT_FAILURE

        record = JobRecord(
            id=str(provider_job["id"]),
            query=query,
            location=location,
            provider_job_id=str(provider_job["id"]),
        )
        try:
            await ctx.lifecycle.submit(record)
        except ValidationError as e:
            print(f"Error: {e}")
            return EXIT_FAILURE
    print(f"Submitted job {record.id}")
    return EXIT_OK


async def _enqueue(settings: Settings, job_id: str, query: str, location: str | None) -> int:
    async with create_context(settings, with_provider=False, with_database=False) as ctx:
        try:
            record = await ctx.lifecycle.submit(
                {"id": job_id, "query": query, "location": location, "provider_job_id": job_id}
            )
        except ValidationError as e:
            print(f"Error: {e}")
            for detail in e.errors:
                print(f"  {detail}")
            return EXIT_FAILURE
    print(f"Enqueued job {record.id} ({record.location})")
    return EXIT_OK


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    if args.command == "run":
        coro = _run(settings, args.cycles, not args.no_database)
    elif args.command == "once":
        coro = _run(settings, 1, not args.no_database)
    elif args.command == "status":
        coro = _status(settings, args.recent)
    elif args.command == "submit":
        coro = _submit(settings, args.query, args.location)
    else:
        coro = _enqueue(settings, args.job_id, args.query, args.location)

    try:
        return asyncio.run(coro)
    except PersistenceError as e:
        print(f"Error: job queue store unusable: {e}")
        return EXIT_PERSISTENCE
    except KeyboardInterrupt:
        print("Interrupted")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
