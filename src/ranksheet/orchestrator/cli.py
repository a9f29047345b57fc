"""
RankSheet Orchestrator CLI
==========================

Command-line interface for the rank sheet refresh pipeline.

Commands:
    init-db        - Create the ranksheet schema and tables
    refresh        - Refresh one keyword now
    refresh-all    - Refresh all active keywords now
    enqueue        - Queue a refresh of one keyword
    enqueue-all    - Queue a refresh of all active keywords
    job            - Show the state of a queued job
    jobs           - List recently queued jobs
    worker         - Run the job worker in the foreground
    schedule       - Run the worker plus the daily/hourly schedule
    cleanup-cache  - Delete long-expired ASIN cache rows
    retry-failed   - Re-run refreshes of keywords in ERROR status
    cache-stats    - Show ASIN cache counts
    locks          - List advisory locks held in PostgreSQL
    circuits       - Show upstream circuit breaker state

Usage:
    python -m ranksheet.orchestrator.cli refresh wireless-mouse --dry-run
    python -m ranksheet.orchestrator.cli refresh-all --concurrency 5
    python -m ranksheet.orchestrator.cli enqueue wireless-mouse
    python -m ranksheet.orchestrator.cli job 6f1c...
"""

import argparse
import json
import logging
import signal
import sys
import threading

from ..cache.asin_cache import AsinCache
from ..data.config import get_settings
from ..data.http import get_all_breaker_stats
from ..db.locks import AdvisoryLockManager
from ..db.pool import get_database
from ..db.repositories import KeywordRepository
from ..db.schema import apply_schema
from ..jobs.queue import JobQueue
from ..jobs.worker import JobWorker, WorkerSupervisor
from .batch import refresh_all_keywords
from .logging_config import setup_logging
from .maintenance import cleanup_asin_cache, retry_failed_keywords
from .refresh import RefreshOrchestrator
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _asin_cache(db) -> AsinCache:
    cache_config = get_settings().cache
    return AsinCache(db, ttl_days=cache_config.ttl_days, negative_ttl_days=cache_config.negative_ttl_days)


def _build_worker(db) -> JobWorker:
    return JobWorker(
        JobQueue(db),
        RefreshOrchestrator.from_database(db),
        KeywordRepository(db),
    )


def cmd_init_db(args):
    """Create the database schema."""
    try:
        apply_schema(get_database())
        print("Schema applied.")
        return 0
    except Exception as e:
        print(f"ERROR: Failed to apply schema: {e}")
        return 1


def cmd_refresh(args):
    """Refresh one keyword."""
    try:
        orchestrator = RefreshOrchestrator.from_database(get_database())
        result = orchestrator.refresh_keyword_by_slug(
            args.slug,
            report_date=args.report_date,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"ERROR: Refresh failed: {e}")
        logger.exception("Refresh failed")
        return 1

    _print_json(result.to_dict())
    return 0 if result.ok else 1


def cmd_refresh_all(args):
    """Refresh all active keywords."""
    try:
        db = get_database()
        result = refresh_all_keywords(
            RefreshOrchestrator.from_database(db),
            KeywordRepository(db),
            concurrency=args.concurrency,
            limit=args.limit,
        )
    except Exception as e:
        print(f"ERROR: Batch refresh failed: {e}")
        logger.exception("Batch refresh failed")
        return 1

    print("=" * 60)
    print("BATCH REFRESH COMPLETE")
    print("=" * 60)
    print(f"Total: {result.total}")
    print(f"Success: {result.success}")
    print(f"Failed: {result.failed}")

    summary = result.get_summary()
    if summary["sample_errors"]:
        print()
        print("Sample errors:")
        for err in summary["sample_errors"]:
            print(f"  - {err['slug']}: {err['error']}" + (f" ({err['detail']})" if err["detail"] else ""))

    return 0 if result.ok else 1


def cmd_enqueue(args):
    """Queue a refresh of one keyword."""
    try:
        job_id = JobQueue(get_database()).enqueue_refresh_one(args.slug)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1
    except Exception as e:
        print(f"ERROR: Failed to enqueue: {e}")
        return 1

    print(job_id)
    return 0


def cmd_enqueue_all(args):
    """Queue a refresh of all active keywords."""
    try:
        job_id = JobQueue(get_database()).enqueue_refresh_all(
            concurrency=args.concurrency,
            limit=args.limit,
        )
    except Exception as e:
        print(f"ERROR: Failed to enqueue: {e}")
        return 1

    print(job_id)
    return 0


def cmd_job(args):
    """Show the state of a job."""
    try:
        state = JobQueue(get_database()).get_job_state(args.job_id)
    except Exception as e:
        print(f"ERROR: Failed to read job: {e}")
        return 1

    if state is None:
        print(f"Job not found: {args.job_id}")
        return 1

    _print_json(state.to_dict())
    return 0


def cmd_jobs(args):
    """List recently queued jobs."""
    try:
        jobs = JobQueue(get_database()).list_recent(limit=args.limit)
    except Exception as e:
        print(f"ERROR: Failed to list jobs: {e}")
        return 1

    if not jobs:
        print("No jobs.")
        return 0

    for job in jobs:
        duration = f"{job.duration_ms}ms" if job.duration_ms is not None else "-"
        print(f"{job.id}  {job.job_name:12} {job.status.value:8} {duration:>9}  {job.keyword_slug or ''}")
    return 0


def cmd_worker(args):
    """Run the job worker until interrupted."""
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping worker...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        _build_worker(get_database()).run_forever(stop_event)
        return 0
    except Exception as e:
        print(f"ERROR: Worker crashed: {e}")
        logger.exception("Worker crashed")
        return 1


def cmd_schedule(args):
    """Run the scheduler daemon (worker included)."""
    try:
        db = get_database()
        worker = _build_worker(db)
        scheduler = RefreshScheduler(
            worker.queue,
            worker.keywords,
            _asin_cache(db),
            WorkerSupervisor(worker),
        )
        scheduler.start(blocking=True)
        return 0
    except Exception as e:
        print(f"ERROR: Scheduler failed: {e}")
        logger.exception("Scheduler failed")
        return 1


def cmd_cleanup_cache(args):
    """Delete long-expired ASIN cache rows."""
    try:
        result = cleanup_asin_cache(
            _asin_cache(get_database()),
            dry_run=args.dry_run,
            older_than_days=args.older_than_days,
        )
    except Exception as e:
        print(f"ERROR: Cache cleanup failed: {e}")
        return 1

    if result.dry_run:
        print(f"Would delete {result.expired_count} expired entries")
    else:
        print(f"Deleted {result.deleted_count} expired entries")
    return 0


def cmd_retry_failed(args):
    """Re-run refreshes of keywords in ERROR status."""
    try:
        db = get_database()
        result = retry_failed_keywords(
            RefreshOrchestrator.from_database(db),
            KeywordRepository(db),
            limit=args.limit,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"ERROR: Retry failed: {e}")
        return 1

    _print_json(result.to_dict())
    return 0 if result.failed == 0 else 1


def cmd_cache_stats(args):
    """Show ASIN cache counts."""
    try:
        stats = _asin_cache(get_database()).stats()
    except Exception as e:
        print(f"ERROR: Failed to read cache stats: {e}")
        return 1

    print("=" * 60)
    print("ASIN CACHE")
    print("=" * 60)
    for key, value in stats.items():
        print(f"  {key:12} {value}")
    return 0


def cmd_locks(args):
    """List advisory locks."""
    try:
        locks = AdvisoryLockManager(get_database()).held_locks()
    except Exception as e:
        print(f"ERROR: Failed to list locks: {e}")
        return 1

    if not locks:
        print("No advisory locks held.")
        return 0
    _print_json(locks)
    return 0


def cmd_circuits(args):
    """Show circuit breaker state."""
    _print_json(get_all_breaker_stats())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ranksheet",
        description="RankSheet Refresh Pipeline CLI",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create the ranksheet schema and tables")

    refresh_parser = subparsers.add_parser("refresh", help="Refresh one keyword now")
    refresh_parser.add_argument("slug", help="Keyword slug")
    refresh_parser.add_argument(
        "--report-date",
        help="Weekly report date YYYY-MM-DD (default: newest)",
    )
    refresh_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute without writing anything",
    )

    refresh_all_parser = subparsers.add_parser("refresh-all", help="Refresh all active keywords now")
    refresh_all_parser.add_argument(
        "--concurrency",
        type=int,
        help="Parallel refreshes, 1-10 (default: 3)",
    )
    refresh_all_parser.add_argument(
        "--limit",
        type=int,
        help="Maximum keywords, 1-2000 (default: 500)",
    )

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a refresh of one keyword")
    enqueue_parser.add_argument("slug", help="Keyword slug")

    enqueue_all_parser = subparsers.add_parser("enqueue-all", help="Queue a refresh of all active keywords")
    enqueue_all_parser.add_argument(
        "--concurrency",
        type=int,
        default=3,
        help="Parallel refreshes, 1-10 (default: 3)",
    )
    enqueue_all_parser.add_argument(
        "--limit",
        type=int,
        help="Maximum keywords, 1-2000",
    )

    job_parser = subparsers.add_parser("job", help="Show the state of a job")
    job_parser.add_argument("job_id", help="Job id")

    jobs_parser = subparsers.add_parser("jobs", help="List recently queued jobs")
    jobs_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of jobs to show (default: 20)",
    )

    subparsers.add_parser("worker", help="Run the job worker in the foreground")
    subparsers.add_parser("schedule", help="Run the scheduler daemon")

    cleanup_parser = subparsers.add_parser("cleanup-cache", help="Delete long-expired ASIN cache rows")
    cleanup_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only count what would be deleted",
    )
    cleanup_parser.add_argument(
        "--older-than-days",
        type=int,
        default=60,
        help="Grace period after expiry (default: 60)",
    )

    retry_parser = subparsers.add_parser("retry-failed", help="Retry keywords in ERROR status")
    retry_parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Maximum keywords to retry (default: 10)",
    )
    retry_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list what would be retried",
    )

    subparsers.add_parser("cache-stats", help="Show ASIN cache counts")
    subparsers.add_parser("locks", help="List advisory locks")
    subparsers.add_parser("circuits", help="Show circuit breaker state")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(get_settings().logging, level="DEBUG" if args.verbose else None)

    if args.command is None:
        parser.print_help()
        return 1

    # Dispatch to command handler
    commands = {
        "init-db": cmd_init_db,
        "refresh": cmd_refresh,
        "refresh-all": cmd_refresh_all,
        "enqueue": cmd_enqueue,
        "enqueue-all": cmd_enqueue_all,
        "job": cmd_job,
        "jobs": cmd_jobs,
        "worker": cmd_worker,
        "schedule": cmd_schedule,
        "cleanup-cache": cmd_cleanup_cache,
        "retry-failed": cmd_retry_failed,
        "cache-stats": cmd_cache_stats,
        "locks": cmd_locks,
        "circuits": cmd_circuits,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
