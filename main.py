"""CLI entry point for the lead enrichment pipeline."""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from leadpipe.core.config import Settings
from leadpipe.core.db import get_job, get_job_history, init_db
from leadpipe.core.errors import PipelineError
from leadpipe.core.schemas import ScheduledRunResult
from leadpipe.pipeline.orchestrator import EnrichmentOrchestrator
from leadpipe.pipeline.queue import JobQueue, QueueConsumer, request_for_profiles


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Lead enrichment pipeline - scrape, store and qualify captured profiles",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- worker ---
    worker_parser = subparsers.add_parser("worker", help="Consume queued enrichment jobs")
    worker_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of concurrent worker loops (default: queue.workers)",
    )
    _add_common(worker_parser)

    # --- enqueue ---
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue an enrichment job")
    enqueue_parser.add_argument(
        "profile_ids",
        nargs="+",
        type=int,
        help="Profile ids to enrich",
    )
    enqueue_parser.add_argument(
        "--organization",
        required=True,
        help="Organization that owns the profiles",
    )
    enqueue_parser.add_argument(
        "--qualification",
        type=int,
        default=None,
        help="Rubric id to score enriched profiles against",
    )
    enqueue_parser.add_argument("--job-id", default=None, help="Explicit job id")
    _add_common(enqueue_parser)

    # --- sweep ---
    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Process undelivered vendor objects from the object store",
    )
    sweep_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep sweeping at sweep.interval_s until interrupted",
    )
    _add_common(sweep_parser)

    # --- score-pending ---
    pending_parser = subparsers.add_parser(
        "score-pending",
        help="Score enriched profiles that lack a result for one of their rubrics",
    )
    pending_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum (profile, rubric) pairs to score (default: sweep.pending_limit)",
    )
    _add_common(pending_parser)

    # --- enrich-pdl ---
    pdl_parser = subparsers.add_parser(
        "enrich-pdl",
        help="Look up unenriched profiles on People Data Labs",
    )
    pdl_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum profiles to look up (default: pdl.batch_limit)",
    )
    _add_common(pdl_parser)

    # --- status ---
    status_parser = subparsers.add_parser("status", help="Show a job's state and history")
    status_parser.add_argument("job_id", help="Job id")
    _add_common(status_parser)

    # --- serve ---
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    _add_common(serve_parser)

    return parser.parse_args(argv)


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)


async def run_worker(settings: Settings, workers: int | None) -> None:
    """Consume the job queue until SIGINT/SIGTERM."""
    conn = init_db(settings.database.path)
    orchestrator = EnrichmentOrchestrator.from_settings(conn, settings)
    consumer = QueueConsumer(JobQueue(conn, settings.queue), orchestrator, settings.queue)

    stop = asyncio.Event()
    _install_stop_handlers(stop)
    try:
        await consumer.run(workers=workers, stop_event=stop)
    finally:
        conn.close()


def _print_scheduled_run(run: ScheduledRunResult) -> None:
    if run.sweep is not None:
        s = run.sweep
        print(
            f"Sweep: {s.objects_processed}/{s.objects_seen} objects "
            f"({s.objects_in_flight} in flight), {s.records_stored} records stored, "
            f"{s.records_failed} failed, {s.scoring.scored} scored"
        )
    if run.pdl is not None and run.pdl.attempted:
        print(f"PDL: {run.pdl.enriched} enriched, {run.pdl.not_found} not found, "
              f"{run.pdl.failed} failed")
    if run.pending is not None:
        print(f"Pending scoring: {run.pending.scored} scored, {run.pending.remaining} remaining")
    for step, error in run.errors.items():
        print(f"{step} failed: {error}", file=sys.stderr)


async def run_sweep(settings: Settings, loop: bool) -> None:
    """Run sweep, PDL pass and pending scoring once, or repeatedly with ``--loop``.

    A step that fails is logged and reported; the loop keeps going.
    """
    conn = init_db(settings.database.path)
    orchestrator = EnrichmentOrchestrator.from_settings(conn, settings)

    stop = asyncio.Event()
    _install_stop_handlers(stop)
    try:
        while True:
            run = await orchestrator.run_scheduled()
            _print_scheduled_run(run)
            if not loop:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.sweep.interval_s)
            except asyncio.TimeoutError:
                continue
            break
    finally:
        conn.close()


async def run_score_pending(settings: Settings, limit: int | None) -> None:
    conn = init_db(settings.database.path)
    try:
        orchestrator = EnrichmentOrchestrator.from_settings(conn, settings)
        result = await orchestrator.score_pending(limit)
    finally:
        conn.close()
    print(f"Scored {result.scored}, failed {result.failed}, {result.remaining} remaining")


async def run_enrich_pdl(settings: Settings, limit: int | None) -> None:
    conn = init_db(settings.database.path)
    try:
        orchestrator = EnrichmentOrchestrator.from_settings(conn, settings)
        result = await orchestrator.enrich_with_pdl(limit)
    finally:
        conn.close()
    print(f"PDL: {result.enriched} enriched, {result.not_found} not found, "
          f"{result.failed} failed of {result.attempted}")


def cmd_enqueue(settings: Settings, args: argparse.Namespace) -> None:
    conn = init_db(settings.database.path)
    try:
        request = request_for_profiles(
            conn,
            args.profile_ids,
            args.organization,
            qualification_id=args.qualification,
            job_id=args.job_id,
        )
        job_id = JobQueue(conn, settings.queue).enqueue(request)
    finally:
        conn.close()
    print(f"Enqueued job {job_id} ({len(args.profile_ids)} profiles)")


def cmd_status(settings: Settings, job_id: str) -> None:
    conn = init_db(settings.database.path)
    try:
        job = get_job(conn, job_id)
        if job is None:
            print(f"Job {job_id} not found", file=sys.stderr)
            sys.exit(1)
        history = get_job_history(conn, job_id)
    finally:
        conn.close()

    print(f"Job {job.id}: {job.state.value} (attempt {job.attempt})")
    if job.snapshot_id:
        print(f"  Snapshot: {job.snapshot_id}")
    if job.summary:
        s = job.summary
        print(f"  {s.coverage}, {s.failed} failed, {s.skipped} skipped, "
              f"{s.scored} scored, {s.score_failed} score failures")
    if job.error:
        print(f"  Error: {job.error}")
    print("  History: " + " -> ".join(f"{state.value}#{attempt}" for attempt, state in history))


def cmd_serve(settings: Settings) -> None:
    try:
        import uvicorn
    except ImportError:
        msg = "uvicorn is required to serve the API. Install with: pip install lead-enrichment-pipeline"
        raise ImportError(msg) from None

    from leadpipe.api.app import create_app

    conn = init_db(settings.database.path, check_same_thread=False)
    orchestrator = EnrichmentOrchestrator.from_settings(conn, settings)
    app = create_app(conn, settings, orchestrator)
    try:
        uvicorn.run(app, host=settings.api.host, port=settings.api.port)
    finally:
        conn.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = Settings.from_yaml(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "worker":
            asyncio.run(run_worker(settings, args.workers))
        elif args.command == "enqueue":
            cmd_enqueue(settings, args)
        elif args.command == "sweep":
            asyncio.run(run_sweep(settings, args.loop))
        elif args.command == "score-pending":
            asyncio.run(run_score_pending(settings, args.limit))
        elif args.command == "enrich-pdl":
            asyncio.run(run_enrich_pdl(settings, args.limit))
        elif args.command == "status":
            cmd_status(settings, args.job_id)
        elif args.command == "serve":
            cmd_serve(settings)
    except (LookupError, ImportError, PipelineError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
