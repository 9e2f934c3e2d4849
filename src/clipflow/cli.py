import argparse
import sys
import threading

from . import config as config_module
from .queue import (
    JobStatus,
    QueueError,
    SQLiteJobQueue,
    WorkerPoolManager,
    default_registry,
)


def _load(args):
    """Resolve config for a command and open the queue."""
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    cfg = config_module.resolve_config(cli_dict, config_path=getattr(args, "config", None))
    config_module.configure_logging(cfg)
    return cfg, SQLiteJobQueue.from_config(cfg)


def _build_pool(cfg, queue):
    registry = default_registry(cfg.handlers)
    return WorkerPoolManager.from_config(queue, registry, cfg)


def _print_job(job):
    print(f"Job:        {job.id}")
    print(f"Title:      {job.title}")
    print(f"Status:     {job.status.value}")
    print(f"Stage:      {job.current_stage.value}")
    print(f"Progress:   {job.progress_percentage}%")
    print(f"Priority:   {job.priority.value}")
    print(f"Retries:    {job.retry_count}")
    if job.last_error:
        print(f"Last error: {job.last_error}")


def cmd_serve(args):
    import uvicorn

    from .api.main import create_app

    cfg, queue = _load(args)
    if args.no_workers:
        cfg.api.start_workers = False
    app = create_app(queue, _build_pool(cfg, queue), cfg)
    uvicorn.run(app, host=cfg.api.host, port=cfg.api.port)


def cmd_workers(args, parser):
    if args.workers_command != "run":
        parser.print_help()
        return

    cfg, queue = _load(args)
    pool = _build_pool(cfg, queue)
    counts = {args.stage: args.count} if args.stage else None
    started = pool.start(counts)
    print(f"Started {len(started)} worker(s): {', '.join(started)}")

    done = threading.Event()
    try:
        done.wait(args.max_runtime)
    except KeyboardInterrupt:
        print("\nStopping workers (waiting for in-flight items)...")
    finally:
        pool.stop()
        queue.close()


def cmd_jobs(args, parser):
    if args.jobs_command is None:
        parser.print_help()
        return

    _, queue = _load(args)

    if args.jobs_command == "create":
        job = queue.create_job(
            {
                "title": args.title,
                "description": args.description,
                "owner_id": args.owner,
                "priority": args.priority,
                "initial_stage": None if args.no_enqueue else args.stage,
            }
        )
        print(f"Created job {job.id} ({job.status.value}, stage {job.current_stage.value})")

    elif args.jobs_command == "list":
        if args.owner:
            jobs = queue.get_user_jobs(args.owner, limit=args.limit, status=args.status)
        else:
            jobs = queue.list_jobs(status=args.status, limit=args.limit)
        if not jobs:
            print("No jobs.")
        for job in jobs:
            print(
                f"{job.id}  {job.status.value:<10}  {job.current_stage.value:<17}  "
                f"{job.progress_percentage:>3}%  {job.title}"
            )

    elif args.jobs_command == "show":
        job = queue.get_job(args.job_id)
        if job is None:
            print(f"Job not found: {args.job_id}")
            sys.exit(1)
        _print_job(job)
        items = queue.get_job_items(job.id)
        if items:
            print("\nItems:")
            for item in items:
                holder = f" ({item.worker_id})" if item.worker_id else ""
                print(
                    f"  {item.stage.value:<17}  {item.status.value:<8}  "
                    f"attempts {item.attempts}/{item.max_attempts}{holder}"
                )

    elif args.jobs_command == "cancel":
        job = queue.cancel_job(args.job_id)
        print(f"Job {job.id} {job.status.value}")

    elif args.jobs_command == "retry":
        item = queue.retry_job(args.job_id, stage=args.stage)
        print(f"Job {args.job_id} queued for retry at stage {item.stage.value}")

    elif args.jobs_command == "logs":
        entries = queue.get_job_logs(args.job_id, limit=args.limit, level=args.level)
        # Stored newest first; print chronologically
        for entry in reversed(entries):
            worker = f" [{entry.worker_id}]" if entry.worker_id else ""
            print(
                f"{entry.timestamp.isoformat()}  {entry.level.value.upper():<5}  "
                f"{entry.stage.value:<17}{worker}  {entry.message}"
            )


def cmd_queue(args, parser):
    if args.queue_command is None:
        parser.print_help()
        return

    cfg, queue = _load(args)

    if args.queue_command == "status":
        stats = queue.get_queue_stats()
        print("\n" + "=" * 60)
        print("QUEUE STATUS")
        print("=" * 60)
        print(f"{'Stage':<20}{'Waiting':>9}{'Claimed':>9}{'Done':>9}{'Failed':>9}")
        for stage in stats.stages:
            counts = stats.by_stage[stage]
            print(
                f"{stage:<20}{counts.waiting:>9}{counts.claimed:>9}{counts.done:>9}{counts.failed:>9}"
            )
        print("-" * 60)
        print(f"Active items:         {stats.total_active}")
        print(f"Claimed:              {stats.claimed}")
        print(f"Pending retry:        {stats.pending_retry}")
        print(f"Expired claims:       {stats.expired_claims}")
        print("Jobs:                 " + ", ".join(
            f"{s.value} {stats.jobs_by_status.get(s.value, 0)}" for s in JobStatus
        ))
        print("=" * 60)

    elif args.queue_command == "recover":
        if args.job:
            released = queue.recover_job(args.job)
            if released:
                print(f"Recovered job {args.job} ({released} item(s))")
            else:
                print(f"Job {args.job} was not stuck")
        else:
            minutes = args.stuck_minutes if args.stuck_minutes is not None else cfg.workers.stuck_minutes
            count = queue.recover_stuck_jobs(minutes)
            print(f"Recovered {count} stuck item(s)")

    elif args.queue_command == "cleanup":
        deleted = queue.cleanup_old_jobs(args.days)
        print(f"Deleted {deleted} job(s) older than {args.days} day(s)")


def main():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", type=str, help="Queue database path (overrides config)")
    common.add_argument("--config", type=str, help="YAML config file (replaces config/local.yaml)")
    common.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )

    parser = argparse.ArgumentParser(
        prog="clipflow", description="Video pipeline job queue and worker pool"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", parents=[common], help="Run the admin HTTP API")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument(
        "--no-workers", action="store_true", help="Do not start the worker pool with the server"
    )

    # WORKERS
    workers_parser = subparsers.add_parser("workers", help="Run stage workers")
    workers_subparsers = workers_parser.add_subparsers(dest="workers_command", help="Worker commands")
    run_parser = workers_subparsers.add_parser("run", parents=[common], help="Run the worker pool")
    run_parser.add_argument("--stage", type=str, help="Only run workers for this stage")
    run_parser.add_argument("--count", type=int, default=1, help="Workers for --stage")
    run_parser.add_argument("--poll-interval", type=float, help="Idle poll interval (s)")
    run_parser.add_argument("--lease-seconds", type=float, help="Claim lease (s)")
    run_parser.add_argument(
        "--max-runtime", type=float, help="Stop after this many seconds (default: run until Ctrl+C)"
    )

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", help="Manage jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", help="Job commands")

    create_parser = jobs_subparsers.add_parser("create", parents=[common], help="Create a job")
    create_parser.add_argument("--title", "-t", type=str, required=True, help="Job title")
    create_parser.add_argument("--description", type=str, help="Job description")
    create_parser.add_argument("--owner", type=str, help="Owner ID")
    create_parser.add_argument(
        "--priority", choices=["low", "normal", "high"], default="normal", help="Dispatch priority"
    )
    create_parser.add_argument("--stage", type=str, default="upload", help="First stage to enqueue")
    create_parser.add_argument(
        "--no-enqueue", action="store_true", help="Create the job without enqueueing it"
    )

    list_parser = jobs_subparsers.add_parser("list", parents=[common], help="List jobs")
    list_parser.add_argument("--status", type=str, help="Filter by status")
    list_parser.add_argument("--owner", type=str, help="Filter by owner")
    list_parser.add_argument("--limit", type=int, default=50, help="Max jobs to show")

    show_parser = jobs_subparsers.add_parser("show", parents=[common], help="Show one job")
    show_parser.add_argument("job_id", type=str)

    cancel_parser = jobs_subparsers.add_parser("cancel", parents=[common], help="Cancel a job")
    cancel_parser.add_argument("job_id", type=str)

    retry_parser = jobs_subparsers.add_parser(
        "retry", parents=[common], help="Retry a failed or cancelled job"
    )
    retry_parser.add_argument("job_id", type=str)
    retry_parser.add_argument("--stage", type=str, help="Stage to restart from")

    logs_parser = jobs_subparsers.add_parser("logs", parents=[common], help="Show a job's log")
    logs_parser.add_argument("job_id", type=str)
    logs_parser.add_argument("--limit", type=int, default=100, help="Max entries")
    logs_parser.add_argument("--level", choices=["info", "warn", "error"], help="Filter by level")

    # QUEUE
    queue_parser = subparsers.add_parser("queue", help="Inspect and maintain the queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", parents=[common], help="Show queue status")

    recover_parser = queue_subparsers.add_parser(
        "recover", parents=[common], help="Release stuck claims"
    )
    recover_parser.add_argument("--job", type=str, help="Recover a single job")
    recover_parser.add_argument("--stuck-minutes", type=float, help="Staleness threshold")

    cleanup_parser = queue_subparsers.add_parser(
        "cleanup", parents=[common], help="Delete old finished jobs"
    )
    cleanup_parser.add_argument("--days", type=float, default=7, help="Age threshold in days")

    args = parser.parse_args()

    try:
        if args.command == "serve":
            cmd_serve(args)
        elif args.command == "workers":
            cmd_workers(args, workers_parser)
        elif args.command == "jobs":
            cmd_jobs(args, jobs_parser)
        elif args.command == "queue":
            cmd_queue(args, queue_parser)
        else:
            parser.print_help()
    except QueueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
