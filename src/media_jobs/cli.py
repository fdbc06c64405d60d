import argparse
import asyncio
import signal
import sys

from loguru import logger

from .exceptions import ConflictError, InvalidRequestError
from .log import configure_logging
from .models import Settings, parse_module_list
from .queue.models import JobCommand, JobCommandDto, JobCreateDto, QueueName, WorkerRole
from .runtime import JobsRuntime


def _settings(args) -> Settings:
    settings = Settings.from_env()
    updates = {}
    if getattr(args, "db", None):
        updates["queue_db_path"] = args.db
    if getattr(args, "database_url", None):
        updates["database_url"] = args.database_url
    return settings.model_copy(update=updates)


async def _with_runtime(settings: Settings, fn):
    runtime = JobsRuntime(settings)
    try:
        return await fn(runtime)
    finally:
        await runtime.stop()


async def _run_worker(settings: Settings) -> None:
    runtime = JobsRuntime(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await runtime.start()
    logger.info("Worker running, press Ctrl+C to stop")
    await stop.wait()
    await runtime.stop()


def _print_status(statuses) -> None:
    print("\n" + "=" * 72)
    print("QUEUE STATUS")
    print("=" * 72)
    print(f"{'Queue':<28}{'Active':>8}{'Waiting':>9}{'Paused':>8}{'Failed':>8}{'Done':>9}")
    for name, dto in statuses.items():
        counts = dto.jobCounts
        flag = " (paused)" if dto.queueStatus.isPaused else ""
        print(
            f"{name:<28}{counts.active:>8}{counts.waiting:>9}{counts.paused:>8}"
            f"{counts.failed:>8}{counts.completed:>9}{flag}"
        )
    print("=" * 72)


def main():
    parser = argparse.ArgumentParser(
        prog="media-jobs", description="Media backend job orchestration"
    )
    parser.add_argument("--log-level", type=str, help="Override MEDIA_JOBS_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API (api role)")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run queue consumers (microservices role)")
    worker_parser.add_argument("--db", type=str, help="Queue database path")
    worker_parser.add_argument("--database-url", type=str, help="Asset database URL")
    worker_parser.add_argument(
        "--handlers",
        type=str,
        help="Comma-separated handler modules (overrides MEDIA_JOBS_HANDLERS)",
    )

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--db", type=str, help="Queue database path")
    status_parser.add_argument(
        "--queue", "-q", type=str, choices=[q.value for q in QueueName], help="One queue only"
    )

    # COMMAND
    command_parser = subparsers.add_parser("command", help="Send a command to a queue")
    command_parser.add_argument("queue", type=str, help="Queue name")
    command_parser.add_argument("action", choices=[c.value for c in JobCommand], help="Command")
    command_parser.add_argument(
        "--force", "-f", action="store_true", help="Reprocess everything (start only)"
    )
    command_parser.add_argument("--db", type=str, help="Queue database path")

    # CREATE
    create_parser = subparsers.add_parser("create", help="Queue a manual job")
    create_parser.add_argument("name", type=str, help="Manual job name (e.g. tag-cleanup)")
    create_parser.add_argument("--db", type=str, help="Queue database path")

    # TRASH
    trash_parser = subparsers.add_parser("trash", help="Restore or empty a user's trash")
    trash_parser.add_argument("action", choices=["restore", "empty"], help="Trash operation")
    trash_parser.add_argument("user_id", type=str, help="Owner id")
    trash_parser.add_argument("--database-url", type=str, help="Asset database URL")

    args = parser.parse_args()

    settings = _settings(args)
    configure_logging(args.log_level or settings.log_level)

    try:
        if args.command == "serve":
            import uvicorn

            uvicorn.run("media_jobs.api.main:app", host=args.host, port=args.port)

        elif args.command == "worker":
            update = {"worker_role": WorkerRole.MICROSERVICES}
            if args.handlers:
                update["handler_modules"] = parse_module_list(args.handlers)
            settings = settings.model_copy(update=update)
            asyncio.run(_run_worker(settings))

        elif args.command == "status":
            if args.queue:
                statuses = asyncio.run(
                    _with_runtime(settings, lambda rt: rt.jobs.get_job_status(args.queue))
                )
                _print_status({args.queue: statuses})
            else:
                statuses = asyncio.run(
                    _with_runtime(settings, lambda rt: rt.jobs.get_all_jobs_status())
                )
                _print_status(statuses)

        elif args.command == "command":
            dto = JobCommandDto(command=args.action, force=args.force)
            result = asyncio.run(
                _with_runtime(settings, lambda rt: rt.jobs.handle_command(args.queue, dto))
            )
            _print_status({args.queue: result})

        elif args.command == "create":
            asyncio.run(_with_runtime(settings, lambda rt: rt.jobs.create(JobCreateDto(name=args.name))))
            print(f"✅ Queued {args.name}")

        elif args.command == "trash":
            runtime = JobsRuntime(settings)
            try:
                if args.action == "restore":
                    count = runtime.trash.restore(args.user_id)
                else:
                    count = runtime.trash.empty(args.user_id)
            finally:
                asyncio.run(runtime.stop())
            print(f"✅ {args.action}: {count} asset(s)")

        else:
            parser.print_help()

    except (ConflictError, InvalidRequestError) as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
