import argparse
import logging
import mimetypes
import sys
from pathlib import Path

import structlog
from tqdm import tqdm

from . import config as config_lib
from . import session
from .queue import EventKind, JobStatus, QueueEvent, QueueManager, RefImage


def configure_logging(verbose: bool = False) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _load_ref_images(paths):
    images = []
    for p in paths or []:
        mime, _ = mimetypes.guess_type(p)
        images.append(RefImage.from_bytes(Path(p).read_bytes(), mime_type=mime or "image/png"))
    return images


def _print_status(manager: QueueManager) -> None:
    stats = manager.get_stats()
    eta = manager.get_eta()
    state = "paused" if stats.is_paused else ("running" if stats.is_running else "idle")
    eta_text = eta.text + (" (low confidence)" if eta.low_confidence else "")
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"State:                {state}")
    print(f"Pending:              {stats.pending}")
    print(f"In Progress:          {stats.in_progress}")
    print(f"Completed:            {stats.completed}")
    print(f"Failed:               {stats.failed}")
    print(f"Cancelled/Skipped:    {stats.cancelled}")
    print(f"Total:                {stats.total}")
    print(f"Delay between jobs:   {stats.delay_between_ms}ms")
    print(f"Estimated remaining:  {eta_text}")
    print("=" * 60)


def _print_jobs(manager: QueueManager) -> None:
    for job in manager.get_state().jobs:
        status = JobStatus(job.status).value
        line = (
            f"{job.id}  {status:<10}  v{job.variation_index + 1}/{job.total_variations}  "
            f"{job.prompt[:50]}"
        )
        if job.error:
            line += f"  [{job.error}]"
        if job.output_ref:
            line += f"  -> {job.output_ref}"
        print(line)


def _run(manager: QueueManager) -> int:
    stats = manager.get_stats()
    bar = tqdm(total=stats.pending + stats.in_progress, desc="Generating images", unit="image")

    def on_event(event: QueueEvent) -> None:
        if event.kind in (EventKind.JOB_COMPLETED, EventKind.JOB_FAILED):
            bar.update(1)
            bar.set_postfix(eta=manager.get_eta().text, delay=f"{event.stats.delay_between_ms}ms")
        elif event.kind in (
            EventKind.RATE_LIMITED,
            EventKind.LIMIT_REACHED,
            EventKind.QUEUE_COMPLETE,
            EventKind.NOTICE,
        ):
            bar.write(event.message or event.kind.value)

    unsubscribe = manager.subscribe(on_event)
    try:
        if not manager.start():
            return 0
        try:
            while not manager.wait(0.5):
                pass
        except KeyboardInterrupt:
            bar.write("Pausing after the current image (Ctrl-C again to cancel)...")
            manager.pause()
            try:
                manager.wait()
            except KeyboardInterrupt:
                manager.cancel()
                manager.wait(5)
    finally:
        unsubscribe()
        bar.close()

    stats = manager.get_stats()
    print("\n" + "=" * 60)
    print("RUN SUMMARY")
    print("=" * 60)
    print(f"Completed:            {stats.completed}")
    print(f"Failed:               {stats.failed}")
    print(f"Still pending:        {stats.pending}")
    print("=" * 60)
    return 1 if stats.failed else 0


def main():
    parser = argparse.ArgumentParser(
        prog="imagebatch", description="Batch image generation queue"
    )
    parser.add_argument("--db", type=str, default="queue.db", help="Queue database path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Add prompts from a file to the queue")
    enqueue_parser.add_argument("prompts_file", type=str, help="Text file, one prompt per line")
    enqueue_parser.add_argument(
        "--variations", "-n", type=int, default=1, help="Variations per prompt"
    )
    enqueue_parser.add_argument("--batch-name", type=str, help="Output filename prefix")
    enqueue_parser.add_argument("--ref", action="append", help="Reference image (repeatable)")
    enqueue_parser.add_argument("--model", type=str, help="Override model")
    enqueue_parser.add_argument("--ratio", type=str, help="Aspect ratio, e.g. 16:9")
    enqueue_parser.add_argument("--resolution", choices=["1K", "2K", "4K"], help="Image size")
    enqueue_parser.add_argument("--thinking-budget", type=int, help="-1 auto, 0 off")
    enqueue_parser.add_argument(
        "--search", action="store_true", default=None, help="Enable search grounding"
    )

    # RUN
    run_parser = subparsers.add_parser("run", help="Process pending jobs (resumes a paused run)")
    run_parser.add_argument("--output", "-o", type=str, help="Output directory")
    run_parser.add_argument("--delay-ms", type=int, help="Delay between jobs")

    # QUEUE subcommands
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", help="Show queue status")
    queue_subparsers.add_parser("list", help="List jobs")

    retry_parser = queue_subparsers.add_parser("retry", help="Retry failed/cancelled jobs")
    retry_parser.add_argument("job_id", nargs="?", help="Job to retry (default: all failed)")

    skip_parser = queue_subparsers.add_parser("skip", help="Skip a pending job")
    skip_parser.add_argument("job_id")

    remove_parser = queue_subparsers.add_parser("remove", help="Remove a pending job")
    remove_parser.add_argument("job_id")

    clear_parser = queue_subparsers.add_parser("clear", help="Clear queue and reference images")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm irreversible clear")

    delay_parser = queue_subparsers.add_parser("set-delay", help="Set delay between jobs")
    delay_parser.add_argument("ms", type=int)

    queue_subparsers.add_parser("reset-delay", help="Undo rate-limit backoff")

    override_parser = queue_subparsers.add_parser(
        "override", help="Change settings of all pending jobs"
    )
    override_parser.add_argument("--model", type=str)
    override_parser.add_argument("--ratio", type=str)
    override_parser.add_argument("--resolution", choices=["1K", "2K", "4K"])
    override_parser.add_argument("--thinking-budget", type=int)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    configure_logging(args.verbose)
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    app_config = config_lib.resolve_config(cli_dict)
    manager = session.open_queue(args.db, app_config)

    if args.command == "enqueue":
        prompts = session.read_prompts_file(args.prompts_file)
        jobs = manager.enqueue(
            prompts,
            args.variations,
            app_config.generation,
            ref_images=_load_ref_images(args.ref),
            batch_name=args.batch_name,
        )
        print(f"Enqueued {len(jobs)} jobs ({len(prompts)} prompts x {args.variations})")

    elif args.command == "run":
        if args.delay_ms is not None:
            manager.set_delay(args.delay_ms)
        sys.exit(_run(manager))

    elif args.command == "queue":
        if args.queue_command == "status":
            _print_status(manager)

        elif args.queue_command == "list":
            _print_jobs(manager)

        elif args.queue_command == "retry":
            if args.job_id:
                ok = manager.retry(args.job_id, autostart=False)
                print("Job re-queued" if ok else "Job is not failed or cancelled")
            else:
                count = manager.retry_failed(autostart=False)
                print(f"Re-queued {count} failed jobs")

        elif args.queue_command == "skip":
            print("Job skipped" if manager.skip(args.job_id) else "Only pending jobs can be skipped")

        elif args.queue_command == "remove":
            ok = manager.remove(args.job_id)
            print("Job removed" if ok else "Only pending jobs can be removed")

        elif args.queue_command == "clear":
            if not args.yes:
                print("Refusing to clear without --yes (this deletes all jobs and references)")
                sys.exit(1)
            manager.clear()
            print("Queue cleared")

        elif args.queue_command == "set-delay":
            manager.set_delay(args.ms)
            print(f"Delay set to {manager.get_stats().delay_between_ms}ms")

        elif args.queue_command == "reset-delay":
            manager.reset_delay()
            print(f"Delay reset to {manager.get_stats().delay_between_ms}ms")

        elif args.queue_command == "override":
            overrides = {}
            if args.model is not None:
                overrides["model"] = args.model
            if args.ratio is not None:
                overrides["aspect_ratio"] = args.ratio
            if args.resolution is not None:
                overrides["resolution"] = args.resolution
            if args.thinking_budget is not None:
                overrides["thinking_budget"] = args.thinking_budget
            if not overrides:
                print("Nothing to override")
                return
            count = manager.apply_config_override(overrides)
            print(f"Updated {count} pending jobs")

        else:
            queue_parser.print_help()


if __name__ == "__main__":
    main()
