import argparse
import sys
import time

from tqdm import tqdm

from . import ffmpeg_runner
from .catalog import InMemoryCatalog, LibraryCatalog
from .config import configure_logging, resolve_config
from .errors import JobBusyError
from .processing import ProcessingService
from .queue.models import JobState


def _cli_overrides(args) -> dict:
    # Convert args to dict, filtering None
    return {k: v for k, v in vars(args).items() if v is not None}


def _load_config(args):
    config = resolve_config(_cli_overrides(args), getattr(args, "config", None))
    configure_logging(config.logging.level)
    return config


def _print_snapshot(snapshot) -> None:
    print(f"Queue:                {snapshot.queue_name}")
    print(f"Queued:               {snapshot.queued}")
    print(f"Active:               {snapshot.active}")
    print(f"Completed:            {snapshot.completed}")
    print(f"Failed:               {snapshot.failed}")
    print(f"Total:                {snapshot.total}")


def _banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def wait_for_queue(service: ProcessingService, queue_name: str, poll_s: float = 1.0) -> None:
    """Block until the queue has no queued or active jobs, with a progress bar."""
    start = service.get_queue_status(queue_name)
    done_at_start = start.completed + start.failed
    with tqdm(total=start.queued + start.active, desc="Detecting segments", unit="episode") as bar:
        while True:
            snapshot = service.get_queue_status(queue_name)
            bar.total = max(bar.total, snapshot.queued + snapshot.active + snapshot.completed + snapshot.failed - done_at_start)
            bar.n = snapshot.completed + snapshot.failed - done_at_start
            bar.set_postfix(failed=snapshot.failed - start.failed)
            bar.refresh()
            if snapshot.is_idle:
                return
            time.sleep(poll_s)


def run_scan(args) -> int:
    config = _load_config(args)
    catalog = LibraryCatalog.from_directory(args.library)

    episodes = catalog.all_episodes()
    if args.show:
        needle = args.show.lower()
        episodes = [e for e in episodes if e.show_name and needle in e.show_name.lower()]
    if args.limit:
        episodes = episodes[: args.limit]

    if not episodes:
        print(f"No tagged episodes found in {args.library}")
        return 1

    service = ProcessingService(config, catalog)
    queue_name = args.queue or config.queue.default_queue
    try:
        stats = service.submit_scan([e.id for e in episodes], queue_name)
        _banner("SCAN SUBMITTED")
        print(f"Episodes found:       {len(episodes)}")
        print(f"Enqueued:             {stats['enqueued']}")
        print(f"Duplicates skipped:   {stats['duplicates']}")

        if args.no_process:
            return 0

        service.start()
        try:
            wait_for_queue(service, queue_name)
        except KeyboardInterrupt:
            print("\nInterrupted, cancelling in-flight jobs...")
        finally:
            service.stop()

        _banner("PROCESSING SUMMARY")
        _print_snapshot(service.get_queue_status(queue_name))
        for job in service.list_jobs(queue_name, JobState.FAILED.value)[-10:]:
            print(f"  job {job.id} (episode {job.episode_id}): {job.error}")
        return 0
    finally:
        service.close()


def run_hardware(args) -> int:
    config = _load_config(args)
    service = ProcessingService(config, InMemoryCatalog())
    try:
        profile = service.run_benchmark() if args.benchmark else service.get_hardware_info()
        budget = service.get_budget()

        _banner("HARDWARE PROFILE")
        print(f"CPU cores:            {profile.cpu_cores}")
        if profile.cpu_benchmark_fps is not None:
            print(f"CPU decode:           {profile.cpu_benchmark_fps} fps")
        if not profile.accelerators:
            print("Accelerators:         none (CPU only)")
        for accel in profile.accelerators:
            line = f"  {accel.kind.value:<13} {accel.name}"
            if accel.benchmark_fps is not None:
                line += f"  {accel.benchmark_fps} fps, scaling x{accel.concurrency_scaling}"
            print(line)
        for error in profile.probe_errors:
            print(f"  ! {error}")
        print(f"Budget:               cpu={budget.cpu} gpu={budget.gpu}")
        return 0
    finally:
        service.close()


def run_queue(args, queue_parser) -> int:
    config = _load_config(args)
    service = ProcessingService(config, InMemoryCatalog())
    queue_name = args.queue or config.queue.default_queue

    try:
        if args.queue_command == "status":
            _banner("QUEUE STATUS")
            for snapshot in service.get_all_queue_status().values():
                _print_snapshot(snapshot)
                print("-" * 60)

        elif args.queue_command == "retry":
            stats = service.retry_failed(queue_name, args.max_attempts)
            print(f"Re-enqueued {stats['enqueued']} failed episode(s); "
                  f"{stats['exhausted']} out of attempts")

        elif args.queue_command == "clear":
            states = [args.state] if args.state else [s.value for s in JobState if s != JobState.ACTIVE]
            ids = [job.id for state in states for job in service.list_jobs(queue_name, state)]
            try:
                result = service.delete_jobs(ids)
            except JobBusyError as e:
                print(f"Refusing to clear: {e}")
                return 1
            print(f"Deleted {result['deleted']} job(s) from {queue_name}")

        else:
            queue_parser.print_help()
        return 0
    finally:
        service.close()


def run_cleanup(args) -> int:
    config = _load_config(args)
    service = ProcessingService(config, InMemoryCatalog())
    try:
        result = service.cleanup_temp_files()
        print(f"Removed {result['removed_count']} temporary entr{'y' if result['removed_count'] == 1 else 'ies'}")
        return 0
    finally:
        service.close()


def run_serve(args) -> int:
    import uvicorn

    from .api.main import create_app

    config = _load_config(args)
    service = ProcessingService(config, LibraryCatalog.from_directory(args.library))
    app = create_app(service)
    uvicorn.run(app, host=args.host or config.api.host, port=args.port or config.api.port)
    service.close()
    return 0


def main():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, help="Config YAML (default: config/local.yaml)")
    common.add_argument("--db", type=str, help="Queue database path")
    common.add_argument("--temp-dir", dest="temp_dir", type=str, help="Scratch directory root")
    common.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    parser = argparse.ArgumentParser(
        prog="cliprr", description="Detect recurring intros and credits across TV episodes"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # HARDWARE
    hw_parser = subparsers.add_parser("hardware", parents=[common], help="Show hardware profile")
    hw_parser.add_argument("--benchmark", action="store_true", help="Run the decode benchmark")
    hw_parser.add_argument("--no-gpu", dest="no_gpu", action="store_true", default=None,
                           help="Ignore GPU accelerators")

    # SCAN
    scan_parser = subparsers.add_parser(
        "scan", parents=[common], help="Scan a library and detect segments"
    )
    scan_parser.add_argument("--library", "-l", type=str, required=True, help="TV library folder")
    scan_parser.add_argument("--show", type=str, help="Only episodes of shows matching this name")
    scan_parser.add_argument("--queue", type=str, help="Queue name (default from config)")
    scan_parser.add_argument("--limit", type=int, help="Max episodes to enqueue")
    scan_parser.add_argument(
        "--no-process", dest="no_process", action="store_true", help="Enqueue only, don't process"
    )
    scan_parser.add_argument("--cpu-workers", dest="cpu_workers", type=int, help="Cap CPU workers")
    scan_parser.add_argument("--gpu-workers", dest="gpu_workers", type=int, help="Cap GPU workers")
    scan_parser.add_argument("--no-gpu", dest="no_gpu", action="store_true", default=None,
                             help="Ignore GPU accelerators")
    scan_parser.add_argument("--threshold", type=float, help="Override similarity threshold")

    # QUEUE subcommands (status, retry, clear)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", parents=[common], help="Show queue status")

    retry_parser = queue_subparsers.add_parser("retry", parents=[common], help="Retry failed jobs")
    retry_parser.add_argument("--queue", type=str, help="Queue name")
    retry_parser.add_argument("--max-attempts", dest="max_attempts", type=int, help="Attempt limit")

    clear_parser = queue_subparsers.add_parser("clear", parents=[common], help="Delete finished jobs")
    clear_parser.add_argument("--queue", type=str, help="Queue name")
    clear_parser.add_argument(
        "--state", choices=["queued", "completed", "failed"], help="Only jobs in this state"
    )

    # CLEANUP
    subparsers.add_parser("cleanup", parents=[common], help="Remove orphaned temp files")

    # SERVE
    serve_parser = subparsers.add_parser("serve", parents=[common], help="Run the HTTP API")
    serve_parser.add_argument("--library", "-l", type=str, required=True, help="TV library folder")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port")

    args = parser.parse_args()

    if args.command == "check":
        print("Checking dependencies...")
        if ffmpeg_runner.check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    elif args.command == "hardware":
        sys.exit(run_hardware(args))

    elif args.command == "scan":
        sys.exit(run_scan(args))

    elif args.command == "queue":
        if not args.queue_command:
            queue_parser.print_help()
            return
        if not hasattr(args, "queue"):
            args.queue = None
        if not hasattr(args, "max_attempts"):
            args.max_attempts = None
        sys.exit(run_queue(args, queue_parser))

    elif args.command == "cleanup":
        sys.exit(run_cleanup(args))

    elif args.command == "serve":
        sys.exit(run_serve(args))

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
