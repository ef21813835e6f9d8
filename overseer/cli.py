"""
Command line entry point: validate, preview, run and daemon.
"""

from __future__ import annotations

import argparse
import logging
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from overseer.config import DEFAULT_CONFIG, DEFAULT_ENV_FILE, EngineConfig, load_environment, parse_config
from overseer.errors import OverseerError
from overseer.jobs import CATALOG
from overseer.logs import LOG_FILE, close_logging, setup_logging
from overseer.registry import RegisteredJob, register_jobs
from overseer.scheduler import DEFAULT_POLL_SECONDS, DEFAULT_SHUTDOWN_TIMEOUT_SECONDS, Scheduler
from overseer.triggers import next_fire_times

UTC = timezone.utc
DEFAULT_PREVIEW_COUNT = 5


def load_jobs(
    config_path: Path,
    logger: logging.Logger,
    include_disabled: bool = False,
) -> Tuple[EngineConfig, List[RegisteredJob]]:
    config = parse_config(config_path)
    registered = register_jobs(config.jobs, CATALOG, logger, include_disabled=include_disabled)
    return config, registered


def filter_jobs(registered: List[RegisteredJob], job_name: Optional[str]) -> List[RegisteredJob]:
    if job_name:
        registered = [job for job in registered if job.name == job_name]
        if not registered:
            raise OverseerError(f'Unknown or unschedulable job "{job_name}".')
    if not registered:
        raise OverseerError("No runnable jobs selected.")
    return registered


def command_validate(config_path: Path, logger: logging.Logger) -> int:
    config, registered = load_jobs(config_path, logger, include_disabled=True)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(config.jobs)}")
    print(f"Registered jobs: {len(registered)}")
    names = {job.name for job in registered}
    for definition in config.jobs:
        status = "ok" if definition.name in names else "skipped"
        state = "enabled" if definition.enabled else "disabled"
        print(f"- {definition.name}: {definition.schedule} ({state}, {status})")
    return 0 if len(registered) == len(config.jobs) else 1


def command_preview(config_path: Path, job_name: Optional[str], count: int, logger: logging.Logger) -> int:
    _, registered = load_jobs(config_path, logger, include_disabled=True)
    selected = filter_jobs(registered, job_name)
    now_utc = datetime.now(tz=UTC)

    for job in selected:
        definition = job.definition
        print("=" * 80)
        print(f"Job: {definition.name} (enabled={definition.enabled})")
        print(f"Schedule: {definition.schedule} ({definition.timezone_name})")
        print(f"Overlap: {definition.overlap}")
        retry = definition.retry
        timeout_text = f"{retry.attempt_timeout:g}s" if retry.attempt_timeout else "none"
        print(
            f"Retry: max_attempts={retry.max_attempts} delay={retry.delay_seconds:g}s "
            f"attempt_timeout={timeout_text}"
        )
        print(f"Next {count} run(s):")
        for run_dt in next_fire_times(definition.schedule, count, now_utc, definition.timezone):
            print(f"- {run_dt.astimezone(definition.timezone).isoformat()}")
    print("=" * 80)
    return 0


def command_run(config_path: Path, job_name: Optional[str], logger: logging.Logger) -> int:
    _, registered = load_jobs(config_path, logger)
    selected = filter_jobs(registered, job_name)
    scheduler = Scheduler(selected, logger=logger)
    results = scheduler.run_once()
    return 0 if all(result.success for result in results) else 1


def command_daemon(
    config_path: Path,
    poll_seconds: float,
    shutdown_timeout: float,
    logger: logging.Logger,
) -> int:
    _, registered = load_jobs(config_path, logger)
    scheduler = Scheduler(filter_jobs(registered, None), logger=logger)

    def handle_term(signum: int, _frame: object) -> None:
        logger.info("Received signal %s; stopping scheduler.", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, handle_term)
    try:
        scheduler.run_forever(poll_seconds)
        return 0
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        scheduler.shutdown(shutdown_timeout)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="overseer cron job runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to job YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--env-file",
        help=f"Path to a dotenv file (default: {DEFAULT_ENV_FILE} next to the config)",
    )
    parser.add_argument("--log-file", default=LOG_FILE, help=f"Log file path (default: {LOG_FILE})")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and register jobs")
    validate_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming fire times")
    preview_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run jobs once, now")
    run_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")
    run_parser.add_argument("--job", help="Run one job by name")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler loop")
    daemon_parser.add_argument("--config", help=f"Path to config (default: {DEFAULT_CONFIG})")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=float,
        default=DEFAULT_POLL_SECONDS,
        help=f"Maximum wait between trigger checks (default: {DEFAULT_POLL_SECONDS})",
    )
    daemon_parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        help=f"Seconds to wait for running jobs on exit (default: {DEFAULT_SHUTDOWN_TIMEOUT_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()
    logger = setup_logging(args.log_file or None, args.log_level.upper())

    try:
        env_file = Path(args.env_file) if args.env_file else config_path.parent / DEFAULT_ENV_FILE
        if load_environment(env_file):
            logger.info("Loaded environment from %s", env_file)
        if args.command == "validate":
            return command_validate(config_path, logger)
        if args.command == "preview":
            if args.count <= 0:
                raise OverseerError("--count must be >= 1")
            return command_preview(config_path, job_name=args.job, count=args.count, logger=logger)
        if args.command == "run":
            return command_run(config_path, job_name=args.job, logger=logger)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise OverseerError("--poll-seconds must be > 0")
            return command_daemon(config_path, args.poll_seconds, args.shutdown_timeout, logger)
        raise OverseerError(f"Unsupported command: {args.command}")
    except OverseerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1
    finally:
        close_logging(logger)


if __name__ == "__main__":
    raise SystemExit(main())
