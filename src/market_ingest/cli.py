"""Command line interface for the market ingest project."""

from __future__ import annotations

import argparse
import logging
import time
from datetime import timedelta

from .db import PROC_TYPE_NAMES, init_db
from .errors import IngestError
from .jobs import ConflictPolicy, JobOrchestrator, JobRecord
from .pipeline import run_job
from .scheduler import start_scheduler, stop_scheduler


def _parse_symbols(value: str | None) -> list[str] | None:
    if value is None:
        return None
    symbols = [item.strip().upper() for item in value.split(",") if item.strip()]
    return symbols or None


def _configure_logging(level: str | None) -> None:
    if level is None:
        return
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _format_job(job: JobRecord) -> str:
    ended = job.ended_at.isoformat(sep=" ", timespec="seconds") if job.ended_at else "-"
    counts = "-"
    if job.inserted is not None:
        counts = f"+{job.inserted} ~{job.updated} ={job.skipped} !{job.failed}"
    line = (
        f"{job.spid:>6}  {job.proc_type:<22} {job.state.value:<8} "
        f"{job.started_at.isoformat(sep=' ', timespec='seconds')}  {ended:<19}  {counts}"
    )
    if job.note:
        line += f"  ({job.note})"
    return line


def _add_log_level(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--log-level", default="INFO", help="Log level, e.g. INFO or DEBUG")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Alpha Vantage ingestion utilities")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create tables and seed reference rows")
    _add_log_level(init_parser)

    run_parser = subparsers.add_parser("run", help="Run one load job")
    run_parser.add_argument("proc_type", choices=PROC_TYPE_NAMES, help="Job to run")
    run_parser.add_argument("--symbols", help="Restrict the job to these tickers (comma separated)", default=None)
    run_parser.add_argument(
        "--on-conflict",
        choices=[policy.value for policy in ConflictPolicy],
        default=ConflictPolicy.RAISE.value,
        help="What to do when the same job is already running",
    )
    run_parser.add_argument("--workers", type=int, default=None, help="Override the worker count")
    run_parser.add_argument(
        "--wait-timeout",
        type=float,
        default=None,
        help="Seconds to wait for a running job when --on-conflict=wait",
    )
    _add_log_level(run_parser)

    recover_parser = subparsers.add_parser("recover", help="Close jobs abandoned by a crashed process")
    recover_parser.add_argument("--proc-type", choices=PROC_TYPE_NAMES, default=None)
    recover_parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=None,
        help="Only close runs started this long ago (default STALE_JOB_MINUTES)",
    )
    _add_log_level(recover_parser)

    jobs_parser = subparsers.add_parser("jobs", help="List recent job runs")
    jobs_parser.add_argument("--limit", type=int, default=20, help="Number of runs to show")
    jobs_parser.add_argument("--proc-type", choices=PROC_TYPE_NAMES, default=None)
    jobs_parser.add_argument("--active", action="store_true", help="Only show running jobs")
    _add_log_level(jobs_parser)

    scheduler_parser = subparsers.add_parser("scheduler", help="Start the recurring scheduler")
    _add_log_level(scheduler_parser)

    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if args.command == "init-db":
        init_db()
        print("Database initialised")
        return 0

    if args.command == "run":
        try:
            stats = run_job(
                args.proc_type,
                symbols=_parse_symbols(args.symbols),
                on_conflict=args.on_conflict,
                workers=args.workers,
                wait_timeout=args.wait_timeout,
            )
        except IngestError as exc:
            print(f"{args.proc_type} failed: {exc}")
            return 1
        if stats is None:
            print(f"{args.proc_type} skipped: another run is still active")
            return 0
        print(
            "Job {spid}: targets={targets}, inserted={inserted}, updated={updated}, "
            "skipped={skipped}, failed={failed}, transient={transient_failures}".format(**stats)
        )
        return 0

    if args.command == "recover":
        init_db()
        older_than = None
        if args.older_than_minutes is not None:
            older_than = timedelta(minutes=args.older_than_minutes)
        closed = JobOrchestrator().recover_stale(args.proc_type, older_than=older_than)
        print(f"Recovered {len(closed)} job(s)")
        return 0

    if args.command == "jobs":
        init_db()
        orchestrator = JobOrchestrator()
        if args.active:
            jobs = orchestrator.list_active(args.proc_type)
        else:
            jobs = orchestrator.list_recent(limit=args.limit, proc_type=args.proc_type)
        for job in jobs:
            print(_format_job(job))
        return 0

    if args.command == "scheduler":
        start_scheduler()
        print("Scheduler started. Press Ctrl+C to stop.")
        try:
            while True:
                time.sleep(60)
        except KeyboardInterrupt:
            print("Stopping scheduler...")
            stop_scheduler()
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
