#!/usr/bin/env python3
"""
conversion-client v1.0.0 — Main entry point.
Command line front end over the conversion session: submit files, follow
their progress, and reconcile with the remote service's task list.
"""

import sys
import json
import time
import logging
import argparse
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conversion_client.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIR, TERMINAL_STATUSES, TaskStatus,
)
from conversion_client.core.config import AppConfig
from conversion_client.core.session import ConversionSession

LOG_FILE = LOG_DIR / "app.log"
logger = logging.getLogger("conversion-client")


def setup_logging(verbose: bool = False):
    """File log under the app support dir; console only with --verbose."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handlers = [logging.FileHandler(LOG_FILE, encoding="utf-8")]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def load_params(value: str | None) -> dict:
    """Conversion parameters: inline JSON or @path/to/params.json."""
    if not value:
        return {}
    if value.startswith('@'):
        with open(value[1:], 'r') as f:
            return json.load(f)
    return json.loads(value)


def print_view(view):
    local = view.local_id or '-'
    downloaded = 'yes' if view.is_downloaded else 'no'
    print(f"{view.task_id or local:<38} {view.status:<11} {view.progress:>5.1f}%  "
          f"dl={downloaded:<3} {view.file_name}")


def print_snapshot(snapshot):
    line = f"{snapshot.current_task_id[:8]}  {snapshot.state:<15} {snapshot.percent:5.1f}%"
    if snapshot.message:
        line += f"  {snapshot.message}"
    print(line)


# ── Commands ──────────────────────────────────────────────────────────

def cmd_submit(session: ConversionSession, args) -> int:
    params = load_params(args.params)
    if args.follow:
        session.subscribe(print_snapshot)
    outcome = session.submit_and_wait(args.files, params, timeout=args.timeout)
    if outcome is None:
        print("No readable files to submit.")
        return 1
    print(f"Batch {outcome.batch_id}: {len(outcome.mapped)} accepted, "
          f"{len(outcome.failed)} rejected, {len(outcome.unanswered)} left pending")
    if args.follow and outcome.mapped:
        follow(session, args.interval)
    return 0 if not outcome.failed and not outcome.unanswered else 2


def follow(session: ConversionSession, interval: float):
    """Poll the remote list until every known task is terminal."""
    while True:
        views = session.reconcile_now()
        if all(v.status in TERMINAL_STATUSES for v in views):
            break
        time.sleep(interval)


def cmd_list(session: ConversionSession, args) -> int:
    for view in session.list_all():
        print_view(view)
    progress = session.progress
    print(f"{progress.active_count()} active, "
          f"{progress.count_by_status(TaskStatus.PENDING)} pending, "
          f"{progress.count_by_status(TaskStatus.FAILED)} failed")
    return 0


def cmd_refresh(session: ConversionSession, args) -> int:
    for view in session.reconcile_now():
        print_view(view)
    return 0


def cmd_cancel(session: ConversionSession, args) -> int:
    return 0 if session.cancel(args.task_id) else 1


def cmd_delete(session: ConversionSession, args) -> int:
    return 0 if session.delete(args.task_id) else 1


def cmd_retry(session: ConversionSession, args) -> int:
    return 0 if session.retry(args.local_id, wait=True) else 1


def cmd_download(session: ConversionSession, args) -> int:
    session.reconcile_now()
    path = session.download(args.task_id, Path(args.dest) if args.dest else None)
    if path is None:
        return 1
    print(path)
    return 0


def cmd_sweep(session: ConversionSession, args) -> int:
    result = session.sweep()
    if result is None:
        print("A sweep is already running.")
        return 1
    print(f"checked={result.checked} missing={result.missing}")
    return 0


def cmd_resume(session: ConversionSession, args) -> int:
    outcomes = session.resume_pending(timeout=args.timeout)
    for outcome in outcomes:
        print(f"Batch {outcome.batch_id}: {len(outcome.mapped)} accepted, "
              f"{len(outcome.failed)} rejected, {len(outcome.unanswered)} left pending")
    return 0


def cmd_cleanup(session: ConversionSession, args) -> int:
    print(f"Removed {session.cleanup_old(args.days)} task(s)")
    return 0


def cmd_config(config: AppConfig, args) -> int:
    """Print the effective configuration, overrides included."""
    print(json.dumps(config.as_dict(), indent=2, sort_keys=True, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conversion-client", description=APP_NAME)
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to the console too")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--server", help="Override the server URL for this run")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("submit", help="Submit files as one batch")
    p.add_argument("files", nargs="+")
    p.add_argument("--params", help="JSON object, or @file.json")
    p.add_argument("--timeout", type=float)
    p.add_argument("--follow", action="store_true", help="Watch progress until done")
    p.add_argument("--interval", type=float, default=5.0)
    p.set_defaults(func=cmd_submit)

    sub.add_parser("list", help="Show known tasks without contacting the server") \
        .set_defaults(func=cmd_list)
    sub.add_parser("refresh", help="Fetch the remote list and reconcile") \
        .set_defaults(func=cmd_refresh)

    p = sub.add_parser("cancel", help="Cancel a task by its local, current or server id")
    p.add_argument("task_id")
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("delete", help="Delete a task by its local, current or server id")
    p.add_argument("task_id")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("retry", help="Resubmit a failed task")
    p.add_argument("local_id")
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("download", help="Download a completed task's output")
    p.add_argument("task_id")
    p.add_argument("--dest")
    p.set_defaults(func=cmd_download)

    sub.add_parser("sweep", help="Check downloaded outputs still exist") \
        .set_defaults(func=cmd_sweep)

    p = sub.add_parser("resume", help="Resubmit tasks left pending by an earlier run")
    p.add_argument("--timeout", type=float)
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("cleanup", help="Remove completed tasks older than N days")
    p.add_argument("--days", type=int, default=30)
    p.set_defaults(func=cmd_cleanup)

    sub.add_parser("config", help="Show the effective configuration") \
        .set_defaults(func=cmd_config, needs_session=False)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("=" * 60)

    config = AppConfig(args.config)
    if args.server:
        config.override('server_url', args.server)

    if not getattr(args, "needs_session", True):
        return args.func(config, args)

    try:
        with ConversionSession(config) as session:
            return args.func(session, args)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        print(f"Error: {e}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
