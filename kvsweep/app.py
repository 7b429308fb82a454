import argparse
import json
from pathlib import Path

from .env import load_env

from . import __version__
from .config import MaintenanceConfig
from .errors import TransientIOError
from .logger import get_logger
from .scheduler import run_cycle_step, run_until_complete
from .sink import build_sink
from .status import get_maintenance_status, purge_prefix, sweep_unkept
from .store import SqliteKeyedStore


def _open(args: argparse.Namespace):
    config = MaintenanceConfig.from_env()
    if getattr(args, "db", None):
        config.db_path = Path(args.db)
    if getattr(args, "archive_dir", None):
        config.archive_dir = Path(args.archive_dir)
    if getattr(args, "budget_ms", None) is not None:
        config.max_execution_ms = args.budget_ms
    return config, SqliteKeyedStore(config.db_path)


def cmd_step(args: argparse.Namespace) -> None:
    config, store = _open(args)
    try:
        result = run_cycle_step(store, build_sink(config), config)
    except TransientIOError as e:
        raise SystemExit(f"Step aborted, checkpoint unchanged: {e}")
    if result.completed:
        print(f"Cycle complete. total_processed={result.processed}")
    else:
        print(f"Phase: {result.phase.value}")
        print(f"Processed in phase: {result.processed}")


def cmd_run(args: argparse.Namespace) -> None:
    config, store = _open(args)
    try:
        invocations = run_until_complete(store, build_sink(config), config, max_invocations=args.max_invocations)
    except TransientIOError as e:
        raise SystemExit(f"Run aborted, checkpoint unchanged: {e}")
    except RuntimeError as e:
        raise SystemExit(str(e))
    print(f"Cycle complete after {invocations} invocations.")
    get_logger().log_metrics_summary()


def cmd_status(args: argparse.Namespace) -> None:
    config, store = _open(args)
    print(json.dumps(get_maintenance_status(store, config), indent=2))


def cmd_purge(args: argparse.Namespace) -> None:
    _, store = _open(args)
    outcome = purge_prefix(store, args.prefix, args.pattern)
    if not outcome.success:
        raise SystemExit(outcome.error)
    print(f"Deleted: {outcome.deleted}")


def cmd_sweep_unkept(args: argparse.Namespace) -> None:
    config, store = _open(args)
    keep = config.keep_prefixes + (args.keep or [])
    result = sweep_unkept(store, keep)
    print(f"Processed: {result.processed}")
    print(f"Deleted: {result.deleted}")
    print(f"Kept prefixes: {', '.join(result.kept_prefixes)}")
    print(f"Cleaned prefixes: {', '.join(result.cleaned_prefixes)}")
    if result.failed:
        raise SystemExit(f"{result.failed} keys could not be deleted")


def main(argv=None):
    # Load .env if present (GITHUB_TOKEN, KVSWEEP_DB_PATH, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="kvsweep", description="Incremental keyed-store maintenance")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    stp = subparsers.add_parser("step", help="Run one time-boxed maintenance invocation")
    stp.add_argument("--db", help="Path to SQLite store (default: $KVSWEEP_DB_PATH or data/store.db)")
    stp.add_argument("--archive-dir", help="Write archives to this directory instead of GitHub")
    stp.add_argument("--budget-ms", type=float, help="Time budget in milliseconds (default 8)")
    stp.set_defaults(func=cmd_step)

    run = subparsers.add_parser("run", help="Run invocations back to back until the cycle completes")
    run.add_argument("--db", help="Path to SQLite store")
    run.add_argument("--archive-dir", help="Write archives to this directory instead of GitHub")
    run.add_argument("--budget-ms", type=float, help="Time budget in milliseconds per invocation")
    run.add_argument("--max-invocations", type=int, default=10000, help="Give up after this many invocations")
    run.set_defaults(func=cmd_run)

    sts = subparsers.add_parser("status", help="Show key counts, checkpoint and last completion")
    sts.add_argument("--db", help="Path to SQLite store")
    sts.set_defaults(func=cmd_status)

    prg = subparsers.add_parser("purge", help="Delete keys under a prefix, optionally filtered by regex")
    prg.add_argument("--db", help="Path to SQLite store")
    prg.add_argument("--prefix", required=True, help="Key prefix, e.g. captcha:")
    prg.add_argument("--pattern", help="Only delete keys matching this regular expression")
    prg.set_defaults(func=cmd_purge)

    swp = subparsers.add_parser("sweep-unkept", help="Delete every key outside the keep-prefix list")
    swp.add_argument("--db", help="Path to SQLite store")
    swp.add_argument("--keep", action="append", metavar="PREFIX", help="Also keep keys under this prefix (repeatable)")
    swp.set_defaults(func=cmd_sweep_unkept)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        args.func(args)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
