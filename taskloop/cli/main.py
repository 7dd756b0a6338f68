"""
CLI_MAIN
========

Command-line interface for taskloop.

Global Flags:
    --config PATH       Config file (default: TASKLOOP_CONFIG or data/CONFIG/config.json)
    --log-level LEVEL   Override the configured log level
    --log-file PATH     Log file ("none" disables file logging)

Commands:
    stats               Show processed-execution counts
    cleanup             Delete old processed-execution claims
    config              Print the effective configuration
    process-tasks       Run one scheduler tick over on-disk stores (or keep watching)
    serve               Start the admin API server

Usage:
    python -m taskloop.cli stats
    python -m taskloop.cli stats --store acme
    python -m taskloop.cli cleanup --days 7
    python -m taskloop.cli process-tasks --stores-dir ./stores --provider stub
    python -m taskloop.cli process-tasks --stores-dir ./stores --watch --interval 60
    python -m taskloop.cli serve --port 8400
"""

import argparse
import json
import logging
import sys
import time
from typing import Dict, List, Optional

from .. import __version__
from ..config.loader import GlobalConfig, get_config_manager
from ..errors import TaskLoopError
from ..logging_config import setup_logging
from ..monitor import ResourceMonitor
from ..providers.factory import PROVIDER_KINDS, create_provider
from ..scheduler.scheduler import TaskScheduler
from ..scheduler.tracker import ProcessedExecutionTracker
from ..store import JsonFileStore

logger = logging.getLogger(__name__)


# ============================================================================
# CLI COMMANDS
# ============================================================================

def cli_stats(config: GlobalConfig, store_id: Optional[str] = None) -> dict:
    """Processed-execution counts, overall or for one store."""
    with ProcessedExecutionTracker(config.scheduler.data_path) as tracker:
        stats = tracker.get_stats(store_id)
        stats["database"] = str(tracker.db_path)
    return stats


def cli_cleanup(config: GlobalConfig, max_age_days: Optional[float] = None) -> dict:
    if max_age_days is None:
        max_age_days = config.scheduler.cleanup_max_age_days
    with ProcessedExecutionTracker(config.scheduler.data_path) as tracker:
        deleted = tracker.cleanup(max_age_days)
    return {"deleted": deleted, "max_age_days": max_age_days}


def cli_config(config: GlobalConfig) -> dict:
    return config.to_dict()


def _select_stores(stores_dir: str, store_ids: Optional[List[str]]) -> Dict[str, JsonFileStore]:
    stores = JsonFileStore.discover(stores_dir)
    if store_ids:
        missing = [s for s in store_ids if s not in stores]
        if missing:
            raise TaskLoopError(f"Unknown store(s) in {stores_dir}: {', '.join(missing)}")
        stores = {s: stores[s] for s in store_ids}
    return stores


def cli_process_tasks(
    config: GlobalConfig,
    stores_dir: str,
    store_ids: Optional[List[str]] = None,
    provider_kind: Optional[str] = None,
) -> dict:
    """
    Run one scheduler tick over every store under ``stores_dir``.

    Returns:
        Dict of store id to tick result dict
    """
    stores = _select_stores(stores_dir, store_ids)
    if not stores:
        return {}

    monitor = ResourceMonitor(config.resources, start_background=False)
    try:
        with TaskScheduler(create_provider(provider_kind), resource_monitor=monitor, config=config) as scheduler:
            results = scheduler.process_stores(stores)
    finally:
        monitor.destroy()
    return {store_id: tick.to_dict() for store_id, tick in results.items()}


def cli_watch_tasks(
    config: GlobalConfig,
    stores_dir: str,
    store_ids: Optional[List[str]] = None,
    provider_kind: Optional[str] = None,
    interval: float = 60.0,
) -> None:
    """Keep ticking until interrupted; new store directories are picked up each tick."""
    monitor = ResourceMonitor(config.resources)
    scheduler = TaskScheduler(create_provider(provider_kind), resource_monitor=monitor, config=config)

    print(f"\nScheduler watching {stores_dir} every {interval:g}s")
    print("Press Ctrl+C to stop\n")

    scheduler.start(lambda: _select_stores(stores_dir, store_ids), interval_seconds=interval)
    try:
        while scheduler.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping scheduler...")
    finally:
        scheduler.close()
        monitor.destroy()
    print("Scheduler stopped.")


def cli_serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    from ..api.app import main as serve_api
    serve_api(host=host, port=port)


# ============================================================================
# OUTPUT
# ============================================================================

def _print_ticks(results: dict) -> None:
    if not results:
        print("No stores found.")
        return
    for store_id, tick in results.items():
        if tick["error"]:
            print(f"  {store_id}: error - {tick['error']}")
            continue
        print(
            f"  {store_id}: {tick['due']} due, {len(tick['executed'])} executed, "
            f"{len(tick['skipped'])} skipped, {len(tick['failed'])} failed"
        )
        for task_id, error in tick["failed"].items():
            print(f"    [-] {task_id}: {error}")


def _has_failures(results: dict) -> bool:
    return any(tick["error"] or tick["failed"] for tick in results.values())


# ============================================================================
# MAIN
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskloop",
        description="taskloop - agent task-execution orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES
========

  %(prog)s stats --store acme
  %(prog)s cleanup --days 7
  %(prog)s process-tasks --stores-dir ./stores --provider stub
  %(prog)s serve --port 8400

For command-specific help:
  %(prog)s <command> --help
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-file", help='Log file path ("none" disables file logging)')

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>"
    )

    stats_parser = subparsers.add_parser("stats", help="Show processed-execution counts")
    stats_parser.add_argument("--store", help="Only count this store")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old processed-execution claims")
    cleanup_parser.add_argument("--days", type=float,
                                help="Maximum age in days (default: scheduler.cleanup_max_age_days)")

    subparsers.add_parser("config", help="Print the effective configuration")

    process_parser = subparsers.add_parser(
        "process-tasks",
        help="Execute due recurring tasks",
        description="Run one scheduler tick over every store directory under --stores-dir."
    )
    process_parser.add_argument("--stores-dir", required=True, help="Directory of store sub-directories")
    process_parser.add_argument("--store", action="append", dest="stores",
                                help="Only process this store (repeatable)")
    process_parser.add_argument("--provider", choices=PROVIDER_KINDS,
                                help="LLM provider (default: LLM_PROVIDER, else http with LLM_API_KEY, else stub)")
    process_parser.add_argument("--watch", action="store_true", help="Keep running, one tick per interval")
    process_parser.add_argument("--interval", type=float, default=60.0,
                                help="Seconds between ticks with --watch (default: 60)")
    process_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    serve_parser = subparsers.add_parser("serve", help="Start the admin API server")
    serve_parser.add_argument("--host", help="Bind host (default: api.host)")
    serve_parser.add_argument("--port", type=int, help="Port (default: api.port)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = get_config_manager(args.config).get()
    except TaskLoopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(
        level=args.log_level or config.logging.level,
        log_file=args.log_file or config.logging.log_file,
    )

    try:
        if args.command == "stats":
            stats = cli_stats(config, args.store)
            print(json.dumps(stats, indent=2))

        elif args.command == "cleanup":
            result = cli_cleanup(config, args.days)
            print(f"Deleted {result['deleted']} processed executions older than {result['max_age_days']:g} days")

        elif args.command == "config":
            print(json.dumps(cli_config(config), indent=2))

        elif args.command == "process-tasks":
            if args.watch:
                cli_watch_tasks(config, args.stores_dir, args.stores, args.provider, args.interval)
                return 0
            results = cli_process_tasks(config, args.stores_dir, args.stores, args.provider)
            if args.json:
                print(json.dumps(results, indent=2))
            else:
                print(f"\nProcessed {len(results)} store(s):")
                _print_ticks(results)
            return 1 if _has_failures(results) else 0

        elif args.command == "serve":
            cli_serve(args.host, args.port)

    except TaskLoopError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
