"""Command-line interface for bidinsouk.

Usage:
    bidinsouk serve [--host=HOST] [--port=PORT] [--no-scheduler]
    bidinsouk sweep [--once]
    bidinsouk report [--top=N] [--json]
    bidinsouk status
    bidinsouk version
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .config import load_config
from .orchestrator import Orchestrator


def setup_logging(level: str = "INFO", log_file: str = None) -> None:
    """Configure logging."""
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=handlers,
    )


def _setup_logging_from_env() -> None:
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FILE"))


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the API server (and the scheduler unless disabled)."""
    import uvicorn

    from .web.api import create_app

    config = load_config(args.config)
    _setup_logging_from_env()

    host = args.host or config.server.host
    port = args.port or config.server.port
    run_scheduler = False if args.no_scheduler else None

    app = create_app(config, run_scheduler=run_scheduler)

    print(f"Starting Bidinsouk auction engine at http://{host}:{port}")
    print("Press Ctrl+C to stop")

    uvicorn.run(app, host=host, port=port, log_level="info")
    return 0


async def _sweep(orchestrator: Orchestrator, once: bool) -> None:
    await orchestrator.start(run_scheduler=False)
    try:
        if once:
            report = await orchestrator.scheduler.sweep()
            print(
                f"Sweep: started={report.scheduled_started} "
                f"ending_soon={report.marked_ending_soon} ended={report.ended} "
                f"orders={report.orders_created} errors={report.errors}"
            )
        else:
            await orchestrator.scheduler.run()
    finally:
        await orchestrator.stop()


def cmd_sweep(args: argparse.Namespace) -> int:
    """Advance due auctions once, or keep sweeping until interrupted."""
    config = load_config(args.config)
    _setup_logging_from_env()

    orchestrator = Orchestrator(config)
    try:
        asyncio.run(_sweep(orchestrator, args.once))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted by user")

    stats = orchestrator.scheduler.get_stats()
    if not args.once:
        print("\nScheduler Statistics:")
        print(f"  Sweeps: {stats['sweeps']}")
        print(f"  Started: {stats['scheduled_started']}")
        print(f"  Ending soon: {stats['marked_ending_soon']}")
        print(f"  Ended: {stats['ended']}")
        print(f"  Orders created: {stats['orders_created']}")
    return 1 if stats["errors"] else 0


def cmd_report(args: argparse.Namespace) -> int:
    """Print the marketplace analytics report."""
    config = load_config(args.config)

    orchestrator = Orchestrator(config)
    orchestrator.store.connect()
    try:
        report = orchestrator.build_report(args.top)
    finally:
        orchestrator.store.close()

    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    sell = report["sell_through"]
    activity = report["bid_activity"]
    print("Bidinsouk Auction Report")
    print("=" * 40)
    print(f"  Ended auctions: {sell['ended']}")
    print(f"  Sold: {sell['sold']}  Passed: {sell['passed']}")
    print(f"  Sell-through: {sell['sell_through_rate']:.1%}")
    print(f"  Total bids: {activity['total_bids']}")
    print(f"  Bids per auction: {activity['bids_per_auction']:.1f}")
    print(f"  Automatic share: {activity['automatic_share']:.1%}")
    print(f"  Extended auctions: {activity['extended_auctions']}")

    if report["revenue"]:
        print("\nRevenue:")
        for currency, row in report["revenue"].items():
            print(f"  {currency}: {row['gross'] / 100:.2f} over {row['sold']} sales")

    if report["top_bidders"]:
        print("\nTop bidders:")
        for row in report["top_bidders"]:
            print(f"  {row['bidder_id']}: {row['bids']} bids on {row['auctions']} auctions")

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show configuration and auction counts."""
    config = load_config(args.config)

    print("Bidinsouk Status")
    print("=" * 40)
    print("\nConfiguration:")
    print(f"  Currency: {config.rules.currency}")
    print(f"  Ending soon threshold: {config.rules.ending_soon_threshold_minutes} min")
    print(f"  Max extensions: {config.rules.max_extensions}")
    print(f"  Lock timeout: {config.service.lock_timeout_seconds}s")
    print(f"  Order backend: {config.orders.backend}")
    print(f"  Database: {Path(config.database.data_dir) / config.database.auctions_db}")

    orchestrator = Orchestrator(config)
    orchestrator.store.connect()
    try:
        summary = orchestrator.service.get_status_summary()
    finally:
        orchestrator.store.close()

    print("\nAuctions:")
    for state, count in summary.items():
        print(f"  {state}: {count}")

    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Show version information."""
    from . import __version__
    print(f"bidinsouk version {__version__}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="bidinsouk",
        description="Auction and bidding engine for the Bidinsouk marketplace",
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to config file",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: from config)",
    )
    serve_parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to run on (default: from config)",
    )
    serve_parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not run the time-driven sweep in this process",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Advance due auctions")
    sweep_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    sweep_parser.set_defaults(func=cmd_sweep)

    # report command
    report_parser = subparsers.add_parser("report", help="Print analytics report")
    report_parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of top bidders to list (default: 10)",
    )
    report_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    report_parser.set_defaults(func=cmd_report)

    # status command
    status_parser = subparsers.add_parser("status", help="Show system status")
    status_parser.set_defaults(func=cmd_status)

    # version command
    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
