"""Command-line interface for fieldline.

Provides commands for fetching parcel sources into the local cache and
writing their output artifacts.

Usage:
    fieldline fetch campbell
    fieldline fetch campbell --force --concurrency 8
    fieldline fetch sf-urban --format ndjson --output /tmp/sf.ndjson
    fieldline sources
    fieldline cache-stats
"""

import argparse
import asyncio
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from fieldline import __version__
from fieldline.cache import FeatureStore
from fieldline.config import settings
from fieldline.pipeline import PipelineDriver, default_output_path
from fieldline.registry import get_source, list_sources

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser.

    Returns:
        Configured ArgumentParser with all commands and arguments.
    """
    parser = argparse.ArgumentParser(
        prog="fieldline",
        description="fieldline — parcel data ingestion with a local feature cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fieldline fetch campbell
  fieldline fetch campbell --force
  fieldline fetch sf-urban --format ndjson
  fieldline sources
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # fetch command
    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Fetch a source (or serve it from cache) and write its output file",
        description="Serve a source from cache when fresh, otherwise re-fetch it",
    )
    fetch_parser.add_argument(
        "source_id",
        type=str,
        help="Registry source id (see 'fieldline sources')",
    )
    fetch_parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output file (default: <output-dir>/<source>/parcels.<format>)",
    )
    fetch_parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path(settings.output_dir),
        help=f"Output directory (default: {settings.output_dir})",
    )
    fetch_parser.add_argument(
        "--format",
        type=str,
        choices=["geojson", "ndjson"],
        default="geojson",
        help="Output format (default: geojson)",
    )
    fetch_parser.add_argument(
        "--cache-dir",
        type=Path,
        default=Path(settings.cache_dir),
        help=f"Directory for the feature cache (default: {settings.cache_dir})",
    )
    fetch_parser.add_argument(
        "--max-age-hours",
        type=float,
        default=settings.max_age_hours,
        help=f"Re-fetch when the cache is older than this (default: {settings.max_age_hours:g})",
    )
    fetch_parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the cache and fetch fresh data",
    )
    fetch_parser.add_argument(
        "--concurrency",
        type=_positive_int,
        default=settings.concurrency,
        help=f"Max concurrent page requests (default: {settings.concurrency})",
    )
    fetch_parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=settings.batch_size,
        help=f"Records per page (default: {settings.batch_size})",
    )
    fetch_parser.add_argument(
        "--max-batches",
        type=_positive_int,
        default=settings.max_batches,
        help=f"Max pages per run (default: {settings.max_batches})",
    )

    # sources command
    subparsers.add_parser(
        "sources",
        help="List registered sources",
    )

    # cache-stats command
    stats_parser = subparsers.add_parser(
        "cache-stats",
        help="Show feature cache statistics",
    )
    stats_parser.add_argument(
        "--cache-dir",
        type=Path,
        default=Path(settings.cache_dir),
        help=f"Directory for the feature cache (default: {settings.cache_dir})",
    )

    # version command
    subparsers.add_parser(
        "version",
        help="Show version information",
    )

    return parser


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context.

    Spins up a new event loop in a dedicated thread to avoid conflicts
    with any existing event loop.
    """
    def _target():
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    future = _executor.submit(_target)
    return future.result()


def cmd_fetch(args: argparse.Namespace) -> int:
    """Execute the fetch command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        source = get_source(args.source_id)
        output_path = args.output or default_output_path(
            source.id, args.output_dir, args.format
        )

        logger.info(
            "Running %s (cache_dir=%s, output=%s, force=%s)",
            source.id, args.cache_dir, output_path, args.force,
        )

        with FeatureStore(args.cache_dir) as store:
            driver = PipelineDriver(
                store,
                concurrency=args.concurrency,
                batch_size=args.batch_size,
                max_batches=args.max_batches,
                max_age_hours=args.max_age_hours,
            )
            result = _run_async(
                driver.run(
                    source,
                    output_path,
                    force=args.force,
                    output_format=args.format,
                )
            )

        origin = "cache" if result.from_cache else "upstream"
        print(f"{result.source_id}: {result.record_count} features from {origin} -> {result.output_path}")
        if result.truncated:
            print(f"Warning: result truncated at {args.max_batches} batches", file=sys.stderr)
        return 0

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Fetch failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_sources(args: argparse.Namespace) -> int:
    """Execute the sources command."""
    for source in list_sources():
        print(f"{source.id:<14} {source.api.type:<8} {source.name} ({source.attribution})")
    return 0


def cmd_cache_stats(args: argparse.Namespace) -> int:
    """Execute the cache-stats command."""
    try:
        with FeatureStore(args.cache_dir) as store:
            stats = store.get_stats()
            print(f"Sources:  {stats.source_count}")
            print(f"Features: {stats.feature_count}")
            print(f"Size:     {stats.size_bytes} bytes")
            for source_id in store.list_sources():
                meta = store.get_source_metadata(source_id)
                fetched = meta.last_fetched.isoformat() if meta else "never"
                flag = " (truncated)" if meta and meta.truncated else ""
                print(f"  {source_id}: {store.get_feature_count(source_id)} features, fetched {fetched}{flag}")
        return 0
    except Exception as e:
        logger.error("Cache stats failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_version(args: argparse.Namespace) -> int:
    """Execute the version command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    print(f"fieldline v{__version__}")
    print("Parcel data ingestion with a local feature cache")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = create_parser()
    args = parser.parse_args(argv)

    # Route to command handler
    if args.command == "fetch":
        return cmd_fetch(args)
    elif args.command == "sources":
        return cmd_sources(args)
    elif args.command == "cache-stats":
        return cmd_cache_stats(args)
    elif args.command == "version":
        return cmd_version(args)
    else:
        # No command specified
        parser.print_help()
        return 0


def cli_entry() -> None:
    """Console script entry point for setuptools."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
