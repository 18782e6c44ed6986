#!/usr/bin/env python3
"""fieldline — Periodic source refresh runner.

Refreshes every registered source (or the ones named) through one feature
cache handle. Fresh sources are served from cache; stale or truncated ones
are re-fetched. Designed to be called from cron.

Usage:
    python scripts/refresh_sources.py
    python scripts/refresh_sources.py campbell palo-alto
    python scripts/refresh_sources.py --force

Scheduling:
    crontab -e
    0 3 * * * /path/to/fieldline/.venv/bin/python /path/to/fieldline/scripts/refresh_sources.py >> /path/to/fieldline/logs/refresh.log 2>&1
"""

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

# Ensure project root is on sys.path so 'fieldline' is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from fieldline.cache import FeatureStore
from fieldline.config import settings
from fieldline.pipeline import PipelineDriver, RunResult, default_output_path
from fieldline.registry import SOURCES, UnknownSourceError, get_source


def setup_logging(log_dir: Path, run_date: date) -> None:
    """Configure logging to both console and a dated log file."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"refresh_{run_date.isoformat()}.log"

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


async def refresh_sources(
    source_ids: list[str],
    cache_dir: str,
    output_dir: str,
    force: bool,
) -> dict[str, RunResult | Exception]:
    """Run the pipeline for each source in turn.

    A failing source is recorded and does not stop the remaining ones.
    Unknown ids are recorded as failures before the cache is opened, so a
    run with no valid ids never touches the cache directory.

    Returns:
        Dictionary mapping source id -> RunResult or the raised exception.
    """
    logger = logging.getLogger(__name__)
    outcomes: dict[str, RunResult | Exception] = {}

    sources = []
    for source_id in source_ids:
        try:
            sources.append(get_source(source_id))
        except UnknownSourceError as e:
            logger.error("%s", e)
            outcomes[source_id] = e

    if not sources:
        return outcomes

    with FeatureStore(cache_dir) as store:
        driver = PipelineDriver(store)
        for source in sources:
            try:
                outcomes[source.id] = await driver.run(
                    source,
                    default_output_path(source.id, output_dir),
                    force=force,
                )
            except Exception as e:
                logger.error("%s: refresh failed: %s", source.id, e, exc_info=True)
                outcomes[source.id] = e

    return outcomes


def print_summary(outcomes: dict[str, RunResult | Exception]) -> None:
    """Log a one-line status per source."""
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("fieldline refresh — %d sources", len(outcomes))
    logger.info("=" * 60)

    for source_id in sorted(outcomes):
        outcome = outcomes[source_id]
        if isinstance(outcome, Exception):
            logger.info("  %-14s  FAILED  %s", source_id, outcome)
            continue
        origin = "cache" if outcome.from_cache else "fetched"
        flag = "  TRUNCATED" if outcome.truncated else ""
        logger.info("  %-14s  %-7s  records=%d%s", source_id, origin, outcome.record_count, flag)

    logger.info("=" * 60)


def main() -> int:
    """Main entry point for the refresh runner."""
    parser = argparse.ArgumentParser(
        description="fieldline — Refresh stale parcel sources",
    )
    parser.add_argument(
        "source_ids",
        nargs="*",
        help="Sources to refresh (default: every registered source)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-fetch even when the cache is fresh",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default=str(PROJECT_ROOT / settings.cache_dir),
        help=f"Feature cache directory (default: {settings.cache_dir})",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=str(PROJECT_ROOT / settings.output_dir),
        help=f"Output artifact directory (default: {settings.output_dir})",
    )
    args = parser.parse_args()

    setup_logging(PROJECT_ROOT / "logs", date.today())
    logger = logging.getLogger(__name__)

    source_ids = args.source_ids or sorted(SOURCES)
    logger.info("Starting fieldline refresh")
    logger.info("  Sources: %s", ", ".join(source_ids))
    logger.info("  Cache dir: %s", args.cache_dir)

    try:
        outcomes = asyncio.run(
            refresh_sources(source_ids, args.cache_dir, args.output_dir, args.force)
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Refresh run failed: %s", e, exc_info=True)
        return 1

    print_summary(outcomes)
    failed = [s for s, o in outcomes.items() if isinstance(o, Exception)]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
