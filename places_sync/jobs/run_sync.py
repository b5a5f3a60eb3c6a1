"""CLI job to run a Google Places sync and wait for its result."""

import argparse
import logging
import sys
import time
from typing import List, Optional

from places_sync.core.config import ConfigError, get_settings
from places_sync.core.db import ensure_schema, init_pool
from places_sync.jobs.orchestrator import SyncAlreadyRunningError, create_orchestrator
from places_sync.models import RunStatus, SyncConfig, SyncRun, SyncType

logger = logging.getLogger(__name__)

POLL_SECONDS = 5.0


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a positive integer") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync camping places from Google Places")
    parser.add_argument(
        "--type",
        dest="sync_type",
        choices=[t.value for t in SyncType],
        default=SyncType.INCREMENTAL.value,
        help="full refetches every place; incremental skips recently fetched ones",
    )
    parser.add_argument("--max-places", dest="max_places", type=_positive_int, default=100, help="Maximum places to sync")
    parser.add_argument("--provinces", dest="provinces", help="Comma-separated province slugs")
    parser.add_argument("--no-photos", dest="download_photos", action="store_false", help="Skip photo cataloging")
    parser.add_argument("--no-reviews", dest="fetch_reviews", action="store_false", help="Skip review cataloging")
    return parser


def config_from_args(args: argparse.Namespace) -> SyncConfig:
    provinces = None
    if args.provinces:
        provinces = tuple(slug.strip() for slug in args.provinces.split(",") if slug.strip())
    return SyncConfig(
        type=SyncType(args.sync_type),
        max_places=args.max_places,
        provinces=provinces,
        download_photos=args.download_photos,
        fetch_reviews=args.fetch_reviews,
    )


def format_summary(run: SyncRun) -> str:
    metrics = run.metrics
    lines = [
        f"Sync {run.id}: {run.status.value}",
        f"  Places found:      {metrics.places_found}",
        f"  Places updated:    {metrics.places_updated}",
        f"  Photos catalogued: {metrics.photos_downloaded}",
        f"  Reviews fetched:   {metrics.reviews_fetched}",
        f"  API requests:      {metrics.api_requests_made}",
        f"  Estimated cost:    ${metrics.estimated_cost_usd:.2f}",
        f"  Duration:          {run.duration_seconds or 0}s",
    ]
    if run.error_message:
        lines.append(f"  Error: {run.error_message}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    if not settings.google_places_api_key:
        logger.error("GOOGLE_PLACES_API_KEY environment variable is not set")
        return 2

    init_pool()
    ensure_schema()
    orchestrator = create_orchestrator(settings, reconcile=False)
    try:
        handle = orchestrator.start_sync(config_from_args(args), triggered_by="cli")
    except SyncAlreadyRunningError as exc:
        logger.error("%s", exc)
        return 1

    logger.info("Sync %s started; waiting for completion", handle.run_id)
    run = orchestrator.run_store.get(handle.run_id)
    while run is not None and run.status is RunStatus.PROCESSING:
        time.sleep(POLL_SECONDS)
        run = orchestrator.run_store.get(handle.run_id)
    orchestrator.shutdown()

    if run is None:
        logger.error("Sync log %s disappeared", handle.run_id)
        return 1
    print(format_summary(run))
    return 0 if run.status is RunStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
