"""The four sync phases: text search, detail fetch, photo and review cataloging."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Tuple

import requests

from places_sync.core.config import Settings
from places_sync.core.cost import estimate_cost, estimate_cost_for
from places_sync.core.place_store import RawRecordStore
from places_sync.etl.transform import to_photo_stubs, to_raw_place_record, to_review_stubs
from places_sync.models import (
    ItemResult,
    Phase,
    PhaseReport,
    RawPlaceRecord,
    RequestHistogram,
    SyncConfig,
    SyncMetrics,
    SyncType,
)
from places_sync.vendors.google_places import GooglePlacesClient, GooglePlacesError, RateLimitedError

logger = logging.getLogger(__name__)

# One query per supported language, formatted with the province's English name.
SEARCH_QUERY_TEMPLATES = (
    ("en", "camping {region}"),
    ("th", "ลานกางเต็นท์ {region}"),
)


class BudgetExceededError(RuntimeError):
    """Raised when a run has used up its request ceiling."""


class SyncCancelledError(RuntimeError):
    """Raised at a phase boundary once the run has been cancelled."""


@dataclass
class PipelineContext:
    run_id: str
    config: SyncConfig
    settings: Settings
    client: GooglePlacesClient
    store: RawRecordStore
    histogram: RequestHistogram = field(default_factory=RequestHistogram)
    metrics: SyncMetrics = field(default_factory=SyncMetrics)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_progress: Callable[[Phase, int, int], None] = lambda phase, current, total: None

    def progress(self, phase: Phase, current: int, total: int) -> None:
        self.metrics.api_requests_made = self.histogram.total
        self.on_progress(phase, current, total)

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise SyncCancelledError(f"Sync {self.run_id} was cancelled")


def _describe(exc: Exception) -> str:
    if isinstance(exc, requests.Timeout):
        return "timeout"
    if isinstance(exc, RateLimitedError):
        return "rate limited"
    return str(exc) or exc.__class__.__name__


def text_search_phase(ctx: PipelineContext) -> Tuple[List[str], PhaseReport]:
    """Collect unique place ids for every region, up to the run's place ceiling."""
    report = PhaseReport(Phase.TEXT_SEARCH)
    max_places = ctx.config.effective_max_places(ctx.settings.max_places_per_sync)
    regions = ctx.store.list_provinces(ctx.config.provinces)
    if not regions:
        logger.warning("No provinces to search for sync %s (filter=%s)", ctx.run_id, ctx.config.provinces)

    place_ids: List[str] = []
    seen = set()
    for index, region in enumerate(regions, start=1):
        for language, template in SEARCH_QUERY_TEMPLATES:
            query = template.format(region=region["name_en"])
            try:
                results = ctx.client.text_search(query, language, histogram=ctx.histogram)
            except (GooglePlacesError, requests.RequestException) as exc:
                logger.warning("Text search failed for query=%s: %s", query, exc)
                report.add(ItemResult.skipped(query, _describe(exc)))
                continue

            report.add(ItemResult.success(query))
            for result in results:
                place_id = result["place_id"]
                if place_id in seen or len(place_ids) >= max_places:
                    continue
                seen.add(place_id)
                place_ids.append(place_id)

            if len(place_ids) >= max_places:
                break

        ctx.metrics.places_found = len(place_ids)
        ctx.progress(Phase.TEXT_SEARCH, index, len(regions))
        if len(place_ids) >= max_places:
            logger.info("Reached max places limit (%d) for sync %s", max_places, ctx.run_id)
            break

    ctx.metrics.places_found = len(place_ids)
    return place_ids, report


def check_request_budget(ctx: PipelineContext) -> None:
    made = ctx.histogram.total
    ctx.metrics.api_requests_made = made
    if made >= ctx.settings.max_requests_per_sync:
        raise BudgetExceededError(
            f"Request limit exceeded: {made} >= {ctx.settings.max_requests_per_sync}"
        )


def detail_fetch_phase(ctx: PipelineContext, place_ids: List[str]) -> Tuple[List[RawPlaceRecord], PhaseReport]:
    """Fetch, normalize and upsert each place; failures skip the place for this run."""
    report = PhaseReport(Phase.DETAIL_FETCH)
    records: List[RawPlaceRecord] = []

    fresh = set()
    if ctx.config.type is SyncType.INCREMENTAL and place_ids:
        since = datetime.now(timezone.utc) - timedelta(days=ctx.settings.incremental_max_age_days)
        fresh = ctx.store.fetched_since(place_ids, since)
        if fresh:
            logger.info("Skipping %d recently fetched places for incremental sync %s", len(fresh), ctx.run_id)

    total = len(place_ids)
    for index, place_id in enumerate(place_ids, start=1):
        ctx.progress(Phase.DETAIL_FETCH, index, total)
        if place_id in fresh:
            report.add(ItemResult.skipped(place_id, "fresh"))
            continue

        try:
            details = ctx.client.place_details(place_id, histogram=ctx.histogram)
        except (GooglePlacesError, requests.RequestException) as exc:
            logger.warning("Failed to fetch details for %s: %s", place_id, exc)
            report.add(ItemResult.skipped(place_id, _describe(exc)))
            continue
        if not details:
            report.add(ItemResult.skipped(place_id, "no details"))
            continue

        try:
            record = to_raw_place_record(details)
        except ValueError as exc:
            logger.warning("Discarding malformed details for %s: %s", place_id, exc)
            report.add(ItemResult.skipped(place_id, str(exc)))
            continue

        try:
            ctx.store.upsert_place(record)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to upsert %s: %s", place_id, exc)
            report.add(ItemResult.skipped(place_id, f"upsert failed: {exc}"))
            continue

        records.append(record)
        report.add(ItemResult.success(place_id))
        ctx.metrics.places_updated = len(records)

    ctx.metrics.places_updated = len(records)
    ctx.metrics.api_requests_made = ctx.histogram.total
    return records, report


def photo_catalog_phase(ctx: PipelineContext, records: List[RawPlaceRecord]) -> PhaseReport:
    """Record the first photo references of each place; no bytes are fetched."""
    report = PhaseReport(Phase.PHOTO_CATALOG)
    with_photos = [record for record in records if record.has_photos]
    for index, record in enumerate(with_photos, start=1):
        ctx.progress(Phase.PHOTO_CATALOG, index, len(with_photos))
        stubs = to_photo_stubs(record, ctx.settings.max_photos_per_place)
        try:
            created = ctx.store.insert_photo_stubs(stubs)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to save photo records for %s: %s", record.external_place_id, exc)
            report.add(ItemResult.skipped(record.external_place_id, str(exc)))
            continue
        ctx.metrics.photos_downloaded += created
        report.add(ItemResult.success(record.external_place_id))
    return report


def review_catalog_phase(ctx: PipelineContext, records: List[RawPlaceRecord]) -> PhaseReport:
    """Store the reviews already present in each fetched detail payload."""
    report = PhaseReport(Phase.REVIEW_CATALOG)
    with_reviews = [record for record in records if record.has_reviews]
    for index, record in enumerate(with_reviews, start=1):
        ctx.progress(Phase.REVIEW_CATALOG, index, len(with_reviews))
        stubs = to_review_stubs(record)
        try:
            created = ctx.store.insert_review_stubs(stubs)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to save review records for %s: %s", record.external_place_id, exc)
            report.add(ItemResult.skipped(record.external_place_id, str(exc)))
            continue
        ctx.metrics.reviews_fetched += created
        report.add(ItemResult.success(record.external_place_id))
    return report


def _log_report(ctx: PipelineContext, report: PhaseReport) -> None:
    logger.info(
        "Sync %s phase %s finished: succeeded=%d skipped=%d",
        ctx.run_id,
        report.phase.value,
        report.succeeded,
        report.skipped,
    )
    if report.skipped:
        logger.debug("Sync %s phase %s skipped items: %s", ctx.run_id, report.phase.value, report.skip_reasons())


def run_pipeline(ctx: PipelineContext) -> List[PhaseReport]:
    """Run the phases in order, checking for cancellation between them.

    Metrics accumulate on ``ctx.metrics`` so a failure leaves partial counts behind.
    """
    reports: List[PhaseReport] = []

    ctx.check_cancelled()
    logger.info("Phase 1: Text Search (sync %s)", ctx.run_id)
    place_ids, report = text_search_phase(ctx)
    reports.append(report)
    _log_report(ctx, report)
    check_request_budget(ctx)

    ctx.check_cancelled()
    logger.info("Phase 2: Fetch Place Details (sync %s, places=%d)", ctx.run_id, len(place_ids))
    records, report = detail_fetch_phase(ctx, place_ids)
    reports.append(report)
    _log_report(ctx, report)

    if ctx.config.download_photos:
        ctx.check_cancelled()
        logger.info("Phase 3: Catalog Photos (sync %s)", ctx.run_id)
        report = photo_catalog_phase(ctx, records)
        reports.append(report)
        _log_report(ctx, report)

    if ctx.config.fetch_reviews:
        ctx.check_cancelled()
        logger.info("Phase 4: Catalog Reviews (sync %s)", ctx.run_id)
        report = review_catalog_phase(ctx, records)
        reports.append(report)
        _log_report(ctx, report)

    ctx.check_cancelled()
    ctx.metrics.api_requests_made = ctx.histogram.total
    ctx.metrics.estimated_cost_usd = estimate_cost(ctx.metrics.api_requests_made)
    ctx.progress(Phase.FINALIZING, 1, 1)

    cost = ctx.metrics.estimated_cost_usd
    logger.info(
        "Sync %s estimated cost $%.4f (actual request mix %s prices at $%.4f)",
        ctx.run_id,
        cost,
        ctx.histogram.as_dict(),
        estimate_cost_for(ctx.histogram.as_dict()),
    )
    if cost > ctx.settings.max_cost_per_sync_usd:
        logger.error(
            "Sync %s cost $%.2f exceeds limit $%.2f", ctx.run_id, cost, ctx.settings.max_cost_per_sync_usd
        )
    elif cost > ctx.settings.cost_alert_usd:
        logger.warning(
            "Sync %s cost $%.2f exceeds alert threshold $%.2f", ctx.run_id, cost, ctx.settings.cost_alert_usd
        )
    return reports
