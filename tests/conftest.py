import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the `places_sync` package is importable when running pytest from the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from places_sync.core.config import Settings  # noqa: E402
from places_sync.models import RunStatus, SyncRun  # noqa: E402

_METRIC_FIELDS = {
    "places_found",
    "places_updated",
    "photos_downloaded",
    "reviews_fetched",
    "api_requests_made",
    "estimated_cost_usd",
}


def make_settings(**overrides):
    values = dict(
        google_places_api_key="test-key",
        database_url="postgres://",
        request_delay=0.0,
        rate_limit_cooldown=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def make_details(place_id, name=None, address="Main Rd", photos=2, reviews=1):
    return {
        "id": place_id,
        "displayName": {"text": name or f"Camp {place_id}", "languageCode": "en"},
        "formattedAddress": address,
        "location": {"latitude": 18.8, "longitude": 98.9},
        "rating": 4.5,
        "userRatingCount": 12,
        "photos": [{"name": f"places/{place_id}/photos/{i}", "widthPx": 800, "heightPx": 600} for i in range(photos)],
        "reviews": [
            {
                "authorAttribution": {"displayName": f"Author {i}", "uri": f"https://maps/u/{i}"},
                "rating": 5,
                "relativePublishTimeDescription": "a week ago",
                "text": {"text": f"Great site {i}"},
                "publishTime": "2024-05-01T10:20:30.123456789Z",
            }
            for i in range(reviews)
        ],
        "types": ["campground"],
    }


class FakeRunStore:
    """In-memory stand-in for RunStore."""

    def __init__(self):
        self.runs = {}
        self._lock = threading.Lock()

    def create(self, config, triggered_by="admin"):
        run = SyncRun(
            id=str(uuid.uuid4()),
            status=RunStatus.PROCESSING,
            started_at=datetime.now(timezone.utc),
            triggered_by=triggered_by,
            config_snapshot=config.snapshot(),
        )
        with self._lock:
            self.runs[run.id] = run
        return run

    def update(self, run_id, fields, only_if_processing=True):
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or (only_if_processing and run.status is not RunStatus.PROCESSING):
                return False
            for key, value in fields.items():
                if key == "status":
                    run.status = RunStatus(value)
                elif key in _METRIC_FIELDS:
                    setattr(run.metrics, key, value)
                else:
                    setattr(run, key, value)
            return True

    def get(self, run_id):
        return self.runs.get(run_id)

    def list_runs(self, status=None, limit=20, offset=0):
        runs = [r for r in self.runs.values() if status is None or r.status is status]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[offset:offset + limit], len(runs)

    def mark_stale_processing(self, message, older_than):
        cutoff = datetime.now(timezone.utc) - older_than
        stale = []
        for run in self.runs.values():
            if run.status is RunStatus.PROCESSING and run.started_at < cutoff:
                run.status = RunStatus.FAILED
                run.error_message = message
                stale.append(run.id)
        return stale


class FakePlaceStore:
    """In-memory stand-in for RawRecordStore."""

    def __init__(self, provinces=None):
        self.provinces = provinces if provinces is not None else [
            {"id": 1, "name_en": "Chiang Mai", "slug": "chiang-mai"},
            {"id": 2, "name_en": "Phuket", "slug": "phuket"},
        ]
        self.records = {}
        self.upserts = []
        self.photos = set()
        self.reviews = set()
        self.fresh = set()
        self.fetched_at = {}

    def list_provinces(self, slugs=None):
        if not slugs:
            return list(self.provinces)
        return [p for p in self.provinces if p["slug"] in slugs]

    def fetched_since(self, place_ids, since):
        recent = {pid for pid, fetched in self.fetched_at.items() if fetched >= since}
        return set(place_ids) & (self.fresh | recent)

    def upsert_place(self, record):
        self.upserts.append(record.external_place_id)
        self.records[record.external_place_id] = record
        self.fetched_at[record.external_place_id] = record.fetched_at

    def insert_photo_stubs(self, stubs):
        before = len(self.photos)
        self.photos.update((s.external_place_id, s.photo_reference) for s in stubs)
        return len(self.photos) - before

    def insert_review_stubs(self, stubs):
        before = len(self.reviews)
        self.reviews.update((s.external_place_id, s.review_hash) for s in stubs)
        return len(self.reviews) - before


class FakeClient:
    """Stand-in for GooglePlacesClient that records calls and requests."""

    enabled = True

    def __init__(self, search_results=None, details=None, detail_errors=None, search_errors=None, gate=None):
        self.search_results = search_results or {}
        self.details = details or {}
        self.detail_errors = detail_errors or {}
        self.search_errors = search_errors or {}
        self.gate = gate
        self.search_calls = []
        self.detail_calls = []

    def text_search(self, query, language="en", histogram=None):
        if histogram is not None:
            histogram.record("search")
        self.search_calls.append((query, language))
        if self.gate is not None:
            self.gate.wait(5)
        if query in self.search_errors:
            raise self.search_errors[query]
        return [{"place_id": pid, "name": pid} for pid in self.search_results.get(query, [])]

    def place_details(self, place_id, histogram=None):
        if histogram is not None:
            histogram.record("details")
        self.detail_calls.append(place_id)
        if place_id in self.detail_errors:
            raise self.detail_errors[place_id]
        return self.details.get(place_id) or make_details(place_id)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def run_store():
    return FakeRunStore()


@pytest.fixture
def place_store():
    return FakePlaceStore()
