"""Core data models shared by the Google Places sync pipeline."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RunStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.PROCESSING


class Phase(str, Enum):
    TEXT_SEARCH = "text_search"
    DETAIL_FETCH = "detail_fetch"
    PHOTO_CATALOG = "photo_catalog"
    REVIEW_CATALOG = "review_catalog"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class SyncConfig:
    """Caller supplied options, frozen for the lifetime of a run."""

    type: SyncType = SyncType.INCREMENTAL
    max_places: Optional[int] = None
    provinces: Optional[Tuple[str, ...]] = None
    download_photos: bool = True
    fetch_reviews: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", SyncType(self.type))
        if self.max_places is not None:
            if isinstance(self.max_places, bool) or not isinstance(self.max_places, int):
                raise ValueError("max_places must be an integer")
            if self.max_places <= 0:
                raise ValueError("max_places must be positive")
        if self.provinces is not None:
            cleaned = tuple(str(p).strip() for p in self.provinces if str(p).strip())
            object.__setattr__(self, "provinces", cleaned or None)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SyncConfig":
        """Build a config from the camelCase JSON body used by the trigger endpoint."""
        sync_type = payload.get("type") or payload.get("syncType") or SyncType.INCREMENTAL.value
        try:
            sync_type = SyncType(sync_type)
        except ValueError as exc:
            raise ValueError("type must be 'full' or 'incremental'") from exc

        max_places_raw = payload.get("maxPlaces")
        max_places = None
        if max_places_raw is not None:
            if isinstance(max_places_raw, bool):
                raise ValueError("maxPlaces must be numeric")
            try:
                max_places = int(max_places_raw)
            except (TypeError, ValueError) as exc:
                raise ValueError("maxPlaces must be numeric") from exc

        provinces = payload.get("provinces")
        if provinces is not None and not isinstance(provinces, (list, tuple)):
            raise ValueError("provinces must be a list of slugs")

        return cls(
            type=sync_type,
            max_places=max_places,
            provinces=tuple(provinces) if provinces is not None else None,
            download_photos=bool(payload.get("downloadPhotos", True)),
            fetch_reviews=bool(payload.get("fetchReviews", True)),
        )

    def effective_max_places(self, ceiling: int) -> int:
        return self.max_places or ceiling

    def snapshot(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "maxPlaces": self.max_places,
            "provinces": list(self.provinces) if self.provinces else None,
            "downloadPhotos": self.download_photos,
            "fetchReviews": self.fetch_reviews,
        }


@dataclass
class SyncMetrics:
    places_found: int = 0
    places_updated: int = 0
    photos_downloaded: int = 0
    reviews_fetched: int = 0
    api_requests_made: int = 0
    estimated_cost_usd: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncRun:
    """One row of ``sync_logs``."""

    id: str
    status: RunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    sync_type: str = "google_places"
    triggered_by: str = "system"
    config_snapshot: Optional[Dict[str, Any]] = None
    metrics: SyncMetrics = field(default_factory=SyncMetrics)
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "syncType": self.sync_type,
            "triggeredBy": self.triggered_by,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationSeconds": self.duration_seconds,
            "configSnapshot": self.config_snapshot,
            "metrics": {
                "placesFound": self.metrics.places_found,
                "placesUpdated": self.metrics.places_updated,
                "photosDownloaded": self.metrics.photos_downloaded,
                "reviewsFetched": self.metrics.reviews_fetched,
                "apiRequestsMade": self.metrics.api_requests_made,
                "estimatedCostUsd": self.metrics.estimated_cost_usd,
            },
            "errorMessage": self.error_message,
            "errorDetails": self.error_details,
        }


@dataclass(slots=True)
class RawPlaceRecord:
    """Normalized Place Details snapshot persisted to ``google_places_raw``."""

    external_place_id: str
    identity_hash: str
    payload: Dict[str, Any] = field(repr=False)
    fetched_at: datetime
    processing_status: str = "pending"
    has_photos: bool = False
    photo_count: int = 0
    has_reviews: bool = False
    review_count: int = 0
    rating: Optional[float] = None


@dataclass(slots=True)
class PhotoStub:
    external_place_id: str
    photo_reference: str
    width: Optional[int] = None
    height: Optional[int] = None
    download_status: str = "pending"


@dataclass(slots=True)
class ReviewStub:
    external_place_id: str
    review_hash: str
    payload: Dict[str, Any] = field(repr=False)
    author_name: Optional[str] = None
    author_profile_url: Optional[str] = None
    rating: Optional[int] = None
    text_content: Optional[str] = None
    relative_time_description: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class RequestHistogram:
    """Thread-safe count of outbound API requests per kind."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}

    def record(self, kind: str) -> None:
        with self._lock:
            self._counts[kind] = self._counts.get(kind, 0) + 1

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)


@dataclass(frozen=True)
class ItemResult:
    """Outcome of one item inside a phase: processed, or skipped with a reason."""

    item_id: str
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls, item_id: str) -> "ItemResult":
        return cls(item_id=item_id, ok=True)

    @classmethod
    def skipped(cls, item_id: str, reason: str) -> "ItemResult":
        return cls(item_id=item_id, ok=False, reason=reason)


@dataclass
class PhaseReport:
    phase: Phase
    results: List[ItemResult] = field(default_factory=list)

    def add(self, result: ItemResult) -> None:
        self.results.append(result)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    def skip_reasons(self) -> Dict[str, str]:
        return {r.item_id: r.reason or "" for r in self.results if not r.ok}


@dataclass
class RunSnapshot:
    """In-memory progress of the active run, as returned by ``get_status``."""

    run_id: str
    status: RunStatus
    phase: Phase
    current: int
    total: int
    metrics: SyncMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status.value,
            "progress": {"phase": self.phase.value, "current": self.current, "total": self.total},
            "partialMetrics": self.metrics.as_dict(),
        }
