"""Single-flight coordinator for Google Places sync runs."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from places_sync.core.config import Settings
from places_sync.core.place_store import RawRecordStore
from places_sync.core.run_store import RunStore
from places_sync.jobs.phases import PipelineContext, SyncCancelledError, run_pipeline
from places_sync.models import Phase, RunSnapshot, RunStatus, SyncConfig, SyncType
from places_sync.vendors.google_places import GooglePlacesClient
from places_sync.vendors.rate_governor import RateGovernor

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by operator"
STALE_RUN_MESSAGE = "Interrupted before completion (worker restarted)"


class SyncAlreadyRunningError(RuntimeError):
    """Raised when a sync is requested while another one is processing."""

    code = "SYNC_ALREADY_RUNNING"


class SyncNotActiveError(RuntimeError):
    """Raised when cancelling a run that is not the active one."""


@dataclass(frozen=True)
class RunHandle:
    run_id: str
    status: RunStatus
    future: Future

    def to_dict(self) -> Dict[str, Any]:
        return {"runId": self.run_id, "status": self.status.value}


@dataclass
class _ActiveRun:
    run_id: str
    context: PipelineContext
    started: float
    phase: Phase = Phase.TEXT_SEARCH
    current: int = 0
    total: int = 0


class SyncOrchestrator:
    """Starts, tracks and cancels sync runs; at most one is processing at a time.

    Construct once at process start and share the instance. The in-memory state is
    only a single-flight guard and a progress cache; ``sync_logs`` is the record.
    """

    def __init__(
        self,
        settings: Settings,
        client: GooglePlacesClient,
        run_store: RunStore,
        place_store: RawRecordStore,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.run_store = run_store
        self.place_store = place_store
        # One worker: a run started right after a cancellation waits for the
        # cancelled pipeline to reach its next phase boundary.
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="places-sync")
        self._lock = threading.Lock()
        self._active: Optional[_ActiveRun] = None
        # Claimed while the run row is being inserted, outside the lock.
        self._starting = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._active is not None or self._starting

    @property
    def current_run_id(self) -> Optional[str]:
        with self._lock:
            return self._active.run_id if self._active else None

    def start_sync(self, config: SyncConfig, triggered_by: str = "admin") -> RunHandle:
        """Create a run row and launch the pipeline in the background."""
        with self._lock:
            if self._active is not None:
                raise SyncAlreadyRunningError(f"Sync {self._active.run_id} is already processing")
            if self._starting:
                raise SyncAlreadyRunningError("A sync is already starting")
            self._starting = True

        try:
            run = self.run_store.create(config, triggered_by=triggered_by)
        except Exception:
            with self._lock:
                self._starting = False
            raise

        context = PipelineContext(
            run_id=run.id,
            config=config,
            settings=self.settings,
            client=self.client,
            store=self.place_store,
        )
        context.on_progress = self._progress_callback(run.id)
        with self._lock:
            self._active = _ActiveRun(run_id=run.id, context=context, started=time.monotonic())
            self._starting = False

        logger.info("Starting Google Places sync %s (config=%s)", run.id, config.snapshot())
        try:
            future = self._executor.submit(self._execute, run.id, context)
        except RuntimeError:
            self._release(run.id)
            self.run_store.update(
                run.id,
                {
                    "status": RunStatus.FAILED,
                    "completed_at": datetime.now(timezone.utc),
                    "error_message": "Sync worker is shut down",
                },
            )
            raise
        return RunHandle(run_id=run.id, status=RunStatus.PROCESSING, future=future)

    def get_status(self) -> Optional[RunSnapshot]:
        with self._lock:
            active = self._active
            if active is None:
                return None
            return RunSnapshot(
                run_id=active.run_id,
                status=RunStatus.PROCESSING,
                phase=active.phase,
                current=active.current,
                total=active.total,
                metrics=dataclasses.replace(active.context.metrics),
            )

    def cancel_sync(self, run_id: str) -> None:
        """Cancel the active run. The pipeline stops at its next phase boundary.

        Raises ``SyncNotActiveError`` when the run is not active, including when it
        reached a terminal status before the cancellation could be written.
        """
        with self._lock:
            active = self._active
            if active is None or active.run_id != run_id:
                raise SyncNotActiveError(f"Sync {run_id} is not the active sync")
            active.context.cancel_event.set()
            self._active = None
            metrics = dataclasses.replace(active.context.metrics)
            duration = int(time.monotonic() - active.started)

        cancelled = self.run_store.update(
            run_id,
            {
                "status": RunStatus.CANCELLED,
                "completed_at": datetime.now(timezone.utc),
                "duration_seconds": duration,
                "places_found": metrics.places_found,
                "places_updated": metrics.places_updated,
                "api_requests_made": active.context.histogram.total,
                "error_message": CANCELLED_MESSAGE,
            },
        )
        if not cancelled:
            raise SyncNotActiveError(f"Sync {run_id} already finished before it could be cancelled")
        logger.info("Sync %s cancelled", run_id)

    def run_scheduled(self) -> Optional[RunHandle]:
        """Scheduler entrypoint: start an incremental sync unless one is running."""
        logger.info("Starting scheduled Google Places sync")
        try:
            return self.start_sync(SyncConfig(type=SyncType.INCREMENTAL), triggered_by="system")
        except SyncAlreadyRunningError as exc:
            logger.warning("Skipping scheduled sync: %s", exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scheduled sync could not be started: %s", exc)
        return None

    def reconcile_stale_runs(self) -> int:
        """Fail runs left in processing by a dead process. Call once at server startup.

        Only rows older than ``stale_run_after_hours`` are touched; another process
        may be driving a younger one.
        """
        with self._lock:
            if self._active is not None or self._starting:
                raise RuntimeError("Cannot reconcile while a sync is active")
        older_than = timedelta(hours=self.settings.stale_run_after_hours)
        stale = self.run_store.mark_stale_processing(STALE_RUN_MESSAGE, older_than)
        if stale:
            logger.warning("Marked %d orphaned sync runs as failed: %s", len(stale), ", ".join(stale))
        return len(stale)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ---------- Internals ----------

    def _progress_callback(self, run_id: str):
        def update(phase: Phase, current: int, total: int) -> None:
            with self._lock:
                if self._active is not None and self._active.run_id == run_id:
                    self._active.phase = phase
                    self._active.current = current
                    self._active.total = total

        return update

    def _release(self, run_id: str) -> None:
        with self._lock:
            if self._active is not None and self._active.run_id == run_id:
                self._active = None

    def _execute(self, run_id: str, context: PipelineContext) -> RunStatus:
        """Background task: run the pipeline and always write a terminal status."""
        started = time.monotonic()
        metrics = context.metrics
        try:
            run_pipeline(context)
            self.run_store.update(
                run_id,
                {
                    "status": RunStatus.COMPLETED,
                    "completed_at": datetime.now(timezone.utc),
                    "duration_seconds": int(time.monotonic() - started),
                    **self._metric_fields(context),
                },
            )
            logger.info("Google Places sync %s completed: %s", run_id, metrics.as_dict())
            return RunStatus.COMPLETED
        except SyncCancelledError:
            logger.info("Sync %s stopped at phase boundary after cancellation", run_id)
            return RunStatus.CANCELLED
        except Exception as exc:  # noqa: BLE001
            if context.cancel_event.is_set():
                logger.info("Sync %s failed after cancellation: %s", run_id, exc)
                return RunStatus.CANCELLED
            logger.exception("Google Places sync %s failed: %s", run_id, exc)
            try:
                self.run_store.update(
                    run_id,
                    {
                        "status": RunStatus.FAILED,
                        "completed_at": datetime.now(timezone.utc),
                        "duration_seconds": int(time.monotonic() - started),
                        "error_message": str(exc) or exc.__class__.__name__,
                        "error_details": {
                            "type": exc.__class__.__name__,
                            "phase": self._phase_of(run_id),
                            "message": str(exc),
                        },
                        **self._metric_fields(context),
                    },
                )
            except Exception:  # noqa: BLE001
                logger.exception("Failed to record failure of sync %s", run_id)
            return RunStatus.FAILED
        finally:
            self._release(run_id)

    def _phase_of(self, run_id: str) -> Optional[str]:
        with self._lock:
            if self._active is not None and self._active.run_id == run_id:
                return self._active.phase.value
        return None

    @staticmethod
    def _metric_fields(context: PipelineContext) -> Dict[str, Any]:
        metrics = context.metrics
        return {
            "places_found": metrics.places_found,
            "places_updated": metrics.places_updated,
            "photos_downloaded": metrics.photos_downloaded,
            "reviews_fetched": metrics.reviews_fetched,
            "api_requests_made": context.histogram.total,
            "estimated_cost_usd": metrics.estimated_cost_usd,
        }


def create_orchestrator(settings: Settings, reconcile: bool = True) -> SyncOrchestrator:
    """Process-start wiring: build the service and, for the long-lived server,
    sweep runs orphaned by a restart."""
    governor = RateGovernor(min_delay=settings.request_delay, cooldown_seconds=settings.rate_limit_cooldown)
    client = GooglePlacesClient(settings.google_places_api_key, governor=governor, timeout=settings.request_timeout)
    orchestrator = SyncOrchestrator(settings, client, RunStore(), RawRecordStore())
    if reconcile:
        orchestrator.reconcile_stale_runs()
    return orchestrator
