"""HTTP entrypoint that triggers and monitors Google Places syncs."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from flask import Flask, jsonify, request

from places_sync.core.config import get_settings
from places_sync.core.db import ensure_schema, init_pool
from places_sync.core.run_store import RunStore
from places_sync.jobs.orchestrator import (
    SyncAlreadyRunningError,
    SyncNotActiveError,
    SyncOrchestrator,
    create_orchestrator,
)
from places_sync.jobs.scheduler import SyncScheduler
from places_sync.models import RunStatus, SyncConfig

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

MAX_LOGS_LIMIT = 100


def create_app(orchestrator: SyncOrchestrator, run_store: RunStore) -> Flask:
    app = Flask(__name__)

    # ---------- Routes ----------

    @app.get("/healthz")
    def healthcheck() -> Any:
        settings = get_settings()
        return (
            jsonify(
                {
                    "status": "ok",
                    "sync_enabled": bool(settings.google_places_api_key),
                    "sync_running": orchestrator.is_running,
                    "revision": os.getenv("K_REVISION", "unknown"),
                }
            ),
            200,
        )

    @app.post("/sync/trigger")
    def trigger_sync() -> Any:
        """
        Start a sync in the background.
        Optional JSON fields: type|syncType, maxPlaces, provinces, downloadPhotos, fetchReviews
        """
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        try:
            config = SyncConfig.from_payload(payload)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        try:
            handle = orchestrator.start_sync(config, triggered_by="admin")
        except SyncAlreadyRunningError:
            return jsonify({"error": "Sync is already running", "code": SyncAlreadyRunningError.code}), 409
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to trigger Google Places sync: %s", exc)
            return jsonify({"error": "Failed to trigger sync"}), 500

        logger.info("Google Places sync triggered: run_id=%s", handle.run_id)
        return jsonify({"data": handle.to_dict()}), 202

    @app.get("/sync/status")
    def sync_status() -> Any:
        snapshot = orchestrator.get_status()
        if snapshot is None:
            return jsonify({"data": None, "message": "No sync currently running"}), 200
        return jsonify({"data": snapshot.to_dict()}), 200

    @app.post("/sync/cancel")
    def cancel_sync() -> Any:
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        run_id = payload.get("runId") or payload.get("syncLogId")
        if not run_id:
            return jsonify({"error": "runId is required"}), 400

        try:
            orchestrator.cancel_sync(str(run_id))
        except SyncNotActiveError as exc:
            return jsonify({"error": str(exc)}), 409
        return jsonify({"data": {"runId": run_id, "status": RunStatus.CANCELLED.value}}), 200

    @app.get("/sync/logs")
    def sync_logs() -> Any:
        status_raw = request.args.get("status")
        status = None
        if status_raw:
            try:
                status = RunStatus(status_raw)
            except ValueError:
                return jsonify({"error": f"unknown status: {status_raw}"}), 400

        try:
            limit = int(request.args.get("limit", 20))
            offset = int(request.args.get("offset", 0))
        except (TypeError, ValueError):
            return jsonify({"error": "limit and offset must be numeric"}), 400
        if not 1 <= limit <= MAX_LOGS_LIMIT or offset < 0:
            return jsonify({"error": f"limit must be 1-{MAX_LOGS_LIMIT} and offset non-negative"}), 400

        runs, total = run_store.list_runs(status=status, limit=limit, offset=offset)
        return (
            jsonify(
                {
                    "data": [run.to_dict() for run in runs],
                    "pagination": {"total": total, "limit": limit, "offset": offset},
                }
            ),
            200,
        )

    return app


def main() -> None:
    settings = get_settings()
    init_pool()
    ensure_schema()

    orchestrator = create_orchestrator(settings)
    if settings.sync_enabled:
        SyncScheduler(orchestrator.run_scheduled, settings.sync_schedule).start()

    app = create_app(orchestrator, orchestrator.run_store)
    port = int(os.getenv("PORT") or settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
