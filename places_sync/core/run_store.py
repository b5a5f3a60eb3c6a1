"""Persistence for the ``sync_logs`` audit table."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, ContextManager, Dict, List, Optional, Tuple

from psycopg2 import extras

from places_sync.core.db import get_connection
from places_sync.models import RunStatus, SyncConfig, SyncMetrics, SyncRun

logger = logging.getLogger(__name__)

# Columns the orchestrator is allowed to write after creation.
_MUTABLE_COLUMNS = (
    "status",
    "completed_at",
    "duration_seconds",
    "places_found",
    "places_updated",
    "photos_downloaded",
    "reviews_fetched",
    "api_requests_made",
    "estimated_cost_usd",
    "error_message",
    "error_details",
)

_INSERT_RUN = """
INSERT INTO sync_logs (sync_type, triggered_by, status, config_snapshot, started_at)
VALUES (%(sync_type)s, %(triggered_by)s, 'processing', %(config_snapshot)s, %(started_at)s)
RETURNING *;
"""

_SELECT_RUN = "SELECT * FROM sync_logs WHERE id = %(id)s;"

_MARK_STALE = """
UPDATE sync_logs SET
    status = 'failed',
    completed_at = NOW(),
    error_message = %(message)s
WHERE status = 'processing'
  AND started_at < NOW() - %(older_than)s
RETURNING id;
"""


def _row_to_run(row: Dict[str, Any]) -> SyncRun:
    cost = row.get("estimated_cost_usd")
    if isinstance(cost, Decimal):
        cost = float(cost)
    return SyncRun(
        id=str(row["id"]),
        status=RunStatus(row["status"]),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        duration_seconds=row.get("duration_seconds"),
        sync_type=row.get("sync_type") or "google_places",
        triggered_by=row.get("triggered_by") or "system",
        config_snapshot=row.get("config_snapshot"),
        metrics=SyncMetrics(
            places_found=row.get("places_found") or 0,
            places_updated=row.get("places_updated") or 0,
            photos_downloaded=row.get("photos_downloaded") or 0,
            reviews_fetched=row.get("reviews_fetched") or 0,
            api_requests_made=row.get("api_requests_made") or 0,
            estimated_cost_usd=cost or 0.0,
        ),
        error_message=row.get("error_message"),
        error_details=row.get("error_details"),
    )


def _status_filter(status: Optional[RunStatus]) -> Tuple[str, Dict[str, Any]]:
    if status is None:
        return "", {}
    return " WHERE status = %(status)s", {"status": RunStatus(status).value}


class RunStore:
    """Create, update, read and list sync runs."""

    def __init__(self, connection_factory: Callable[[], ContextManager[Any]] = get_connection) -> None:
        self._connection = connection_factory

    def create(self, config: SyncConfig, triggered_by: str = "admin") -> SyncRun:
        params = {
            "sync_type": "google_places",
            "triggered_by": triggered_by,
            "config_snapshot": extras.Json(config.snapshot()),
            "started_at": datetime.now(timezone.utc),
        }
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_INSERT_RUN, params)
                row = cur.fetchone()
        if row is None:
            raise RuntimeError("Failed to create sync log")
        run = _row_to_run(row)
        logger.debug("Created sync log %s", run.id)
        return run

    def update(self, run_id: str, fields: Dict[str, Any], only_if_processing: bool = True) -> bool:
        """Apply ``fields`` to a run; returns False when no row was changed.

        With ``only_if_processing`` (the default) terminal rows are left untouched.
        """
        unknown = set(fields) - set(_MUTABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update sync_logs columns: {sorted(unknown)}")
        if not fields:
            return False

        params = dict(fields)
        if isinstance(params.get("status"), RunStatus):
            params["status"] = params["status"].value
        if params.get("error_details") is not None:
            params["error_details"] = extras.Json(params["error_details"])
        params["id"] = run_id

        assignments = ", ".join(f"{column} = %({column})s" for column in fields)
        sql = f"UPDATE sync_logs SET {assignments} WHERE id = %(id)s"
        if only_if_processing:
            sql += " AND status = 'processing'"

        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql + ";", params)
                changed = cur.rowcount > 0
        if not changed:
            logger.info("Sync log %s not updated (missing or already terminal)", run_id)
        return changed

    def get(self, run_id: str) -> Optional[SyncRun]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_SELECT_RUN, {"id": run_id})
                row = cur.fetchone()
        return _row_to_run(row) if row else None

    def count_runs(self, status: Optional[RunStatus] = None) -> int:
        where, params = _status_filter(status)
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM sync_logs{where};", params)
                row = cur.fetchone() or {}
        return int(row.get("total", 0))

    def list_runs(
        self,
        status: Optional[RunStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[SyncRun], int]:
        """Return a page of runs, newest first, and the total matching count."""
        if limit <= 0 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")

        total = self.count_runs(status)
        where, params = _status_filter(status)
        params.update(limit=limit, offset=offset)
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(
                    f"SELECT * FROM sync_logs{where} ORDER BY started_at DESC LIMIT %(limit)s OFFSET %(offset)s;",
                    params,
                )
                rows = cur.fetchall()
        return [_row_to_run(row) for row in rows], total

    def mark_stale_processing(self, message: str, older_than: timedelta) -> List[str]:
        """Fail runs stuck in processing for longer than ``older_than``; returns their ids.

        Younger rows may belong to a live run in another process and are left alone.
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_MARK_STALE, {"message": message, "older_than": older_than})
                rows = cur.fetchall()
        return [str(row[0]) for row in rows]
