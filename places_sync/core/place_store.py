"""Persistence for raw Google Places records and their photo / review stubs."""

import logging
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional, Sequence, Set

from psycopg2 import extras

from places_sync.core.db import get_connection
from places_sync.models import PhotoStub, RawPlaceRecord, ReviewStub

logger = logging.getLogger(__name__)

# Upstream occasionally reassigns place ids. Move the row that owns the identity
# hash onto the new id first so the upsert below merges instead of colliding.
_REKEY_BY_HASH = """
UPDATE google_places_raw SET
    place_id = %(place_id)s,
    updated_at = NOW()
WHERE place_hash = %(place_hash)s
  AND place_id <> %(place_id)s
  AND NOT EXISTS (SELECT 1 FROM google_places_raw WHERE place_id = %(place_id)s);
"""

_UPSERT_RAW_PLACE = """
INSERT INTO google_places_raw (
    place_id,
    place_hash,
    raw_data,
    data_fetched_at,
    sync_status,
    has_photos,
    photo_count,
    has_reviews,
    review_count,
    rating,
    updated_at
) VALUES (
    %(place_id)s,
    %(place_hash)s,
    %(raw_data)s,
    %(data_fetched_at)s,
    %(sync_status)s,
    %(has_photos)s,
    %(photo_count)s,
    %(has_reviews)s,
    %(review_count)s,
    %(rating)s,
    NOW()
)
ON CONFLICT (place_id) DO UPDATE SET
    place_hash = EXCLUDED.place_hash,
    raw_data = EXCLUDED.raw_data,
    data_fetched_at = EXCLUDED.data_fetched_at,
    sync_status = EXCLUDED.sync_status,
    has_photos = EXCLUDED.has_photos,
    photo_count = EXCLUDED.photo_count,
    has_reviews = EXCLUDED.has_reviews,
    review_count = EXCLUDED.review_count,
    rating = EXCLUDED.rating,
    updated_at = NOW();
"""

_INSERT_PHOTO = """
INSERT INTO google_places_photos (google_place_id, photo_reference, width, height, download_status)
VALUES (%(google_place_id)s, %(photo_reference)s, %(width)s, %(height)s, %(download_status)s)
ON CONFLICT (google_place_id, photo_reference) DO NOTHING;
"""

_INSERT_REVIEW = """
INSERT INTO google_places_reviews (
    google_place_id,
    review_hash,
    raw_data,
    author_name,
    author_profile_url,
    rating,
    text_content,
    relative_time_description,
    reviewed_at
) VALUES (
    %(google_place_id)s,
    %(review_hash)s,
    %(raw_data)s,
    %(author_name)s,
    %(author_profile_url)s,
    %(rating)s,
    %(text_content)s,
    %(relative_time_description)s,
    %(reviewed_at)s
)
ON CONFLICT (google_place_id, review_hash) DO NOTHING;
"""

_FETCHED_SINCE = """
SELECT place_id FROM google_places_raw
WHERE place_id = ANY(%(place_ids)s) AND data_fetched_at >= %(since)s;
"""


def _prepare_place_params(record: RawPlaceRecord) -> Dict[str, Any]:
    return {
        "place_id": record.external_place_id,
        "place_hash": record.identity_hash,
        "raw_data": extras.Json(record.payload or {}),
        "data_fetched_at": record.fetched_at,
        "sync_status": record.processing_status,
        "has_photos": record.has_photos,
        "photo_count": record.photo_count,
        "has_reviews": record.has_reviews,
        "review_count": record.review_count,
        "rating": record.rating,
    }


class RawRecordStore:
    """Writes ``google_places_raw`` rows and their child stubs."""

    def __init__(self, connection_factory: Callable[[], ContextManager[Any]] = get_connection) -> None:
        self._connection = connection_factory

    def upsert_place(self, record: RawPlaceRecord) -> None:
        """Idempotently persist a place keyed by its external id."""
        if not record.external_place_id or not record.identity_hash:
            raise ValueError("external_place_id and identity_hash are required for upsert")

        params = _prepare_place_params(record)
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_REKEY_BY_HASH, params)
                if cur.rowcount:
                    logger.info("Re-keyed place with hash %s to %s", record.identity_hash, record.external_place_id)
                cur.execute(_UPSERT_RAW_PLACE, params)
        logger.debug("Upserted place %s", record.external_place_id)

    def fetched_since(self, place_ids: Sequence[str], since: datetime) -> Set[str]:
        """Return the ids among ``place_ids`` whose data was fetched at or after ``since``."""
        if not place_ids:
            return set()
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_FETCHED_SINCE, {"place_ids": list(place_ids), "since": since})
                rows = cur.fetchall()
        return {row[0] for row in rows}

    def insert_photo_stubs(self, stubs: Iterable[PhotoStub]) -> int:
        """Insert photo stubs, ignoring ones already catalogued; returns rows created."""
        created = 0
        with self._connection() as conn:
            with conn.cursor() as cur:
                for stub in stubs:
                    cur.execute(
                        _INSERT_PHOTO,
                        {
                            "google_place_id": stub.external_place_id,
                            "photo_reference": stub.photo_reference,
                            "width": stub.width,
                            "height": stub.height,
                            "download_status": stub.download_status,
                        },
                    )
                    created += max(cur.rowcount, 0)
        return created

    def insert_review_stubs(self, stubs: Iterable[ReviewStub]) -> int:
        """Insert review stubs, ignoring ones already catalogued; returns rows created."""
        created = 0
        with self._connection() as conn:
            with conn.cursor() as cur:
                for stub in stubs:
                    cur.execute(
                        _INSERT_REVIEW,
                        {
                            "google_place_id": stub.external_place_id,
                            "review_hash": stub.review_hash,
                            "raw_data": extras.Json(stub.payload or {}),
                            "author_name": stub.author_name,
                            "author_profile_url": stub.author_profile_url,
                            "rating": stub.rating,
                            "text_content": stub.text_content,
                            "relative_time_description": stub.relative_time_description,
                            "reviewed_at": stub.reviewed_at,
                        },
                    )
                    created += max(cur.rowcount, 0)
        return created

    def list_provinces(self, slugs: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """Regions to search, read from the listings service's ``provinces`` table."""
        sql = "SELECT id, name_en, slug FROM provinces"
        params: Dict[str, Any] = {}
        if slugs:
            sql += " WHERE slug = ANY(%(slugs)s)"
            params["slugs"] = list(slugs)
        sql += " ORDER BY id;"
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [dict(row) for row in rows]
