"""Database helpers for the worker."""

import logging
from contextlib import contextmanager
from typing import Optional

from psycopg2 import pool

from places_sync.core.config import get_settings

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None

# Tables written by the sync worker. ``provinces`` is owned by the listings
# service and only read here.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    sync_type TEXT NOT NULL DEFAULT 'google_places',
    triggered_by TEXT DEFAULT 'system',
    started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ,
    duration_seconds INT,
    status TEXT NOT NULL DEFAULT 'processing',
    places_found INT DEFAULT 0,
    places_updated INT DEFAULT 0,
    photos_downloaded INT DEFAULT 0,
    reviews_fetched INT DEFAULT 0,
    api_requests_made INT DEFAULT 0,
    estimated_cost_usd DECIMAL(10,4),
    error_message TEXT,
    error_details JSONB,
    config_snapshot JSONB,
    created_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_sync_logs_started_at ON sync_logs(started_at DESC);
CREATE INDEX IF NOT EXISTS idx_sync_logs_status ON sync_logs(status);

CREATE TABLE IF NOT EXISTS google_places_raw (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    place_id TEXT NOT NULL UNIQUE,
    place_hash TEXT UNIQUE,
    raw_data JSONB NOT NULL,
    data_fetched_at TIMESTAMPTZ DEFAULT NOW(),
    sync_status TEXT DEFAULT 'pending',
    processed_at TIMESTAMPTZ,
    has_photos BOOLEAN DEFAULT FALSE,
    photo_count INT DEFAULT 0,
    has_reviews BOOLEAN DEFAULT FALSE,
    review_count INT DEFAULT 0,
    rating DECIMAL(2,1),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_google_places_raw_status ON google_places_raw(sync_status);

CREATE TABLE IF NOT EXISTS google_places_photos (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    google_place_id TEXT NOT NULL REFERENCES google_places_raw(place_id)
        ON DELETE CASCADE ON UPDATE CASCADE,
    photo_reference TEXT NOT NULL,
    width INT,
    height INT,
    download_status TEXT DEFAULT 'pending',
    downloaded_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (google_place_id, photo_reference)
);

CREATE TABLE IF NOT EXISTS google_places_reviews (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    google_place_id TEXT NOT NULL REFERENCES google_places_raw(place_id)
        ON DELETE CASCADE ON UPDATE CASCADE,
    review_hash TEXT NOT NULL,
    raw_data JSONB NOT NULL,
    author_name TEXT,
    author_profile_url TEXT,
    rating INT CHECK (rating BETWEEN 1 AND 5),
    text_content TEXT,
    relative_time_description TEXT,
    reviewed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (google_place_id, review_hash)
);
"""


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        # Threaded: the HTTP handlers and the sync worker thread share it.
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection.

    Commits when the block succeeds and rolls back when it raises.
    """
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pg_pool.putconn(conn)


def ensure_schema() -> None:
    """Create the worker's tables if they do not exist yet."""
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
    logger.info("Database schema verified")
