"""Utilities for transforming Google Places responses into database rows."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from places_sync.core.hashing import place_hash, review_hash
from places_sync.models import PhotoStub, RawPlaceRecord, ReviewStub

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d{6})\d+")


def _text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("text")
    return value


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; nanosecond fractions are truncated."""
    if not value:
        return None
    cleaned = _FRACTION.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _legacy_photos(photos: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "photo_reference": photo.get("name"),
            "width": photo.get("widthPx"),
            "height": photo.get("heightPx"),
        }
        for photo in photos or []
        if photo.get("name")
    ]


def _legacy_reviews(reviews: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    legacy = []
    for review in reviews or []:
        author = review.get("authorAttribution") or {}
        legacy.append(
            {
                "author_name": author.get("displayName"),
                "author_url": author.get("uri"),
                "profile_photo_url": author.get("photoUri"),
                "rating": review.get("rating"),
                "relative_time_description": review.get("relativePublishTimeDescription"),
                "text": _text(review.get("originalText")) or _text(review.get("text")),
                "language": (review.get("originalText") or {}).get("languageCode"),
                "publish_time": review.get("publishTime"),
            }
        )
    return legacy


def to_legacy_payload(result: Dict[str, Any]) -> Dict[str, Any]:
    """Map a Places API (New) resource onto the legacy Place Details shape stored as payload."""
    return {
        "place_id": result.get("id"),
        "name": _text(result.get("displayName")) or result.get("name"),
        "formatted_address": result.get("formattedAddress"),
        "geometry": {
            "location": result.get("location"),
            "viewport": result.get("viewport"),
        },
        "formatted_phone_number": result.get("internationalPhoneNumber"),
        "international_phone_number": result.get("internationalPhoneNumber"),
        "website": result.get("websiteUri"),
        "rating": result.get("rating"),
        "user_ratings_total": result.get("userRatingCount"),
        "price_level": result.get("priceLevel"),
        "photos": _legacy_photos(result.get("photos")),
        "reviews": _legacy_reviews(result.get("reviews")),
        "types": result.get("types") or [],
        "business_status": result.get("businessStatus"),
        "url": result.get("googleMapsUri"),
    }


def to_raw_place_record(result: Dict[str, Any], fetched_at: Optional[datetime] = None) -> RawPlaceRecord:
    payload = to_legacy_payload(result)
    if not payload["place_id"]:
        raise ValueError("Place Details response has no id")
    if not payload["name"]:
        raise ValueError(f"Place {payload['place_id']} has no display name")

    photos = payload["photos"]
    reviews = payload["reviews"]
    return RawPlaceRecord(
        external_place_id=payload["place_id"],
        identity_hash=place_hash(payload["name"], payload["formatted_address"]),
        payload=payload,
        fetched_at=fetched_at or datetime.now(timezone.utc),
        has_photos=bool(photos),
        photo_count=len(photos),
        has_reviews=bool(reviews),
        review_count=len(reviews),
        rating=payload["rating"],
    )


def to_photo_stubs(record: RawPlaceRecord, limit: int) -> List[PhotoStub]:
    return [
        PhotoStub(
            external_place_id=record.external_place_id,
            photo_reference=photo["photo_reference"],
            width=photo.get("width"),
            height=photo.get("height"),
        )
        for photo in record.payload.get("photos", [])[:limit]
    ]


def _review_rating(value: Any) -> Optional[int]:
    try:
        rating = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return rating if 1 <= rating <= 5 else None


def to_review_stubs(record: RawPlaceRecord) -> List[ReviewStub]:
    return [
        ReviewStub(
            external_place_id=record.external_place_id,
            review_hash=review_hash(review),
            payload=review,
            author_name=review.get("author_name"),
            author_profile_url=review.get("author_url"),
            rating=_review_rating(review.get("rating")),
            text_content=review.get("text"),
            relative_time_description=review.get("relative_time_description"),
            reviewed_at=parse_timestamp(review.get("publish_time")),
        )
        for review in record.payload.get("reviews", [])
    ]
