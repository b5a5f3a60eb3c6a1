"""Client utilities for the Google Places API (New)."""

import logging
from typing import Any, Dict, List, Optional

import requests

from places_sync.models import RequestHistogram
from places_sync.vendors.rate_governor import RateGovernor

logger = logging.getLogger(__name__)
_BASE_URL = "https://places.googleapis.com/v1"
_API_CLIENT = "places-sync-worker"

SEARCH_FIELD_MASK = "places.id,places.displayName,places.formattedAddress,places.location"
DETAILS_FIELD_MASK = (
    "id,displayName,formattedAddress,location,viewport,internationalPhoneNumber,websiteUri,"
    "rating,userRatingCount,priceLevel,photos,reviews,types,businessStatus,googleMapsUri"
)


class GooglePlacesError(RuntimeError):
    """Raised when the Places API returns a non-successful response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(GooglePlacesError):
    """Raised on HTTP 429 after the governor cooldown has been applied."""


class GooglePlacesClient:
    """Typed facade over the Text Search and Place Details endpoints.

    Every call is paced by the ``RateGovernor``. Without an API key the client is
    disabled: calls log a configuration error and return nothing instead of raising.
    """

    def __init__(
        self,
        api_key: str,
        governor: Optional[RateGovernor] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.governor = governor or RateGovernor()
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def text_search(
        self,
        query: str,
        language: str = "en",
        histogram: Optional[RequestHistogram] = None,
    ) -> List[Dict[str, Any]]:
        """Return ``[{"place_id", "name"}]`` for a free-text query."""
        if not self.enabled:
            logger.error("GOOGLE_PLACES_API_KEY not set - cannot perform text search for query=%s", query)
            return []

        self.governor.wait()
        if histogram is not None:
            histogram.record("search")
        response = self.session.post(
            f"{_BASE_URL}/places:searchText",
            json={"textQuery": query, "languageCode": language},
            headers=self._headers(SEARCH_FIELD_MASK),
            timeout=self.timeout,
        )
        payload = self._check(response, f"text_search query={query!r}")

        places = payload.get("places") or []
        if not places:
            logger.debug("Text search returned no places for query=%s", query)
        results = []
        for place in places:
            place_id = place.get("id")
            if not place_id:
                continue
            results.append({"place_id": place_id, "name": (place.get("displayName") or {}).get("text")})
        return results

    def place_details(
        self,
        place_id: str,
        histogram: Optional[RequestHistogram] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the raw Place Details resource, or ``None`` when the client is disabled."""
        if not self.enabled:
            logger.error("GOOGLE_PLACES_API_KEY not set - cannot fetch place details for %s", place_id)
            return None

        self.governor.wait()
        if histogram is not None:
            histogram.record("details")
        response = self.session.get(
            f"{_BASE_URL}/places/{place_id}",
            headers=self._headers(DETAILS_FIELD_MASK),
            timeout=self.timeout,
        )
        return self._check(response, f"place_details place_id={place_id}")

    def _headers(self, field_mask: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": field_mask,
            "X-Goog-Api-Client": _API_CLIENT,
        }

    def _check(self, response: requests.Response, context: str) -> Dict[str, Any]:
        status = response.status_code
        if status == 429:
            self.governor.cooldown()
            raise RateLimitedError(f"{context} rate limited", status_code=status)
        if status != 200:
            logger.error("%s failed: status=%s body=%s", context, status, response.text[:300])
            raise GooglePlacesError(f"{context} returned HTTP {status}", status_code=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise GooglePlacesError(f"{context} returned a non-JSON body", status_code=status) from exc
        if not isinstance(payload, dict):
            raise GooglePlacesError(f"{context} returned an unexpected payload", status_code=status)
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise GooglePlacesError(f"{context} returned an error: {message}", status_code=status)
        return payload
