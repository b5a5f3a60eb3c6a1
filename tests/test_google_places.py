import pytest
import requests

from places_sync.models import RequestHistogram
from places_sync.vendors import google_places
from places_sync.vendors.rate_governor import RateGovernor


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    def __init__(self, response=None):
        self.response = response or DummyResponse()
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(("POST", url, json, headers, timeout))
        return self.response

    def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, None, headers, timeout))
        return self.response


class RecordingGovernor(RateGovernor):
    def __init__(self):
        super().__init__(min_delay=0, cooldown_seconds=0, sleep=lambda seconds: None)
        self.waits = 0
        self.cooldowns = 0

    def wait(self):
        self.waits += 1

    def cooldown(self):
        self.cooldowns += 1


@pytest.fixture
def session():
    return DummySession()


@pytest.fixture
def governor():
    return RecordingGovernor()


@pytest.fixture
def client(session, governor):
    return google_places.GooglePlacesClient("key", governor=governor, timeout=7, session=session)


def test_text_search_posts_query_with_field_mask(client, session, governor):
    session.response = DummyResponse(
        payload={
            "places": [
                {"id": "pid-1", "displayName": {"text": "Doi Camp"}},
                {"displayName": {"text": "No id"}},
                {"id": "pid-2", "displayName": {"text": "Lake Camp"}},
            ]
        }
    )
    histogram = RequestHistogram()

    results = client.text_search("camping Chiang Mai", "en", histogram=histogram)

    method, url, body, headers, timeout = session.calls[0]
    assert method == "POST"
    assert url.endswith("/places:searchText")
    assert body == {"textQuery": "camping Chiang Mai", "languageCode": "en"}
    assert headers["X-Goog-Api-Key"] == "key"
    assert headers["X-Goog-FieldMask"] == google_places.SEARCH_FIELD_MASK
    assert timeout == 7
    assert results == [{"place_id": "pid-1", "name": "Doi Camp"}, {"place_id": "pid-2", "name": "Lake Camp"}]
    assert histogram.as_dict() == {"search": 1}
    assert governor.waits == 1


def test_text_search_empty_result(client, session):
    session.response = DummyResponse(payload={})
    assert client.text_search("camping Nowhere") == []


def test_place_details_gets_resource(client, session):
    session.response = DummyResponse(payload={"id": "pid-1", "displayName": {"text": "Doi Camp"}})
    histogram = RequestHistogram()

    details = client.place_details("pid-1", histogram=histogram)

    method, url, _, headers, _ = session.calls[0]
    assert method == "GET"
    assert url.endswith("/places/pid-1")
    assert headers["X-Goog-FieldMask"] == google_places.DETAILS_FIELD_MASK
    assert details["id"] == "pid-1"
    assert histogram.as_dict() == {"details": 1}


def test_rate_limit_triggers_cooldown(client, session, governor):
    session.response = DummyResponse(status_code=429)
    histogram = RequestHistogram()

    with pytest.raises(google_places.RateLimitedError) as excinfo:
        client.place_details("pid-1", histogram=histogram)

    assert excinfo.value.status_code == 429
    assert governor.cooldowns == 1
    assert histogram.total == 1


def test_http_error_raises(client, session, governor):
    session.response = DummyResponse(status_code=403, text="forbidden")
    with pytest.raises(google_places.GooglePlacesError) as excinfo:
        client.text_search("camping Phuket")
    assert excinfo.value.status_code == 403
    assert not isinstance(excinfo.value, google_places.RateLimitedError)
    assert governor.cooldowns == 0


def test_error_body_raises(client, session):
    session.response = DummyResponse(payload={"error": {"message": "API key not valid"}})
    with pytest.raises(google_places.GooglePlacesError, match="API key not valid"):
        client.place_details("pid-1")


def test_non_json_body_raises(client, session):
    session.response = DummyResponse(payload=ValueError("not json"))
    with pytest.raises(google_places.GooglePlacesError):
        client.place_details("pid-1")


def test_transport_errors_propagate(client, session):
    def boom(*args, **kwargs):
        raise requests.Timeout("slow")

    session.get = boom
    with pytest.raises(requests.Timeout):
        client.place_details("pid-1")


def test_disabled_client_makes_no_calls(session, governor, caplog):
    client = google_places.GooglePlacesClient("", governor=governor, session=session)
    histogram = RequestHistogram()

    assert client.enabled is False
    assert client.text_search("camping Phuket", histogram=histogram) == []
    assert client.place_details("pid-1", histogram=histogram) is None
    assert session.calls == []
    assert histogram.total == 0
    assert governor.waits == 0
    assert "GOOGLE_PLACES_API_KEY not set" in caplog.text
