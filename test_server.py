"""
Tests for the HTTP tool surface.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from google_maps import GoogleMapsService
from mobility_tools import MobilityTools
from pricing import FixedSurge, PricingModel
from server import app, get_tools
from session_store import InMemorySessionStore


def engine_with(handler):
    maps = GoogleMapsService(api_key="test-key", transport=httpx.MockTransport(handler))
    return MobilityTools(store=InMemorySessionStore(), maps=maps, pricing=PricingModel(surge=FixedSurge()))


def matrix_handler(request):
    return httpx.Response(200, json={
        "status": "OK",
        "rows": [{"elements": [{"status": "OK", "distance": {"value": 8000}, "duration": {"value": 900}}]}],
    })


@pytest.fixture
def client():
    engine = engine_with(matrix_handler)
    app.dependency_overrides[get_tools] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def set_trip(client, session_id="web-1"):
    for action, coords in (("set_origin", {"latitude": 10.5, "longitude": -66.9}),
                           ("set_destination", {"latitude": 10.6, "longitude": -66.8})):
        res = client.post("/tools/trip_state", json={"session_id": session_id, "args": {"action": action, "location": {"coordinates": coords}}})
        assert res.status_code == 200
    return res.json()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_tool_definitions(client):
    names = {t["function"]["name"] for t in client.get("/tools").json()["tools"]}
    assert {"trip_state", "estimate_trip", "calculate_route", "resolve_place"} <= names


def test_config_never_exposes_the_key(client, monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "secret")
    body = client.get("/config").json()
    assert body["has_google_maps"] is True
    assert "secret" not in str(body)


def test_trip_and_estimate(client):
    assert set_trip(client)["tripState"]["status"] == "ready"

    res = client.post("/tools/estimate_trip", json={"session_id": "web-1"})
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["distanceMeters"] == 8000
    assert len(body["pricingOptions"]) == 5


def test_rejected_input_is_reported_in_body(client):
    res = client.post("/tools/estimate_trip", json={"session_id": "empty"})
    assert res.status_code == 200
    assert res.json()["ok"] is False
    assert res.json()["errorType"] == "PreconditionFailed"


def test_unknown_tool_is_404(client):
    assert client.post("/tools/book_helicopter", json={"args": {}}).status_code == 404


def test_provider_error_is_502():
    engine = engine_with(lambda request: httpx.Response(200, json={"status": "SOMETHING_NEW"}))
    app.dependency_overrides[get_tools] = lambda: engine
    try:
        client = TestClient(app)
        set_trip(client)
        res = client.post("/tools/estimate_trip", json={"session_id": "web-1"})
        assert res.status_code == 502
        assert "Routing provider error" in res.json()["detail"]
    finally:
        app.dependency_overrides.clear()
