"""
Tests for the Google Maps client and the route fallback path.

HTTP is faked with httpx.MockTransport; nothing here reaches the network.
"""
import asyncio

import httpx
import pytest

from errors import (
    InvalidProviderRequest,
    NoRouteFound,
    ProviderError,
    ProviderUnavailable,
)
from geo_math import distance, path_distance
from google_maps import GoogleMapsService, raise_for_google_status
from route_provider import PREFERENCES_NOT_APPLIED, RouteProvider
from schemas import Coordinate, RoutePreferences

ORIGIN = Coordinate(latitude=10.5, longitude=-66.9)
DESTINATION = Coordinate(latitude=10.6, longitude=-66.8)
STOP = Coordinate(latitude=10.52, longitude=-66.85)


def maps_with(handler, api_key="test-key"):
    return GoogleMapsService(api_key=api_key, transport=httpx.MockTransport(handler))


def matrix_ok(request):
    return httpx.Response(200, json={
        "status": "OK",
        "rows": [{"elements": [{"status": "OK", "distance": {"value": 15234}, "duration": {"value": 1710}}]}],
    })


def directions_ok(request):
    return httpx.Response(200, json={
        "status": "OK",
        "routes": [{
            "legs": [
                {"distance": {"value": 4000}, "duration": {"value": 500}},
                {"distance": {"value": 12000}, "duration": {"value": 1300}},
            ],
            "overview_polyline": {"points": "_p~iF~ps|U_ulLnnqC_mqNvxq`@"},
        }],
    })


def status_response(status):
    def handler(request):
        return httpx.Response(200, json={"status": status, "rows": [], "routes": []})
    return handler


def raising(exc):
    def handler(request):
        raise exc
    return handler


# ============================================================================
# GOOGLE STATUS MAPPING
# ============================================================================

@pytest.mark.parametrize("status, expected", [
    ("ZERO_RESULTS", NoRouteFound),
    ("NOT_FOUND", NoRouteFound),
    ("INVALID_REQUEST", InvalidProviderRequest),
    ("MAX_WAYPOINTS_EXCEEDED", InvalidProviderRequest),
    ("REQUEST_DENIED", ProviderUnavailable),
    ("OVER_QUERY_LIMIT", ProviderUnavailable),
    ("UNKNOWN_ERROR", ProviderUnavailable),
    ("SOMETHING_NEW", ProviderError),
])
def test_google_status_mapping(status, expected):
    with pytest.raises(expected) as info:
        raise_for_google_status(status)
    assert type(info.value) is expected
    assert info.value.status == status


def test_ok_status_passes():
    raise_for_google_status("OK")


# ============================================================================
# GOOGLE MAPS SERVICE
# ============================================================================

def test_distance_matrix_request_and_parsing():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return matrix_ok(request)

    result = asyncio.run(maps_with(handler).getDistanceMatrix(ORIGIN, DESTINATION))

    assert result == {"distanceMeters": 15234, "durationSeconds": 1710}
    assert seen["path"].endswith("/distancematrix/json")
    assert seen["params"]["origins"] == "10.5,-66.9"
    assert seen["params"]["destinations"] == "10.6,-66.8"
    assert seen["params"]["key"] == "test-key"


def test_directions_sums_legs_and_sends_waypoints_and_avoid():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return directions_ok(request)

    maps = maps_with(handler)
    result = asyncio.run(maps.fetchGoogleRoute(ORIGIN, DESTINATION, [STOP], avoid_tolls=True, avoid_highways=True))

    assert result["distanceMeters"] == 16000
    assert result["durationSeconds"] == 1800
    assert result["polyline"] == "_p~iF~ps|U_ulLnnqC_mqNvxq`@"
    assert seen["params"]["waypoints"] == "10.52,-66.85"
    assert seen["params"]["avoid"] == "tolls|highways"


def test_missing_api_key_is_unavailable_without_calling_out():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ProviderUnavailable):
        asyncio.run(maps_with(handler, api_key="").getDistanceMatrix(ORIGIN, DESTINATION))


@pytest.mark.parametrize("handler, expected", [
    (raising(httpx.ReadTimeout("slow")), ProviderUnavailable),
    (raising(httpx.ConnectError("down")), ProviderUnavailable),
    (lambda request: httpx.Response(503), ProviderUnavailable),
    (lambda request: httpx.Response(429), ProviderUnavailable),
    (lambda request: httpx.Response(403), ProviderError),
    (lambda request: httpx.Response(200, text="<html>"), ProviderError),
])
def test_transport_failures_are_classified(handler, expected):
    with pytest.raises(expected):
        asyncio.run(maps_with(handler).getDistanceMatrix(ORIGIN, DESTINATION))


def test_distance_matrix_element_status_is_checked():
    def handler(request):
        return httpx.Response(200, json={"status": "OK", "rows": [{"elements": [{"status": "ZERO_RESULTS"}]}]})

    with pytest.raises(NoRouteFound):
        asyncio.run(maps_with(handler).getDistanceMatrix(ORIGIN, DESTINATION))


def test_place_search_zero_results_is_empty():
    assert asyncio.run(maps_with(status_response("ZERO_RESULTS")).fetchPlaces("nowhere")) == []


def test_place_search_sends_location_bias():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"status": "OK", "results": [{"name": "Plaza"}]})

    results = asyncio.run(maps_with(handler).fetchPlaces("plaza", bias=ORIGIN))
    assert results == [{"name": "Plaza"}]
    assert seen["params"]["location"] == "10.5,-66.9"
    assert seen["params"]["radius"] == "5000"


# ============================================================================
# ROUTE PROVIDER
# ============================================================================

def test_provider_result_is_used_when_available():
    routes = RouteProvider(maps_with(matrix_ok))
    measurement = asyncio.run(routes.distance_and_duration(ORIGIN, DESTINATION))
    assert measurement.distance_meters == 15234
    assert measurement.duration_seconds == 1710
    assert measurement.used_fallback is False
    assert measurement.warning is None


@pytest.mark.parametrize("handler", [
    status_response("OVER_QUERY_LIMIT"),
    status_response("ZERO_RESULTS"),
    status_response("INVALID_REQUEST"),
    raising(httpx.ReadTimeout("slow")),
])
def test_distance_falls_back_to_haversine(handler):
    measurement = asyncio.run(RouteProvider(maps_with(handler)).distance_and_duration(ORIGIN, DESTINATION))
    expected = distance(ORIGIN, DESTINATION)

    assert measurement.used_fallback is True
    assert measurement.warning
    assert measurement.distance_meters == round(expected)
    assert measurement.duration_seconds == round(expected / (30000 / 3600))


def test_route_falls_back_through_waypoints_in_order():
    routes = RouteProvider(maps_with(status_response("UNKNOWN_ERROR")))
    measurement = asyncio.run(routes.route(ORIGIN, DESTINATION, [STOP]))

    assert measurement.used_fallback is True
    assert measurement.polyline is None
    assert measurement.distance_meters == round(path_distance([ORIGIN, STOP, DESTINATION]))


def test_route_fallback_warns_about_unapplied_preferences():
    routes = RouteProvider(maps_with(status_response("REQUEST_DENIED")))
    measurement = asyncio.run(routes.route(ORIGIN, DESTINATION, preferences=RoutePreferences(avoid_tolls=True)))
    assert measurement.warning.endswith(PREFERENCES_NOT_APPLIED)


def test_no_route_warning_differs_from_unavailable():
    no_route = asyncio.run(RouteProvider(maps_with(status_response("ZERO_RESULTS"))).route(ORIGIN, DESTINATION))
    down = asyncio.run(RouteProvider(maps_with(status_response("REQUEST_DENIED"))).route(ORIGIN, DESTINATION))
    assert no_route.warning != down.warning


def test_unclassified_provider_error_propagates():
    routes = RouteProvider(maps_with(status_response("SOMETHING_NEW")))
    with pytest.raises(ProviderError):
        asyncio.run(routes.distance_and_duration(ORIGIN, DESTINATION))
    with pytest.raises(ProviderError):
        asyncio.run(routes.route(ORIGIN, DESTINATION))
