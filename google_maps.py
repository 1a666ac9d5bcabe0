"""
Google Maps API integration for distance/duration, route planning and place search.

Every call is bounded by MAPS_HTTP_TIMEOUT and every failure is raised as a
typed ProviderFailure so the route layer can decide between falling back and
propagating.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

from errors import (
    InvalidProviderRequest,
    NoRouteFound,
    ProviderError,
    ProviderUnavailable,
)
from schemas import Coordinate

load_dotenv()

logger = logging.getLogger(__name__)

GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY") or os.getenv("GOOGLE_MAPS_API_KEY")
if not GOOGLE_API_KEY:
    logger.warning("GOOGLE_API_KEY not set in .env. Routes will use the local distance estimate.")

# Keep this short: a slow provider must fall back, not stall the conversation
HTTP_TIMEOUT = float(os.getenv("MAPS_HTTP_TIMEOUT", "5.0"))
MAPS_LANGUAGE = os.getenv("MAPS_LANGUAGE", "en")

BASE_URL = "https://maps.googleapis.com/maps/api"

NO_ROUTE_STATUSES = {"ZERO_RESULTS", "NOT_FOUND"}
INVALID_REQUEST_STATUSES = {"INVALID_REQUEST", "MAX_WAYPOINTS_EXCEEDED", "MAX_ROUTE_LENGTH_EXCEEDED", "MAX_ELEMENTS_EXCEEDED"}
UNAVAILABLE_STATUSES = {"REQUEST_DENIED", "OVER_QUERY_LIMIT", "OVER_DAILY_LIMIT", "UNKNOWN_ERROR"}


def raise_for_google_status(status: Optional[str], error_message: Optional[str] = None, api: str = "Google Maps") -> None:
    """Translate a Google web-service status into the provider failure taxonomy."""
    if status == "OK":
        return
    detail = f"{api} returned {status}" + (f": {error_message}" if error_message else "")
    if status in NO_ROUTE_STATUSES:
        raise NoRouteFound(detail, status=status)
    if status in INVALID_REQUEST_STATUSES:
        raise InvalidProviderRequest(detail, status=status)
    if status in UNAVAILABLE_STATUSES:
        raise ProviderUnavailable(detail, status=status)
    raise ProviderError(detail, status=status)


class GoogleMapsService:
    """Service for interacting with Google Maps APIs"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        language: str = MAPS_LANGUAGE,
    ):
        self.googleApiKey = api_key if api_key is not None else GOOGLE_API_KEY
        self.timeout = timeout
        self.language = language
        self._transport = transport

    async def _get_json(self, path: str, params: Dict[str, Any], api: str) -> Dict[str, Any]:
        if not self.googleApiKey:
            raise ProviderUnavailable("Google API key not configured", status="NO_API_KEY")

        url = f"{BASE_URL}/{path}"
        query = {**params, "key": self.googleApiKey}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                res = await client.get(url, params=query)
                res.raise_for_status()
                data = res.json()
        except httpx.TimeoutException as error:
            raise ProviderUnavailable(f"{api} timed out after {self.timeout}s", status="TIMEOUT") from error
        except httpx.HTTPStatusError as error:
            code = error.response.status_code
            if code >= 500 or code == 429:
                raise ProviderUnavailable(f"{api} HTTP {code}", status=f"HTTP_{code}") from error
            raise ProviderError(f"{api} HTTP {code}", status=f"HTTP_{code}") from error
        except httpx.TransportError as error:
            raise ProviderUnavailable(f"{api} unreachable: {error}", status="NETWORK") from error
        except ValueError as error:
            raise ProviderError(f"{api} returned a non-JSON payload", status="MALFORMED") from error

        if not isinstance(data, dict):
            raise ProviderError(f"{api} returned an unexpected payload", status="MALFORMED")
        return data

    async def getDistanceMatrix(self, origin: Coordinate, destination: Coordinate) -> Dict[str, int]:
        """
        Get distance and duration from the Google Distance Matrix API.

        Returns:
            {"distanceMeters": int, "durationSeconds": int}
        """
        logger.info("Calling Google Maps Distance Matrix API")
        data = await self._get_json(
            "distancematrix/json",
            {
                "origins": origin.as_param(),
                "destinations": destination.as_param(),
                "units": "metric",
                "language": self.language,
            },
            api="Distance Matrix",
        )
        raise_for_google_status(data.get("status"), data.get("error_message"), api="Distance Matrix")

        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError) as error:
            raise ProviderError("No elements returned from Distance Matrix API", status="MALFORMED") from error

        raise_for_google_status(element.get("status"), api="Distance Matrix element")

        try:
            return {
                "distanceMeters": int(element["distance"]["value"]),
                "durationSeconds": int(element["duration"]["value"]),
            }
        except (KeyError, TypeError, ValueError) as error:
            raise ProviderError("Missing distance or duration in API response", status="MALFORMED") from error

    async def fetchGoogleRoute(
        self,
        origin: Coordinate,
        destination: Coordinate,
        waypoints: Optional[List[Coordinate]] = None,
        avoid_tolls: bool = False,
        avoid_highways: bool = False,
    ) -> Dict[str, Any]:
        """
        Fetch a route from the Google Maps Directions API.

        Distance and duration are summed over all legs (one leg per waypoint + 1).

        Returns:
            {"distanceMeters": int, "durationSeconds": int, "polyline": str | None}
        """
        params: Dict[str, Any] = {
            "origin": origin.as_param(),
            "destination": destination.as_param(),
            "units": "metric",
            "language": self.language,
        }
        if waypoints:
            params["waypoints"] = "|".join(wp.as_param() for wp in waypoints)

        avoid = []
        if avoid_tolls:
            avoid.append("tolls")
        if avoid_highways:
            avoid.append("highways")
        if avoid:
            params["avoid"] = "|".join(avoid)

        logger.info(f"Calling Google Maps Directions API ({len(waypoints or [])} waypoints, avoid={avoid or None})")
        data = await self._get_json("directions/json", params, api="Directions")
        raise_for_google_status(data.get("status"), data.get("error_message"), api="Directions")

        routes = data.get("routes") or []
        if not routes:
            raise NoRouteFound("No routes found from Google Maps", status="ZERO_RESULTS")

        route = routes[0]
        try:
            total_distance = sum(int(leg["distance"]["value"]) for leg in route["legs"])
            total_duration = sum(int(leg["duration"]["value"]) for leg in route["legs"])
        except (KeyError, TypeError, ValueError) as error:
            raise ProviderError("Route legs missing distance or duration", status="MALFORMED") from error

        return {
            "distanceMeters": total_distance,
            "durationSeconds": total_duration,
            "polyline": (route.get("overview_polyline") or {}).get("points"),
        }

    async def fetchPlaces(self, query: str, bias: Optional[Coordinate] = None, radius_meters: int = 5000) -> List[Dict[str, Any]]:
        """
        Search places with the Google Places Text Search API.

        Args:
            query: free-text place query
            bias: optional location to prioritise nearby results

        Returns:
            Raw place results (possibly empty), in provider relevance order
        """
        params: Dict[str, Any] = {"query": query, "language": self.language}
        if bias is not None:
            params["location"] = bias.as_param()
            params["radius"] = radius_meters

        logger.info(f"Calling Google Places Text Search for {query!r}")
        data = await self._get_json("place/textsearch/json", params, api="Places")
        if data.get("status") == "ZERO_RESULTS":
            return []
        raise_for_google_status(data.get("status"), data.get("error_message"), api="Places")
        return data.get("results") or []


# Global instance
_google_maps_service: Optional[GoogleMapsService] = None


def get_google_maps_service() -> GoogleMapsService:
    """Get or create the global Google Maps service instance"""
    global _google_maps_service
    if _google_maps_service is None:
        _google_maps_service = GoogleMapsService()
    return _google_maps_service
