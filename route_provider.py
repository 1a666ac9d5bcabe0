"""
Distance/duration and route lookup with a deterministic local fallback.

Google Maps is always tried first. When it is unavailable, finds no route, or
rejects the request, the straight-line Haversine distance and the 30 km/h
duration model are used instead and the result is flagged with a warning.
Unclassified provider errors propagate.
"""
import logging
from typing import List, Optional, Sequence

from errors import InvalidProviderRequest, NoRouteFound, ProviderFailure
from geo_math import estimate_duration, path_distance
from google_maps import GoogleMapsService, get_google_maps_service
from schemas import Coordinate, RouteMeasurement, RoutePreferences

logger = logging.getLogger(__name__)

PREFERENCES_NOT_APPLIED = (
    " Route preferences (avoid tolls/highways) could not be applied to the estimate."
)


def fallback_warning(error: ProviderFailure) -> str:
    """Human-readable explanation attached to every fallback result."""
    if isinstance(error, NoRouteFound):
        return (
            "No road route was found by the routing provider. "
            "A straight-line estimate was used; the actual route may vary."
        )
    if isinstance(error, InvalidProviderRequest):
        return (
            f"The routing provider could not process the request ({error.status}). "
            "A straight-line estimate was used."
        )
    return (
        "The routing provider is unavailable. "
        "A straight-line estimate was used; for better accuracy configure GOOGLE_API_KEY."
    )


def estimate_measurement(points: Sequence[Coordinate], warning: str) -> RouteMeasurement:
    """Local estimate over the points in visiting order."""
    meters = path_distance(list(points))
    return RouteMeasurement(
        distance_meters=int(round(meters)),
        duration_seconds=int(round(estimate_duration(meters))),
        polyline=None,
        used_fallback=True,
        warning=warning,
    )


class RouteProvider:
    """Stateless service over the directions/matrix provider."""

    def __init__(self, maps: Optional[GoogleMapsService] = None):
        self.maps = maps or get_google_maps_service()

    async def distance_and_duration(self, origin: Coordinate, destination: Coordinate) -> RouteMeasurement:
        """Direct origin -> destination distance and duration (distance-matrix phase)."""
        try:
            result = await self.maps.getDistanceMatrix(origin, destination)
        except ProviderFailure as error:
            if not error.recoverable:
                logger.error(f"Distance Matrix failed with an unrecoverable error: {error}")
                raise
            logger.warning(f"Distance Matrix failed ({error.status}): {error}. Using estimated distance.")
            return estimate_measurement([origin, destination], fallback_warning(error))

        return RouteMeasurement(
            distance_meters=result["distanceMeters"],
            duration_seconds=result["durationSeconds"],
        )

    async def route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        waypoints: Optional[List[Coordinate]] = None,
        preferences: Optional[RoutePreferences] = None,
    ) -> RouteMeasurement:
        """
        Full route origin -> waypoints (insertion order) -> destination.

        Avoid-flags are only honoured by the external provider; the local
        estimate has no road graph and says so in its warning.
        """
        waypoints = list(waypoints or [])
        preferences = preferences or RoutePreferences()

        try:
            result = await self.maps.fetchGoogleRoute(
                origin,
                destination,
                waypoints,
                avoid_tolls=preferences.avoid_tolls,
                avoid_highways=preferences.avoid_highways,
            )
        except ProviderFailure as error:
            if not error.recoverable:
                logger.error(f"Directions failed with an unrecoverable error: {error}")
                raise
            logger.warning(f"Directions failed ({error.status}): {error}. Using estimated route.")
            warning = fallback_warning(error)
            if preferences.avoid_tolls or preferences.avoid_highways:
                warning += PREFERENCES_NOT_APPLIED
            return estimate_measurement([origin, *waypoints, destination], warning)

        return RouteMeasurement(
            distance_meters=result["distanceMeters"],
            duration_seconds=result["durationSeconds"],
            polyline=result.get("polyline"),
        )
