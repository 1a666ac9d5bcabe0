"""
Two-phase trip quoting.

Phase 1 (estimate): direct distance/duration, indicative prices for every tier.
Phase 2 (finalize): full route through the waypoints, price for the selected
tier computed from Phase 2's own distance/duration, and an ETA.

Callers must run Phase 1 for an origin/destination pair before Phase 2; this
is not tracked here. Neither phase mutates the trip state.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

import polyline

from pricing import PricingModel, parse_tier
from route_provider import RouteProvider
from schemas import (
    Eta,
    RoutePreferences,
    RouteResult,
    TripEstimate,
    TripState,
    VehicleTier,
)
from trip_state import require_quotable

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def human_duration(seconds: float) -> str:
    minutes = int(round(seconds / 60))
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def decode_path(encoded: Optional[str]):
    """Decode an encoded polyline to [[lat, lng], ...]; empty when absent or unreadable."""
    if not encoded:
        return []
    try:
        return [[lat, lng] for lat, lng in polyline.decode(encoded)]
    except (IndexError, ValueError, TypeError) as error:
        logger.warning(f"Could not decode route polyline: {error}")
        return []


class QuotingProtocol:
    def __init__(
        self,
        routes: Optional[RouteProvider] = None,
        pricing: Optional[PricingModel] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.routes = routes or RouteProvider()
        self.pricing = pricing or PricingModel()
        self.clock = clock

    async def estimate(self, trip: TripState) -> TripEstimate:
        """
        Phase 1: distance-matrix lookup and the full tier/price table.

        Raises:
            PreconditionFailed: origin or destination missing
            ProviderError: unrecoverable provider failure
        """
        require_quotable(trip)

        measurement = await self.routes.distance_and_duration(
            trip.origin.coordinates,
            trip.destination.coordinates,
        )
        options = self.pricing.price_for_all_tiers(measurement.distance_meters, measurement.duration_seconds)

        logger.info(
            f"Estimate {trip.origin.name} -> {trip.destination.name}: "
            f"{measurement.distance_meters} m, {measurement.duration_seconds} s, fallback={measurement.used_fallback}"
        )
        return TripEstimate(
            distance_meters=measurement.distance_meters,
            duration_seconds=measurement.duration_seconds,
            human_duration=human_duration(measurement.duration_seconds),
            pricing_options=options,
            used_fallback=measurement.used_fallback,
            warning=measurement.warning,
        )

    async def finalize(
        self,
        trip: TripState,
        tier: Union[str, VehicleTier],
        preferences: Optional[RoutePreferences] = None,
    ) -> RouteResult:
        """
        Phase 2: committed route, selected-tier price and ETA.

        The price is recomputed from this call's distance/duration, so it may
        differ from the Phase 1 figure for the same tier.
        """
        tier = parse_tier(tier)
        require_quotable(trip)

        measurement = await self.routes.route(
            trip.origin.coordinates,
            trip.destination.coordinates,
            [wp.coordinates for wp in trip.waypoints],
            preferences,
        )
        quote = self.pricing.price_for(measurement.distance_meters, measurement.duration_seconds, tier)
        arrival = self.clock() + timedelta(seconds=measurement.duration_seconds)

        logger.info(
            f"Route {trip.origin.name} -> {trip.destination.name} ({tier.value}): "
            f"{measurement.distance_meters} m, {quote.estimated_price} {quote.currency}"
        )
        return RouteResult(
            distance_meters=measurement.distance_meters,
            duration_seconds=measurement.duration_seconds,
            polyline=measurement.polyline,
            path=decode_path(measurement.polyline),
            vehicle_type=tier,
            quote=quote,
            eta=Eta(
                arrival_timestamp=arrival.isoformat(),
                human_duration=human_duration(measurement.duration_seconds),
            ),
            used_fallback=measurement.used_fallback,
            warning=measurement.warning,
        )
