"""
Tiered fare calculation.

The fare table is process-wide, read-only configuration. The same PricingModel
(and therefore the same constants) prices both the multi-tier estimate and the
committed single-tier route. Only the committed route is surged.
"""
import logging
import math
import os
import random
from types import MappingProxyType
from typing import List, NamedTuple, Optional, Union

from dotenv import load_dotenv

from errors import InvalidVehicleTier, PricingInconsistency
from schemas import PriceBreakdown, PriceQuote, VehicleTier

load_dotenv()

logger = logging.getLogger(__name__)

PRICING_CURRENCY = os.getenv("PRICING_CURRENCY", "USD")
SURGE_PROBABILITY = float(os.getenv("SURGE_PROBABILITY", "0.2"))
SURGE_MIN = float(os.getenv("SURGE_MIN", "1.2"))
SURGE_MAX = float(os.getenv("SURGE_MAX", "1.5"))


class TierRates(NamedTuple):
    base_fare: float
    per_km_rate: float
    per_minute_rate: float


# Canonical tier order for multi-tier quotes
TIER_ORDER = (
    VehicleTier.MOTO,
    VehicleTier.ECONOMY,
    VehicleTier.COMFORT,
    VehicleTier.PREMIUM,
    VehicleTier.XL,
)

FARE_TABLE = MappingProxyType({
    VehicleTier.MOTO: TierRates(1.5, 0.8, 0.15),
    VehicleTier.ECONOMY: TierRates(2.5, 1.2, 0.25),
    VehicleTier.COMFORT: TierRates(4.0, 1.8, 0.35),
    VehicleTier.PREMIUM: TierRates(6.0, 2.5, 0.50),
    VehicleTier.XL: TierRates(5.0, 2.0, 0.40),
})


def parse_tier(value: Union[str, VehicleTier]) -> VehicleTier:
    """Accept "Economy", " XL ", VehicleTier.MOTO, ..."""
    if isinstance(value, VehicleTier):
        return value
    try:
        return VehicleTier(str(value).strip().lower())
    except ValueError:
        raise InvalidVehicleTier(
            f"Unknown vehicle type '{value}'. Expected one of: {', '.join(t.value for t in TIER_ORDER)}",
            context={"vehicle_type": value},
        )


# ============================================================================
# SURGE SOURCES
# ============================================================================

class SurgeSource:
    """Demand signal: ``next()`` returns the multiplier for the next quote."""

    def next(self) -> float:
        raise NotImplementedError


class FixedSurge(SurgeSource):
    def __init__(self, multiplier: float = 1.0):
        self.multiplier = multiplier

    def next(self) -> float:
        return self.multiplier


class RandomSurge(SurgeSource):
    """
    Simulated demand surge: with ``probability`` draw a multiplier uniformly
    from [low, high], otherwise 1.0.
    """

    def __init__(
        self,
        probability: float = SURGE_PROBABILITY,
        low: float = SURGE_MIN,
        high: float = SURGE_MAX,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= probability <= 1.0:
            raise ValueError("probability must be within [0, 1]")
        if not 1.0 <= low <= high:
            raise ValueError("surge range must satisfy 1.0 <= low <= high")
        self.probability = probability
        self.low = low
        self.high = high
        self._rng = rng or random.Random()

    def next(self) -> float:
        if self._rng.random() < self.probability:
            return self._rng.uniform(self.low, self.high)
        return 1.0


# ============================================================================
# PRICING MODEL
# ============================================================================

def _check_measure(name: str, value: float) -> None:
    if value is None or not math.isfinite(value) or value < 0:
        raise PricingInconsistency(
            f"Cannot price a trip with {name}={value!r}",
            context={name: value},
        )


class PricingModel:
    """
    price = (baseFare + km * perKmRate + minutes * perMinuteRate) * surge

    Monetary outputs are rounded to 2 decimals. Breakdown components are
    rounded independently, so they may not sum exactly to the final price.
    """

    def __init__(self, surge: Optional[SurgeSource] = None, currency: str = PRICING_CURRENCY):
        self.surge = surge or RandomSurge()
        self.currency = currency
        self.fare_table = FARE_TABLE

    def _quote(self, distance_meters: float, duration_seconds: float, tier: VehicleTier, multiplier: float) -> PriceQuote:
        rates = self.fare_table[tier]
        distance_km = distance_meters / 1000
        duration_min = duration_seconds / 60

        distance_fare = distance_km * rates.per_km_rate
        time_fare = duration_min * rates.per_minute_rate
        price = (rates.base_fare + distance_fare + time_fare) * multiplier

        if not math.isfinite(price) or price < 0:
            raise PricingInconsistency(
                f"Computed an invalid price ({price!r}) for {tier.value}",
                context={"distance_meters": distance_meters, "duration_seconds": duration_seconds},
            )

        return PriceQuote(
            vehicle_type=tier,
            estimated_price=round(price, 2),
            currency=self.currency,
            breakdown=PriceBreakdown(
                base_fare=round(rates.base_fare, 2),
                distance_fare=round(distance_fare, 2),
                time_fare=round(time_fare, 2),
                surge_multiplier=round(multiplier, 2) if multiplier > 1.0 else None,
            ),
        )

    def _next_multiplier(self) -> float:
        multiplier = self.surge.next()
        if multiplier is None or not math.isfinite(multiplier) or multiplier <= 0:
            raise PricingInconsistency(
                f"Surge source returned an invalid multiplier: {multiplier!r}",
                context={"surge_multiplier": multiplier},
            )
        if multiplier > 1.0:
            logger.info(f"Surge pricing active: x{multiplier:.2f}")
        return multiplier

    def price_for(self, distance_meters: float, duration_seconds: float, tier: Union[str, VehicleTier]) -> PriceQuote:
        tier = parse_tier(tier)
        _check_measure("distance_meters", distance_meters)
        _check_measure("duration_seconds", duration_seconds)
        return self._quote(distance_meters, duration_seconds, tier, self._next_multiplier())

    def price_for_all_tiers(self, distance_meters: float, duration_seconds: float) -> List[PriceQuote]:
        """
        Indicative quotes for every tier in canonical order.

        The comparison table is never surged; surge applies only to the
        committed single-tier price from price_for.
        """
        _check_measure("distance_meters", distance_meters)
        _check_measure("duration_seconds", duration_seconds)
        return [self._quote(distance_meters, duration_seconds, tier, 1.0) for tier in TIER_ORDER]
