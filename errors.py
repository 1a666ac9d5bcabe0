"""
Error taxonomy for the trip engine.

Two families:
- rejected input / precondition errors: raised before any state mutation
- provider failures: the recoverable ones are absorbed by the route fallback,
  ProviderError is not
"""
from typing import Any, Dict, Optional


class MobilityError(Exception):
    """Base exception for all trip engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InvalidCoordinate(MobilityError):
    """Latitude/longitude out of range, non-finite, or too close to a pole."""
    pass


class PreconditionFailed(MobilityError):
    """Quoting attempted without both trip endpoints set."""
    pass


class InvalidStateTransition(MobilityError):
    """External trip signal not legal from the current status."""
    pass


class InvalidVehicleTier(MobilityError):
    pass


class InvalidAdjustment(MobilityError):
    pass


class PricingInconsistency(MobilityError):
    """A price could not be computed from a valid distance/duration."""
    pass


class LocationNotFound(MobilityError):
    pass


class InvalidSelection(MobilityError):
    """Disambiguation answer does not match any offered option."""
    pass


# Provider failures

class ProviderFailure(MobilityError):
    """Base class for directions/matrix/places provider failures."""

    recoverable = True

    def __init__(self, message: str, status: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status = status


class ProviderUnavailable(ProviderFailure):
    """
    No credentials, network failure, timeout, or a transient provider status
    (quota, server error).
    """
    pass


class NoRouteFound(ProviderFailure):
    pass


class InvalidProviderRequest(ProviderFailure):
    pass


class ProviderError(ProviderFailure):
    """Unclassified provider failure. Never masked by the fallback path."""

    recoverable = False
