"""
Tool layer consumed by the conversational front end.

Each tool takes plain JSON arguments plus the session id and returns a dict:
{"ok": True, ...} on success, {"ok": False, "error": ...} when the input or the
trip state is rejected. Unrecoverable provider errors are raised, not folded
into a result.
"""
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from disambiguation import (
    DisambiguationCollaborator,
    PendingDisambiguation,
    resolve_place,
    select_candidate,
)
from errors import MobilityError, ProviderError
from geo_math import micro_adjust
from google_maps import GoogleMapsService, get_google_maps_service
from preferences import PreferenceService
from pricing import PricingModel
from quoting import QuotingProtocol
from route_provider import RouteProvider
from schemas import (
    Coordinate,
    DisambiguationRequest,
    DisambiguationResponse,
    GeocodingCandidate,
    Location,
    RoutePreferences,
    RouteResult,
    TripEstimate,
    TripHistoryEntry,
    TripState,
)
from session_store import SessionLocks, SessionStore, get_session_store, session_key
from trip_state import TripStateService

logger = logging.getLogger(__name__)

ESTIMATE_NAMESPACE = "estimate"
ROUTE_NAMESPACE = "route"
DISAMBIGUATION_NAMESPACE = "disambiguation"

TRIP_ACTIONS = (
    "set_origin", "set_destination", "update_origin", "update_destination",
    "add_waypoint", "get_state", "clear",
)
PREFERENCE_ACTIONS = (
    "get_preferences", "update_preferences", "get_saved_locations",
    "save_location", "get_trip_history",
)
TRIP_SIGNALS = ("started", "completed")
LOCATION_TARGETS = ("origin", "destination", "waypoint")

tools = [
  { "type": "function", "function": {
      "name": "trip_state",
      "description": "Set or read the trip origin, destination and waypoints. Status becomes 'ready' once origin and destination are both set.",
      "parameters": {
        "type": "object",
        "properties": {
          "action": {"type": "string", "enum": list(TRIP_ACTIONS)},
          "location": {
            "type": "object",
            "properties": {
              "name": {"type": "string"},
              "coordinates": {"type": "object", "properties": {"latitude": {"type": "number"}, "longitude": {"type": "number"}}, "required": ["latitude", "longitude"]},
              "placeId": {"type": "string"}
            },
            "required": ["coordinates"]
          }
        },
        "required": ["action"]
      }
  }},
  { "type": "function", "function": {
      "name": "estimate_trip",
      "description": "Phase 1: distance, duration and estimated prices for every vehicle type (moto, economy, comfort, premium, xl). Call BEFORE calculate_route.",
      "parameters": {"type": "object", "properties": {}}
  }},
  { "type": "function", "function": {
      "name": "calculate_route",
      "description": "Phase 2: full route through the waypoints, final price for the selected vehicle type and ETA. Only after estimate_trip and the user's choice.",
      "parameters": {
        "type": "object",
        "properties": {
          "vehicle_type": {"type": "string", "enum": ["moto", "economy", "comfort", "premium", "xl"]},
          "preferences": {"type": "object", "properties": {"avoidTolls": {"type": "boolean"}, "avoidHighways": {"type": "boolean"}}}
        }
      }
  }},
  { "type": "function", "function": {
      "name": "trip_signal",
      "description": "Report that the trip has started or finished.",
      "parameters": {"type": "object", "properties": {"signal": {"type": "string", "enum": list(TRIP_SIGNALS)}}, "required": ["signal"]}
  }},
  { "type": "function", "function": {
      "name": "micro_adjust",
      "description": "Move a point by a relative instruction such as '10 meters to the right' or 'two streets ahead'. Extract direction/distance/streets from the user's words first.",
      "parameters": {
        "type": "object",
        "properties": {
          "anchor_point": {"type": "object", "properties": {"latitude": {"type": "number"}, "longitude": {"type": "number"}}},
          "instruction": {
            "type": "object",
            "properties": {
              "direction": {"type": "string"},
              "distance": {"type": "number"},
              "relativeDirection": {"type": "string"},
              "constraints": {"type": "object", "properties": {"streets": {"type": "integer"}, "landmark": {"type": "string"}}}
            }
          },
          "apply_to": {"type": "string", "enum": ["origin", "destination"]}
        },
        "required": ["instruction"]
      }
  }},
  { "type": "function", "function": {
      "name": "preferences",
      "description": "Read or update route preferences, saved locations (Home, Work) and trip history.",
      "parameters": {
        "type": "object",
        "properties": {
          "action": {"type": "string", "enum": list(PREFERENCE_ACTIONS)},
          "location_name": {"type": "string"},
          "location": {"type": "object", "properties": {"coordinates": {"type": "object", "properties": {"latitude": {"type": "number"}, "longitude": {"type": "number"}}}}},
          "preferences": {"type": "object", "properties": {"avoidTolls": {"type": "boolean"}, "avoidHighways": {"type": "boolean"}, "preferredVehicleType": {"type": "string"}}}
        },
        "required": ["action"]
      }
  }},
  { "type": "function", "function": {
      "name": "resolve_place",
      "description": "Turn a place name into coordinates. May return status 'pending' with a question for the user; answer it by calling again with selected_option_id.",
      "parameters": {
        "type": "object",
        "properties": {
          "query": {"type": "string"},
          "set_as": {"type": "string", "enum": list(LOCATION_TARGETS)},
          "selected_option_id": {"type": "string"},
          "country": {"type": "string", "description": "Country the place is in, if the user said so"},
          "city": {"type": "string", "description": "City the place is in, if the user said so"}
        }
      }
  }},
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _rejected(error: Exception) -> Dict[str, Any]:
    if isinstance(error, ValidationError):
        details = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in error.errors()]
        return {"ok": False, "error": "Invalid arguments.", "errorType": "ValidationError", "details": details}
    return {"ok": False, "error": str(error), "errorType": type(error).__name__}


class MobilityTools:
    def __init__(
        self,
        store: Optional[SessionStore] = None,
        maps: Optional[GoogleMapsService] = None,
        pricing: Optional[PricingModel] = None,
        disambiguator: Optional[DisambiguationCollaborator] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store or get_session_store()
        self.clock = clock
        self.locks = SessionLocks()
        self.maps = maps or get_google_maps_service()
        self.trips = TripStateService(self.store, self.locks)
        self.preferences = PreferenceService(self.store, self.locks, clock)
        self.quoting = QuotingProtocol(RouteProvider(self.maps), pricing or PricingModel(), clock)
        self.disambiguator = disambiguator or PendingDisambiguation()
        self._handlers = {
            "trip_state": self.tool_trip_state,
            "estimate_trip": self.tool_estimate_trip,
            "calculate_route": self.tool_calculate_route,
            "trip_signal": self.tool_trip_signal,
            "micro_adjust": self.tool_micro_adjust,
            "preferences": self.tool_preferences,
            "resolve_place": self.tool_resolve_place,
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    async def _record(self, namespace: str, session_id: str, value: Dict[str, Any]) -> None:
        async with self.locks(session_id):
            self.store.set(session_key(namespace, session_id), value)

    async def _forget_quotes(self, session_id: str) -> None:
        """Drop the recorded estimate and route after any change to the trip."""
        async with self.locks(session_id):
            self.store.set(session_key(ESTIMATE_NAMESPACE, session_id), {})
            self.store.set(session_key(ROUTE_NAMESPACE, session_id), {})

    async def _apply_location(self, session_id: str, target: str, location: Location):
        if target == "origin":
            state = await self.trips.set_origin(session_id, location)
        elif target == "destination":
            state = await self.trips.set_destination(session_id, location)
        else:
            state = await self.trips.add_waypoint(session_id, location)
        await self._forget_quotes(session_id)
        return state

    def last_estimate(self, session_id: str) -> Optional[TripEstimate]:
        record = self.store.get(session_key(ESTIMATE_NAMESPACE, session_id))
        return TripEstimate.model_validate(record) if record else None

    def _route_for_trip(self, session_id: str, state: TripState) -> Optional[RouteResult]:
        """The last committed route, only if it was priced for the trip's current endpoints."""
        record = self.store.get(session_key(ROUTE_NAMESPACE, session_id))
        if not record or not record.get("route"):
            return None
        if state.origin is None or state.destination is None:
            return None
        if (record.get("origin") != state.origin.coordinates.to_dict()
                or record.get("destination") != state.destination.coordinates.to_dict()):
            logger.info(f"Last route for session {session_id} was priced for other endpoints; not recorded in history.")
            return None
        return RouteResult.model_validate(record["route"])

    # ------------------------------------------------------------------ trip

    async def tool_trip_state(self, session_id: str, action: str, location: Optional[Dict[str, Any]] = None):
        """
        Manage origin / destination / waypoints for the session.
        The location must already carry coordinates (resolve place names first).
        """
        if action not in TRIP_ACTIONS:
            return {"ok": False, "error": f"Unknown trip action '{action}'. Expected one of: {', '.join(TRIP_ACTIONS)}"}

        if action == "get_state":
            response = {"ok": True, "tripState": self.trips.get(session_id).to_dict()}
            estimate = self.last_estimate(session_id)
            if estimate is not None:
                response["lastEstimate"] = estimate.to_dict()
            return response
        if action == "clear":
            state = await self.trips.clear(session_id)
            await self._forget_quotes(session_id)
            return {"ok": True, "tripState": state.to_dict()}

        if not location or not location.get("coordinates"):
            return {"ok": False, "error": f"A location with coordinates is required for '{action}'."}

        if action in ("set_origin", "update_origin"):
            target, default_name = "origin", "Origin"
        elif action in ("set_destination", "update_destination"):
            target, default_name = "destination", "Destination"
        else:
            # numbered inside the locked transition
            target, default_name = "waypoint", ""

        loc = Location.model_validate({**location, "name": location.get("name") or default_name})
        state = await self._apply_location(session_id, target, loc)
        return {"ok": True, "tripState": state.to_dict()}

    async def tool_trip_signal(self, session_id: str, signal: str):
        """External trip lifecycle signal: 'started' or 'completed'."""
        if signal == "started":
            state = await self.trips.start_trip(session_id)
            return {"ok": True, "tripState": state.to_dict()}
        if signal == "completed":
            state = await self.trips.complete_trip(session_id)
            route = self._route_for_trip(session_id, state)
            if route is not None:
                await self.preferences.add_trip_to_history(session_id, TripHistoryEntry(
                    origin=state.origin.name,
                    destination=state.destination.name,
                    date=self.clock().isoformat(),
                    price=route.quote.estimated_price,
                    currency=route.quote.currency,
                    vehicle_type=route.vehicle_type,
                ))
            return {"ok": True, "tripState": state.to_dict()}
        return {"ok": False, "error": f"Unknown trip signal '{signal}'. Expected one of: {', '.join(TRIP_SIGNALS)}"}

    # --------------------------------------------------------------- quoting

    async def tool_estimate_trip(self, session_id: str):
        """Phase 1: prices for every vehicle type."""
        trip = self.trips.get(session_id)
        estimate: TripEstimate = await self.quoting.estimate(trip)
        await self._record(ESTIMATE_NAMESPACE, session_id, estimate.to_dict())
        return {"ok": True, **estimate.to_dict()}

    async def tool_calculate_route(
        self,
        session_id: str,
        vehicle_type: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ):
        """
        Phase 2: committed route and final price for one vehicle type.
        Falls back to the stored preferred vehicle type and avoid-flags.
        """
        trip = self.trips.get(session_id)
        stored = self.preferences.get_preferences(session_id)
        route_prefs = (
            RoutePreferences.model_validate(preferences)
            if preferences is not None
            else RoutePreferences(avoid_tolls=stored.avoid_tolls, avoid_highways=stored.avoid_highways)
        )
        result = await self.quoting.finalize(trip, vehicle_type or stored.preferred_vehicle_type, route_prefs)
        await self._record(ROUTE_NAMESPACE, session_id, {
            "route": result.to_dict(),
            "origin": trip.origin.coordinates.to_dict(),
            "destination": trip.destination.coordinates.to_dict(),
        })
        return {"ok": True, **result.to_dict()}

    # ---------------------------------------------------------- micro adjust

    async def tool_micro_adjust(
        self,
        session_id: str,
        instruction: Dict[str, Any],
        anchor_point: Optional[Dict[str, Any]] = None,
        apply_to: Optional[str] = None,
    ):
        """
        Apply a relative move to a point. Without anchor_point, the trip
        endpoint named by apply_to is used as the anchor.
        """
        if apply_to not in (None, "origin", "destination"):
            return {"ok": False, "error": "apply_to must be 'origin' or 'destination'."}

        trip = self.trips.get(session_id)
        endpoint = getattr(trip, apply_to) if apply_to else None
        if anchor_point is not None:
            anchor = Coordinate.model_validate(anchor_point)
        elif endpoint is not None:
            anchor = endpoint.coordinates
        else:
            return {"ok": False, "error": "anchor_point is required when no trip endpoint is available to adjust."}

        constraints = instruction.get("constraints") or {}
        result = micro_adjust(
            anchor,
            instruction.get("direction"),
            distance_meters=instruction.get("distance"),
            relative_hint=instruction.get("relativeDirection"),
            streets=constraints.get("streets"),
            landmark=constraints.get("landmark"),
        )

        response: Dict[str, Any] = {"ok": True, **result.to_dict()}
        if apply_to:
            base_name = endpoint.name if endpoint else apply_to.capitalize()
            adjusted = Location(name=f"{base_name} (adjusted)", coordinates=result.coordinate)
            state = await self._apply_location(session_id, apply_to, adjusted)
            response["tripState"] = state.to_dict()
        return response

    # ------------------------------------------------------------ preferences

    async def tool_preferences(
        self,
        session_id: str,
        action: str,
        location_name: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ):
        if action == "get_preferences":
            return {"ok": True, "preferences": self.preferences.get_preferences(session_id).to_dict()}
        if action == "update_preferences":
            if not preferences:
                return {"ok": False, "error": "preferences are required for 'update_preferences'."}
            updated = await self.preferences.update_preferences(session_id, preferences)
            return {"ok": True, "preferences": updated.to_dict()}
        if action == "get_saved_locations":
            return {"ok": True, "savedLocations": [s.to_dict() for s in self.preferences.get_saved_locations(session_id)]}
        if action == "save_location":
            if not location_name or not location or not location.get("coordinates"):
                return {"ok": False, "error": "location_name and a location with coordinates are required to save a location."}
            coordinates = Coordinate.model_validate(location["coordinates"])
            saved = await self.preferences.save_location(session_id, location_name, coordinates)
            return {"ok": True, "savedLocations": [s.to_dict() for s in saved]}
        if action == "get_trip_history":
            return {"ok": True, "tripHistory": [h.to_dict() for h in self.preferences.get_trip_history(session_id)]}
        return {"ok": False, "error": f"Unknown preferences action '{action}'. Expected one of: {', '.join(PREFERENCE_ACTIONS)}"}

    # -------------------------------------------------------- place resolution

    async def tool_resolve_place(
        self,
        session_id: str,
        query: Optional[str] = None,
        set_as: Optional[str] = None,
        selected_option_id: Optional[str] = None,
        bias: Optional[Dict[str, Any]] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ):
        """
        Resolve a place name (saved locations first, then place search).

        A 'pending' answer carries the question for the user. Calling again
        with selected_option_id completes that pending question.
        """
        if set_as is not None and set_as not in LOCATION_TARGETS:
            return {"ok": False, "error": f"set_as must be one of: {', '.join(LOCATION_TARGETS)}"}

        if selected_option_id is not None:
            return await self._answer_pending(session_id, selected_option_id, set_as)

        if not query or len(query.strip()) < 2:
            return {"ok": False, "error": "Place name must be at least 2 characters long."}

        saved = self.preferences.find_saved_location(session_id, query)
        if saved is not None:
            location = Location(name=saved.name, coordinates=saved.coordinates)
            return await self._resolved(session_id, location, set_as, source="saved_location")

        trip = self.trips.get(session_id)
        if bias is not None:
            bias_point = Coordinate.model_validate(bias)
        else:
            bias_point = trip.origin.coordinates if trip.origin else None

        resolution = await resolve_place(
            query.strip(), self.maps, self.disambiguator, bias=bias_point, country=country, city=city,
        )
        if resolution.status == "pending":
            await self._record(DISAMBIGUATION_NAMESPACE, session_id, {
                "request": resolution.request.to_dict(),
                "candidates": [c.to_dict() for c in resolution.candidates],
                "setAs": set_as,
            })
            return {"ok": True, **resolution.to_dict()}
        return await self._resolved(session_id, resolution.location, set_as, source="place_search")

    async def _answer_pending(self, session_id: str, selected_option_id: str, set_as: Optional[str]):
        pending = self.store.get(session_key(DISAMBIGUATION_NAMESPACE, session_id))
        if not pending:
            return {"ok": False, "error": "There is no pending place question to answer."}

        request = DisambiguationRequest.model_validate(pending["request"])
        candidates = [GeocodingCandidate.model_validate(c) for c in pending["candidates"]]
        chosen = select_candidate(DisambiguationResponse(selected_option_id=selected_option_id), request, candidates)

        await self._record(DISAMBIGUATION_NAMESPACE, session_id, {})
        return await self._resolved(session_id, chosen.to_location(), set_as or pending.get("setAs"), source="disambiguation")

    async def _resolved(self, session_id: str, location: Location, set_as: Optional[str], source: str):
        response: Dict[str, Any] = {"ok": True, "status": "resolved", "source": source, "location": location.to_dict()}
        if set_as:
            state = await self._apply_location(session_id, set_as, location)
            response["tripState"] = state.to_dict()
        return response

    # -------------------------------------------------------------- dispatch

    async def call_tool(self, name: str, args: Optional[Dict[str, Any]], session_id: str) -> Dict[str, Any]:
        """
        Dispatch a tool call by name.

        Raises:
            KeyError: unknown tool
            ProviderError: unrecoverable routing provider failure
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(name)

        try:
            bound = inspect.signature(handler).bind(session_id, **(args or {}))
        except TypeError as error:
            return {"ok": False, "error": f"tool_{name} invocation error", "details": str(error)}

        try:
            return await handler(*bound.args, **bound.kwargs)
        except ProviderError:
            raise
        except (MobilityError, ValidationError) as error:
            logger.info(f"Tool {name} rejected for session {session_id}: {error}")
            return _rejected(error)


# Global instance
_mobility_tools: Optional[MobilityTools] = None


def get_mobility_tools() -> MobilityTools:
    global _mobility_tools
    if _mobility_tools is None:
        _mobility_tools = MobilityTools()
    return _mobility_tools


async def call_tool(name: str, args: Optional[Dict[str, Any]], session_id: str) -> Dict[str, Any]:
    return await get_mobility_tools().call_tool(name, args, session_id)
