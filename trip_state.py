"""
Trip state machine: origin / destination / waypoints per conversation session.

    draft <-> ready -> in_progress -> completed

draft/ready are derived from the endpoints on every edit. in_progress and
completed are only reached through external signals (trip started/finished).
Every mutation builds a new TripState from a snapshot and stores it with a
single write, under the session's lock.
"""
import logging
from typing import Callable, Optional

from errors import InvalidStateTransition, PreconditionFailed
from schemas import Location, TripState, TripStatus
from session_store import SessionLocks, SessionStore, get_session_store, session_key

logger = logging.getLogger(__name__)

TRIP_NAMESPACE = "trip"

QUOTABLE_STATUSES = (TripStatus.READY, TripStatus.IN_PROGRESS)


def readiness(origin: Optional[Location], destination: Optional[Location]) -> TripStatus:
    return TripStatus.READY if origin is not None and destination is not None else TripStatus.DRAFT


def with_origin(state: TripState, location: Location) -> TripState:
    return state.model_copy(update={
        "origin": location,
        "status": readiness(location, state.destination),
    })


def with_destination(state: TripState, location: Location) -> TripState:
    return state.model_copy(update={
        "destination": location,
        "status": readiness(state.origin, location),
    })


def with_waypoint(state: TripState, location: Location) -> TripState:
    """Append a stop. An unnamed stop is numbered from the snapshot it joins."""
    if not location.name:
        location = location.model_copy(update={"name": f"Waypoint {len(state.waypoints) + 1}"})
    return state.model_copy(update={"waypoints": [*state.waypoints, location]})


def cleared(state: Optional[TripState] = None) -> TripState:
    return TripState()


def started(state: TripState) -> TripState:
    if state.status != TripStatus.READY:
        raise InvalidStateTransition(
            f"Cannot start a trip in status '{state.status.value}'",
            context={"status": state.status.value},
        )
    return state.model_copy(update={"status": TripStatus.IN_PROGRESS})


def completed(state: TripState) -> TripState:
    if state.status != TripStatus.IN_PROGRESS:
        raise InvalidStateTransition(
            f"Cannot complete a trip in status '{state.status.value}'",
            context={"status": state.status.value},
        )
    return state.model_copy(update={"status": TripStatus.COMPLETED})


def require_quotable(state: TripState) -> None:
    """Guard for estimate/finalize: both endpoints set and status ready or in progress."""
    missing = [name for name, value in (("origin", state.origin), ("destination", state.destination)) if value is None]
    if missing:
        raise PreconditionFailed(
            f"Trip {' and '.join(missing)} must be set before requesting a price or route",
            context={"missing": missing, "status": state.status.value},
        )
    if state.status not in QUOTABLE_STATUSES:
        raise PreconditionFailed(
            f"Trip in status '{state.status.value}' cannot be quoted",
            context={"status": state.status.value},
        )


class TripStateService:
    """Session-keyed access to TripState through an injected SessionStore."""

    def __init__(self, store: Optional[SessionStore] = None, locks: Optional[SessionLocks] = None):
        self.store = store or get_session_store()
        self.locks = locks or SessionLocks()

    def get(self, session_id: str) -> TripState:
        """Pure read. A session seen for the first time is a fresh draft."""
        raw = self.store.get(session_key(TRIP_NAMESPACE, session_id))
        if raw is None:
            return TripState()
        return TripState.model_validate(raw)

    async def _mutate(self, session_id: str, transition: Callable[[TripState], TripState]) -> TripState:
        async with self.locks(session_id):
            new_state = transition(self.get(session_id))
            self.store.set(session_key(TRIP_NAMESPACE, session_id), new_state.to_dict())
        logger.info(f"Trip state for session {session_id}: {new_state.status.value}")
        return new_state

    async def set_origin(self, session_id: str, location: Location) -> TripState:
        return await self._mutate(session_id, lambda state: with_origin(state, location))

    async def set_destination(self, session_id: str, location: Location) -> TripState:
        return await self._mutate(session_id, lambda state: with_destination(state, location))

    async def add_waypoint(self, session_id: str, location: Location) -> TripState:
        return await self._mutate(session_id, lambda state: with_waypoint(state, location))

    async def clear(self, session_id: str) -> TripState:
        return await self._mutate(session_id, cleared)

    async def start_trip(self, session_id: str) -> TripState:
        return await self._mutate(session_id, started)

    async def complete_trip(self, session_id: str) -> TripState:
        return await self._mutate(session_id, completed)
