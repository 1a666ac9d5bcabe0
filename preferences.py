"""
Per-session user preferences, saved locations ("Home", "Work") and trip history.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pricing import parse_tier
from schemas import Coordinate, RoutePreferences, SavedLocation, TripHistoryEntry, UserPreferences
from session_store import SessionLocks, SessionStore, get_session_store, session_key

logger = logging.getLogger(__name__)

PREFS_NAMESPACE = "prefs"
LOCATIONS_NAMESPACE = "locations"
HISTORY_NAMESPACE = "history"

PREFERENCE_FIELDS = ("avoid_tolls", "avoid_highways", "preferred_vehicle_type")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PreferenceService:
    def __init__(
        self,
        store: Optional[SessionStore] = None,
        locks: Optional[SessionLocks] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store or get_session_store()
        self.locks = locks or SessionLocks()
        self.clock = clock

    # Preferences

    def get_preferences(self, session_id: str) -> UserPreferences:
        raw = self.store.get(session_key(PREFS_NAMESPACE, session_id))
        return UserPreferences.model_validate(raw) if raw else UserPreferences()

    async def update_preferences(self, session_id: str, updates: Dict[str, Any]) -> UserPreferences:
        """
        Merge a partial update (snake_case or camelCase keys) into the stored preferences.

        Raises:
            InvalidVehicleTier: unknown preferred vehicle type
            pydantic.ValidationError: non-boolean avoid flag
        """
        normalized = _normalize_keys(updates)
        ignored = sorted(set(normalized) - set(PREFERENCE_FIELDS))
        if ignored:
            logger.warning(f"Ignoring unknown preference fields: {ignored}")

        flags = {k: normalized[k] for k in ("avoid_tolls", "avoid_highways") if k in normalized}
        changed: Dict[str, Any] = {}
        if flags:
            changed.update(RoutePreferences.model_validate(flags).model_dump(include=set(flags)))
        if "preferred_vehicle_type" in normalized:
            changed["preferred_vehicle_type"] = parse_tier(normalized["preferred_vehicle_type"])

        async with self.locks(session_id):
            current = self.get_preferences(session_id)
            merged = current.model_copy(update=changed)
            self.store.set(session_key(PREFS_NAMESPACE, session_id), merged.to_dict())
        return merged

    # Saved locations

    def get_saved_locations(self, session_id: str) -> List[SavedLocation]:
        raw = self.store.get(session_key(LOCATIONS_NAMESPACE, session_id)) or []
        return [SavedLocation.model_validate(item) for item in raw]

    def find_saved_location(self, session_id: str, name: str) -> Optional[SavedLocation]:
        wanted = (name or "").strip().lower()
        for saved in self.get_saved_locations(session_id):
            if saved.name.lower() == wanted:
                return saved
        return None

    async def save_location(self, session_id: str, name: str, coordinates: Coordinate) -> List[SavedLocation]:
        """Insert or replace (case-insensitive on name) a saved location."""
        entry = SavedLocation(name=name.strip(), coordinates=coordinates, last_used=self.clock().isoformat())

        async with self.locks(session_id):
            locations = self.get_saved_locations(session_id)
            for index, saved in enumerate(locations):
                if saved.name.lower() == entry.name.lower():
                    locations[index] = entry
                    break
            else:
                locations.append(entry)
            self.store.set(
                session_key(LOCATIONS_NAMESPACE, session_id),
                [loc.to_dict() for loc in locations],
            )
        return locations

    # Trip history

    def get_trip_history(self, session_id: str) -> List[TripHistoryEntry]:
        raw = self.store.get(session_key(HISTORY_NAMESPACE, session_id)) or []
        return [TripHistoryEntry.model_validate(item) for item in raw]

    async def add_trip_to_history(self, session_id: str, entry: TripHistoryEntry) -> List[TripHistoryEntry]:
        async with self.locks(session_id):
            history = self.get_trip_history(session_id)
            history.append(entry)
            self.store.set(
                session_key(HISTORY_NAMESPACE, session_id),
                [item.to_dict() for item in history],
            )
        logger.info(f"Recorded trip {entry.origin} -> {entry.destination} for session {session_id}")
        return history


def _normalize_keys(updates: Dict[str, Any]) -> Dict[str, Any]:
    aliases = {
        "avoidTolls": "avoid_tolls",
        "avoidHighways": "avoid_highways",
        "preferredVehicleType": "preferred_vehicle_type",
    }
    return {aliases.get(key, key): value for key, value in (updates or {}).items() if value is not None}
