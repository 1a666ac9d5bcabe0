"""
Tests for per-session preferences, saved locations and trip history.
"""
import asyncio
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from errors import InvalidVehicleTier
from preferences import PreferenceService
from schemas import Coordinate, TripHistoryEntry, UserPreferences, VehicleTier
from session_store import InMemorySessionStore

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
HOME = Coordinate(latitude=10.5, longitude=-66.9)
WORK = Coordinate(latitude=10.6, longitude=-66.8)


def service():
    return PreferenceService(InMemorySessionStore(), clock=lambda: NOW)


def test_defaults():
    prefs = service().get_preferences("s1")
    assert prefs == UserPreferences()
    assert prefs.preferred_vehicle_type == VehicleTier.ECONOMY
    assert prefs.avoid_tolls is False and prefs.avoid_highways is False


def test_get_preferences_is_idempotent():
    svc = service()
    asyncio.run(svc.update_preferences("s1", {"avoid_tolls": True}))
    assert svc.get_preferences("s1") == svc.get_preferences("s1")


def test_partial_update_merges():
    svc = service()
    asyncio.run(svc.update_preferences("s1", {"avoidTolls": True}))
    updated = asyncio.run(svc.update_preferences("s1", {"preferredVehicleType": "Premium"}))

    assert updated.avoid_tolls is True
    assert updated.avoid_highways is False
    assert updated.preferred_vehicle_type == VehicleTier.PREMIUM
    assert svc.get_preferences("s1") == updated


def test_unknown_fields_are_ignored():
    updated = asyncio.run(service().update_preferences("s1", {"avoid_highways": True, "music": "jazz"}))
    assert updated.avoid_highways is True


def test_invalid_updates_leave_preferences_untouched():
    svc = service()
    with pytest.raises(InvalidVehicleTier):
        asyncio.run(svc.update_preferences("s1", {"avoid_tolls": True, "preferred_vehicle_type": "blimp"}))
    with pytest.raises(ValidationError):
        asyncio.run(svc.update_preferences("s1", {"avoid_tolls": "sometimes"}))
    assert svc.get_preferences("s1") == UserPreferences()


def test_save_location_upserts_case_insensitively():
    svc = service()
    asyncio.run(svc.save_location("s1", "Home", HOME))
    asyncio.run(svc.save_location("s1", "Work", WORK))
    saved = asyncio.run(svc.save_location("s1", "home", WORK))

    assert [s.name for s in saved] == ["home", "Work"]
    assert saved[0].coordinates == WORK
    assert saved[0].last_used == NOW.isoformat()
    assert svc.get_saved_locations("s1") == saved


def test_find_saved_location():
    svc = service()
    asyncio.run(svc.save_location("s1", " Home ", HOME))
    assert svc.find_saved_location("s1", "HOME").coordinates == HOME
    assert svc.find_saved_location("s1", "gym") is None
    assert svc.find_saved_location("other", "home") is None


def test_trip_history_appends_in_order():
    svc = service()
    for price in (12.5, 30.0):
        asyncio.run(svc.add_trip_to_history("s1", TripHistoryEntry(
            origin="Home", destination="Work", date=NOW.isoformat(),
            price=price, currency="USD", vehicle_type=VehicleTier.MOTO,
        )))
    history = svc.get_trip_history("s1")
    assert [h.price for h in history] == [12.5, 30.0]
    assert svc.get_trip_history("s2") == []
