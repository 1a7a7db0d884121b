# meshrooms/core/state.py
from __future__ import annotations

from datetime import datetime, timezone

from meshrooms.services.room_registry import RoomRegistry
from meshrooms.services.connection_manager import ConnectionManager

# Global singletons for app state
room_registry = RoomRegistry()
connection_manager = ConnectionManager(registry=room_registry)

# Metrics
app_start_time: datetime = datetime.now(timezone.utc)
