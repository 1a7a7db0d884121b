# meshrooms/api/routes/metrics.py
from fastapi import APIRouter
from datetime import datetime, timezone

from meshrooms.core import state

router = APIRouter()

@router.get("/metrics")
async def get_metrics():
    """
    Relay usage metrics.

    Returns:
        dict: Relay statistics (total relayed, per event, messages/sec),
              capacity (connections, rooms, members) and per-room info.

    Example Response:
        {
            "total_messages": 1200,
            "messages_per_second": 0.4,
            "events": {"offer": 12, "answer": 12, "ice-candidate": 96},
            "concurrent_connections": 6,
            "total_rooms": 2,
            "total_members": 6
        }
    """
    manager = state.connection_manager
    uptime_seconds = (datetime.now(timezone.utc) - state.app_start_time).total_seconds()

    if uptime_seconds > 0:
        messages_per_second = manager.message_counter / uptime_seconds
    else:
        messages_per_second = 0

    return {
        # Statistics
        "total_messages": manager.message_counter,
        "uptime_hours": round(uptime_seconds / 3600, 2) if uptime_seconds > 0 else 0,
        "messages_per_second": round(messages_per_second, 2),
        "events": dict(manager.event_counts),

        # Capacity
        "concurrent_connections": len(manager.connections),
        "total_rooms": len(state.room_registry.rooms),
        "total_members": len(state.room_registry.user_rooms),
        "rooms": manager.get_rooms_info(),
    }
