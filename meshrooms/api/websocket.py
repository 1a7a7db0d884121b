# meshrooms/api/websocket.py

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from meshrooms.core import state
from meshrooms.models.models import RoomConfig
from meshrooms.services.connection_manager import BROADCAST_EVENTS, UNICAST_EVENTS

logger = logging.getLogger(__name__)

router = APIRouter()

# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for signaling and room-scoped broadcast events.

    Protocol:
    =========

    Client -> Server Actions:
    -------------------------
    Join Room:
        {"action": "join", "roomId": "x8k29a", "userId": "a1b2c3",
         "config": {"isPublic": true, "name": "Standup"}}
        Response: {"type": "room-joined", "roomId": "x8k29a", "room": {...}, "members": [...]}
        Others:   {"type": "user-connected", "userId": "a1b2c3"}

    Leave Room:
        {"action": "leave", "roomId": "x8k29a", "userId": "a1b2c3"}
        Others:   {"type": "user-disconnected", "userId": "a1b2c3"}

    Negotiation (unicast within the room):
        {"action": "offer", "targetUserId": "...", "userName": "...",
         "isScreenShare": false, "description": {"sdp": "...", "type": "offer"}}
        {"action": "answer", ...same fields...}
        {"action": "ice-candidate", "targetUserId": "...", "candidate": {...}}
        Target receives the same fields plus "type" and "callerId".

    Broadcast (every other member of the room):
        {"action": "chat-message" | "reaction" | "caption"
                   | "whiteboard-draw" | "whiteboard-clear", ...}

    Public Directory:
        {"action": "get-rooms"}
        Response: {"type": "rooms-update", "rooms": [{roomId, name, count, isPublic}]}

    Latency check:
        {"action": "ping"}
        Response: {"type": "pong"}

    Server -> Client Messages:
    -------------------------
    Error:
        {"type": "error", "message": "..."}

    Lifecycle:
    ==========
    1. Client connects, a transport session id is assigned
    2. "join" binds the client's user id to the session
    3. On disconnect the user leaves its room exactly as with "leave"

    Error Handling:
        - Invalid JSON / unknown actions / bad join config: error reply
        - Connection errors: cleanup and log
    """
    session_id = await state.connection_manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                if not isinstance(message, dict):
                    raise ValueError("frame must be a JSON object")
                action = message.get("action")
                logger.debug("Websocket input: session=%s action=%s", session_id, action)

                if action == "join":
                    room_id = message.get("roomId")
                    user_id = message.get("userId")
                    if not room_id or not user_id:
                        await websocket.send_json({"type": "error", "message": "join requires roomId and userId"})
                        continue
                    config = RoomConfig(**message["config"]) if message.get("config") else None
                    await state.connection_manager.join_room(session_id, room_id, user_id, config)

                elif action == "leave":
                    room_id = message.get("roomId")
                    if room_id:
                        await state.connection_manager.leave_room(session_id, room_id, message.get("userId"))

                elif action == "get-rooms":
                    await state.connection_manager.send_public_rooms(session_id)

                elif action == "ping":
                    await websocket.send_json({"type": "pong"})

                elif action in UNICAST_EVENTS or action in BROADCAST_EVENTS:
                    await state.connection_manager.relay(session_id, action, message)

                else:
                    await websocket.send_json(
                        {
                            "type": "error",
                            "message": f"Unknown action: {action}",
                        }
                    )

            except (ValidationError, TypeError) as e:
                await websocket.send_json({"type": "error", "message": f"Invalid room config: {e}"})
            except (json.JSONDecodeError, ValueError):
                await websocket.send_json(
                    {
                        "type": "error",
                        "message": "Invalid JSON",
                    }
                )

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error: %s", e)
    finally:
        await state.connection_manager.disconnect(session_id)
