"""
End-to-end tests of the /ws protocol and the HTTP routes, through
FastAPI's TestClient.
"""

PUBLIC = {"isPublic": True, "name": "Standup"}


def join(ws, room_id, user_id, config=None):
    frame = {"action": "join", "roomId": room_id, "userId": user_id}
    if config is not None:
        frame["config"] = config
    ws.send_json(frame)


def ping_until_pong(ws):
    """Return every frame received before the pong answering our ping."""
    ws.send_json({"action": "ping"})
    seen = []
    while True:
        message = ws.receive_json()
        if message["type"] == "pong":
            return seen
        seen.append(message)


class TestRoomLifecycle:
    def test_join_leave_disconnect_scenario(self, client, registry):
        with client.websocket_connect("/ws") as ws_a:
            join(ws_a, "x8k29a", "a", PUBLIC)
            joined = ws_a.receive_json()
            assert joined == {
                "type": "room-joined",
                "roomId": "x8k29a",
                "room": {"roomId": "x8k29a", "name": "Standup", "count": 1, "isPublic": True},
                "members": [],
            }
            update = ws_a.receive_json()
            assert update["type"] == "rooms-update"
            assert update["rooms"][0]["count"] == 1

            with client.websocket_connect("/ws") as ws_b:
                join(ws_b, "x8k29a", "b")

                b_joined = ws_b.receive_json()
                assert b_joined["type"] == "room-joined"
                assert b_joined["members"] == ["a"]
                assert ws_b.receive_json() == {"type": "user-connected", "userId": "a"}
                assert ws_b.receive_json()["rooms"][0]["count"] == 2

                assert ws_a.receive_json() == {"type": "user-connected", "userId": "b"}
                assert ws_a.receive_json()["rooms"][0]["count"] == 2

                ws_b.send_json({"action": "leave", "roomId": "x8k29a", "userId": "b"})
                assert ws_a.receive_json() == {"type": "user-disconnected", "userId": "b"}
                assert ws_a.receive_json()["rooms"][0]["count"] == 1
                assert ws_b.receive_json()["rooms"][0]["count"] == 1

            # B already left explicitly: closing its socket announces nothing
            assert ping_until_pong(ws_a) == []
            assert registry.members("x8k29a") == {"a"}

        assert registry.rooms == {}
        assert client.get("/rooms").json() == []

    def test_private_room_stays_out_of_directory(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "secret", "a")
            assert ws.receive_json()["room"]["isPublic"] is False
            assert ws.receive_json() == {"type": "rooms-update", "rooms": []}

            ws.send_json({"action": "get-rooms"})
            assert ws.receive_json() == {"type": "rooms-update", "rooms": []}
            assert client.get("/rooms/secret").status_code == 404

    def test_second_join_cannot_change_metadata(self, client):
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            join(ws_a, "r1", "a", {"isPublic": False, "name": "Original"})
            ws_a.receive_json()
            ws_a.receive_json()
            ws_b.receive_json()  # directory broadcast reaches unjoined clients too

            join(ws_b, "r1", "b", PUBLIC)
            room = ws_b.receive_json()["room"]
            assert room["name"] == "Original"
            assert room["isPublic"] is False

    def test_join_requires_ids(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "join", "roomId": "r1"})
            assert ws.receive_json()["type"] == "error"

    def test_invalid_config_is_rejected(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            join(ws, "r1", "a", {"isPublic": {"nested": True}})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "Invalid room config" in error["message"]
            assert registry.get_room("r1") is None


class TestRelay:
    def _pair(self, client):
        ws_a = client.websocket_connect("/ws").__enter__()
        ws_b = client.websocket_connect("/ws").__enter__()
        join(ws_a, "room", "a")
        ping_until_pong(ws_a)
        join(ws_b, "room", "b")
        ping_until_pong(ws_b)
        ping_until_pong(ws_a)
        return ws_a, ws_b

    def test_unicast_reaches_target_with_caller_id(self, client):
        ws_a, ws_b = self._pair(client)
        try:
            ws_a.send_json(
                {
                    "action": "offer",
                    "targetUserId": "b",
                    "userName": "alice",
                    "isScreenShare": False,
                    "description": {"sdp": "v=0", "type": "offer"},
                }
            )
            assert ws_b.receive_json() == {
                "type": "offer",
                "targetUserId": "b",
                "userName": "alice",
                "isScreenShare": False,
                "description": {"sdp": "v=0", "type": "offer"},
                "callerId": "a",
            }
        finally:
            ws_b.__exit__(None, None, None)
            ws_a.__exit__(None, None, None)

    def test_spoofed_caller_id_is_overwritten(self, client):
        ws_a, ws_b = self._pair(client)
        try:
            ws_a.send_json({"action": "ice-candidate", "targetUserId": "b", "callerId": "mallory", "candidate": None})
            assert ws_b.receive_json()["callerId"] == "a"
        finally:
            ws_b.__exit__(None, None, None)
            ws_a.__exit__(None, None, None)

    def test_target_outside_room_is_dropped(self, client):
        ws_a, ws_b = self._pair(client)
        try:
            with client.websocket_connect("/ws") as ws_c:
                join(ws_c, "elsewhere", "c")
                ping_until_pong(ws_c)
                ping_until_pong(ws_a)
                ping_until_pong(ws_b)

                ws_a.send_json({"action": "offer", "targetUserId": "c", "description": {}})
                assert ping_until_pong(ws_a) == []
                assert ping_until_pong(ws_c) == []
        finally:
            ws_b.__exit__(None, None, None)
            ws_a.__exit__(None, None, None)

    def test_broadcast_skips_sender(self, client):
        ws_a, ws_b = self._pair(client)
        try:
            message = {"id": "1", "senderId": "a", "text": "hi", "timestamp": 1}
            ws_a.send_json({"action": "chat-message", "roomId": "room", "message": message})
            received = ws_b.receive_json()
            assert received["type"] == "chat-message"
            assert received["message"] == message
            assert received["callerId"] == "a"
            assert ping_until_pong(ws_a) == []
        finally:
            ws_b.__exit__(None, None, None)
            ws_a.__exit__(None, None, None)

    def test_relay_before_join_is_dropped(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "reaction", "reaction": {}})
            assert ping_until_pong(ws) == []


class TestProtocolErrors:
    def test_unknown_action(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "teleport"})
            assert ws.receive_json() == {"type": "error", "message": "Unknown action: teleport"}

    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}
            ws.send_text("[1, 2]")
            assert ws.receive_json()["type"] == "error"
            # The connection survives bad frames
            assert ping_until_pong(ws) == []


class TestHttpRoutes:
    def test_root(self, client):
        body = client.get("/").json()
        assert body["endpoints"]["websocket"] == "/ws"

    def test_health_and_metrics(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "r1", "a", PUBLIC)
            ping_until_pong(ws)

            health = client.get("/health").json()
            assert health["status"] == "healthy"
            assert health["connections"] == 1
            assert health["rooms"] == 1
            assert health["public_rooms"] == 1

            metrics = client.get("/metrics").json()
            assert metrics["total_rooms"] == 1
            assert metrics["total_members"] == 1
            assert metrics["rooms"]["r1"] == {"name": "Standup", "member_count": 1, "is_public": True}

    def test_room_lookup(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "r1", "a", PUBLIC)
            ping_until_pong(ws)

            assert client.get("/rooms").json() == [
                {"roomId": "r1", "name": "Standup", "count": 1, "isPublic": True}
            ]
            assert client.get("/rooms/r1").json()["count"] == 1
            assert client.get("/rooms/nope").status_code == 404
