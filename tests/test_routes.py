"""
Tests for the session REST and WebSocket routes.
"""

from starlette.applications import Starlette
from starlette.routing import Route, WebSocketRoute
from starlette.testclient import TestClient

from chatwarden.errors import SessionNotFoundError
from chatwarden.notify import WebSocketHub
from chatwarden.routes.session_routes import (
    cancel_group_job,
    create_session,
    destroy_session,
    health,
    list_sessions,
    session_websocket_endpoint,
)
from chatwarden.session.record import SessionRecord


class StubController:
    def __init__(self):
        self.created = []
        self.destroyed = []

    async def start_new_session(self, profile="unknown", name="", phone=""):
        self.created.append((profile, name, phone))
        return SessionRecord(session_id="abc", storage_key="auth_info1")

    async def list_sessions(self):
        return [
            {
                "storage_key": "auth_info1",
                "meta": {"name": "Alice"},
                "live": True,
                "state": "connected",
                "last_connected": 1700000000000,
            }
        ]

    async def destroy_session(self, storage_key):
        if storage_key == "bad":
            raise ValueError("Invalid storage key: 'bad'")
        self.destroyed.append(storage_key)
        return True

    def cancel_group_job(self, storage_key, group_id):
        if storage_key != "auth_info1":
            raise SessionNotFoundError(f"No session on {storage_key}")
        return True


def build_app(controller=None, hub=None):
    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/sessions", list_sessions, methods=["GET"]),
            Route("/sessions", create_session, methods=["POST"]),
            Route("/sessions/{storage_key}", destroy_session, methods=["DELETE"]),
            Route(
                "/sessions/{storage_key}/jobs/{group_id}",
                cancel_group_job,
                methods=["DELETE"],
            ),
            WebSocketRoute("/ws", session_websocket_endpoint),
        ]
    )
    app.state.controller = controller
    app.state.hub = hub
    return app


class TestRestRoutes:
    def setup_method(self):
        self.controller = StubController()
        self.client = TestClient(build_app(self.controller, WebSocketHub()))

    def test_health(self):
        resp = self.client.get("/health")
        assert resp.status_code == 200
        assert resp.text == "ok"

    def test_create_session(self):
        resp = self.client.post("/sessions", json={"profile": "p", "name": "n", "phone": "1"})
        assert resp.status_code == 201
        assert resp.json() == {"session_id": "abc", "storage_key": "auth_info1"}
        assert self.controller.created == [("p", "n", "1")]

    def test_create_session_rejects_bad_body(self):
        resp = self.client.post("/sessions", json={"name": ["not", "a", "string"]})
        assert resp.status_code == 400

    def test_list_sessions(self):
        data = self.client.get("/sessions").json()
        assert data["count"] == 1
        assert data["sessions"][0]["storage_key"] == "auth_info1"
        assert data["sessions"][0]["live"] is True

    def test_destroy_session(self):
        resp = self.client.delete("/sessions/auth_info1")
        assert resp.json()["destroyed"] is True
        assert self.controller.destroyed == ["auth_info1"]
        assert self.client.delete("/sessions/bad").status_code == 400

    def test_cancel_group_job(self):
        resp = self.client.delete("/sessions/auth_info1/jobs/123@g.us")
        assert resp.json() == {"group_id": "123@g.us", "cancelled": True}
        assert self.client.delete("/sessions/auth_info9/jobs/123@g.us").status_code == 404

    def test_not_initialized(self):
        client = TestClient(build_app())
        assert client.get("/sessions").status_code == 503


class TestWebSocket:
    def setup_method(self):
        self.controller = StubController()
        self.hub = WebSocketHub()
        self.client = TestClient(build_app(self.controller, self.hub))

    def test_requests_get_replies(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "create_session", "name": "Bob"})
            assert ws.receive_json() == {
                "event": "session_created",
                "data": {"session_id": "abc", "storage_key": "auth_info1"},
            }

            ws.send_json({"type": "list_sessions"})
            frame = ws.receive_json()
            assert frame["event"] == "sessions_list"
            assert frame["data"][0]["storage_key"] == "auth_info1"

            ws.send_json({"type": "destroy_session", "storage_key": "auth_info1"})
            assert ws.receive_json()["event"] == "session_destroyed"

    def test_invalid_message(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "reboot"})
            frame = ws.receive_json()
            assert frame["event"] == "error"

    def test_destroy_requires_storage_key(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "destroy_session"})
            assert ws.receive_json()["data"]["message"] == "storage_key is required"
