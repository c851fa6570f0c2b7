"""Smoke test for the application lifespan wiring."""

from fastapi.testclient import TestClient

from roomcast.main import app
from roomcast.sse.registry import ConnectionRegistry
from roomcast.sync.dispatcher import SyncDispatcher


class TestLifespan:
    """Startup creates the shared components, shutdown releases them."""

    def test_startup_wires_state(self):
        with TestClient(app) as client:
            assert isinstance(app.state.registry, ConnectionRegistry)
            assert isinstance(app.state.dispatcher, SyncDispatcher)
            assert app.state.dispatcher.runner.registry is app.state.registry

            response = client.get("/health")
            assert response.status_code == 200

            admin = client.get("/api/admin/health")
            assert admin.status_code == 200
            assert admin.json()["calendars"] == 0
