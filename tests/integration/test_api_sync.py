"""Integration tests for /sync routes."""
import json
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from outreach.api.main import create_app
from outreach.api.routes.sync import get_runner
from outreach.db.engine import get_session
from outreach.models.connection import SyncConnection


@pytest.fixture(name="client")
def client_fixture(engine, make_runner):
    app = create_app()
    runner = make_runner()

    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_runner] = lambda: runner
    with TestClient(app) as c:
        yield c


class TestTrigger:
    def test_runs_a_batch(self, client, seeded_connection, world):
        world.add_entities(3)
        resp = client.post("/sync/t1/smartlead", json={})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["complete"] is True
        assert body["status"] == "success"
        assert body["progress"]["counts"]["entities"] == 3

    def test_partial_batch_schedules_continuation(self, engine, seeded_connection, world, recorder, make_runner):
        world.add_entities(10)
        app = create_app()
        runner = make_runner(time_budget=2.5)
        app.dependency_overrides[get_runner] = lambda: runner
        with TestClient(app) as c:
            resp = c.post("/sync/t1/smartlead", json={})
        body = resp.json()
        assert body["status"] == "partial"
        assert body["complete"] is False
        assert recorder.calls[0][2].batch_number == 2

    def test_unknown_platform(self, client, seeded_connection):
        resp = client.post("/sync/t1/lemlist", json={})
        assert resp.status_code == 400

    def test_no_active_connection(self, client):
        resp = client.post("/sync/nobody/smartlead", json={})
        assert resp.status_code == 404

    def test_continuation_requires_token(self, client, seeded_connection, world, settings):
        world.add_entities(2)
        settings.continuation_token = "tok"
        with patch("outreach.api.routes.sync.get_settings", return_value=settings):
            denied = client.post("/sync/t1/smartlead", json={"continuation": True, "batch_number": 2})
            allowed = client.post(
                "/sync/t1/smartlead",
                json={"continuation": True, "batch_number": 2},
                headers={"Authorization": "Bearer tok"},
            )
        assert denied.status_code == 401
        assert allowed.status_code == 200

    def test_user_trigger_needs_no_token(self, client, seeded_connection, world, settings):
        world.add_entities(2)
        settings.continuation_token = "tok"
        with patch("outreach.api.routes.sync.get_settings", return_value=settings):
            resp = client.post("/sync/t1/smartlead", json={"reset": True})
        assert resp.status_code == 200


class TestStatusAndStop:
    def test_status_after_sync(self, client, seeded_connection, world):
        world.add_entities(3)
        client.post("/sync/t1/smartlead", json={})
        resp = client.get("/sync/t1/smartlead/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["sync_status"] == "success"
        assert body["percent"] == 100.0
        assert body["last_full_sync_at"] is not None

    def test_status_never_run(self, client, seeded_connection):
        body = client.get("/sync/t1/smartlead/status").json()
        assert body["sync_status"] == "idle"
        assert body["percent"] == 0.0

    def test_status_unknown_connection(self, client):
        assert client.get("/sync/t1/replyio/status").status_code == 404

    def test_stop(self, client, seeded_connection):
        resp = client.post("/sync/t1/smartlead/stop")
        assert resp.status_code == 200
        assert resp.json()["status"] == "stopped"
        assert client.get("/sync/t1/smartlead/status").json()["sync_status"] == "stopped"

    def test_stop_unknown_connection(self, client):
        assert client.post("/sync/t1/replyio/stop").status_code == 404


class TestStuck:
    def test_lists_quiet_connections(self, client, engine, seeded_connection):
        old = (datetime.utcnow() - timedelta(hours=2)).isoformat()
        with Session(engine) as s:
            row = s.get(SyncConnection, seeded_connection.id)
            row.sync_status = "partial"
            row.sync_progress = json.dumps({"phase": "entities", "batch_number": 4, "heartbeat": old})
            s.add(row)
            s.commit()

        resp = client.get("/sync/stuck")
        assert resp.status_code == 200
        body = resp.json()
        assert len(body) == 1
        assert body[0]["tenant_id"] == "t1"
        assert body[0]["batch_number"] == 4
        assert body[0]["stale_minutes"] >= 119

    def test_healthy_connections_not_listed(self, client, seeded_connection):
        assert client.get("/sync/stuck").json() == []


class TestRecoveryInApi:
    def test_sweep_uses_runner_continuations(self, make_runner, recorder, settings):
        settings.recovery_in_api = True
        app = create_app()
        runner = make_runner()
        app.dependency_overrides[get_runner] = lambda: runner
        with patch("outreach.api.main.get_settings", return_value=settings), \
                patch("outreach.scheduler.jobs.build_scheduler") as mock_build:
            with TestClient(app):
                mock_build.return_value.start.assert_called_once()
        assert mock_build.call_args.args[1] is recorder
        mock_build.return_value.shutdown.assert_called_once_with(wait=False)

    def test_disabled_by_default(self):
        with patch("outreach.scheduler.jobs.build_scheduler") as mock_build:
            with TestClient(create_app()):
                pass
        mock_build.assert_not_called()
