"""Tests for the Flask HTTP API."""
import pytest
from unittest.mock import MagicMock

from conftest import telemetry
from models.database import StoreUnavailableError
from web.app import create_app


@pytest.fixture
def app(engine, fleet_db):
    app = create_app({}, {"engine": engine, "db": fleet_db})
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def _post_cpu(client, agent_id, t, value):
    return client.post(f"/api/agents/{agent_id}/events",
                       json={"type": "telemetry", "payload": telemetry(cpu=value), "timestamp": t})


class TestEventFeed:
    def test_event_accepted(self, client):
        resp = _post_cpu(client, "a1", 1000, 95)
        assert resp.status_code == 202
        assert resp.get_json() == {"accepted": True, "transitions": []}

    def test_firing_transition_is_returned(self, client, fleet_db):
        _post_cpu(client, "a1", 1000, 95)
        resp = _post_cpu(client, "a1", 1035, 96)
        [transition] = resp.get_json()["transitions"]
        assert transition["rule_id"] == "cpu-high"
        assert transition["state"] == "firing"
        assert fleet_db.get_occurrence(transition["occurrence_id"]) is not None

    def test_missing_type_is_rejected(self, client):
        resp = client.post("/api/agents/a1/events", json={"payload": {}})
        assert resp.status_code == 400

    def test_non_json_body_is_rejected(self, client):
        resp = client.post("/api/agents/a1/events", data="cpu=95", content_type="text/plain")
        assert resp.status_code == 400


class TestHistory:
    def test_group_alerts(self, client):
        _post_cpu(client, "a1", 1000, 95)
        _post_cpu(client, "a1", 1035, 96)
        data = client.get("/api/groups/g1/alerts").get_json()
        assert data["count"] == 1 and data["total"] == 1
        alert = data["alerts"][0]
        assert alert["agent_id"] == "a1"
        assert alert["rule_id"] == "cpu-high"

    def test_paging_past_the_end(self, client):
        _post_cpu(client, "a1", 1000, 95)
        _post_cpu(client, "a1", 1035, 96)
        data = client.get("/api/groups/g1/alerts?offset=5").get_json()
        assert data["alerts"] == [] and data["total"] == 1

    def test_bad_paging_arguments(self, client):
        assert client.get("/api/groups/g1/alerts?limit=ten").status_code == 400
        assert client.get("/api/groups/g1/alerts?offset=-x").status_code == 400

    def test_unknown_occurrence_deliveries(self, client):
        assert client.get("/api/occurrences/missing/deliveries").status_code == 404

    def test_occurrence_deliveries(self, client, engine):
        _post_cpu(client, "a1", 1000, 95)
        occ_id = _post_cpu(client, "a1", 1035, 96).get_json()["transitions"][0]["occurrence_id"]
        engine.dispatcher.run_once()

        data = client.get(f"/api/occurrences/{occ_id}/deliveries").get_json()
        assert data["occurrence"]["id"] == occ_id
        [delivery] = data["deliveries"]
        assert delivery["channel_id"] == "hook-1"
        assert delivery["status"] == "success"
        assert len(delivery["attempt_log"]) == 1


class TestHealth:
    def test_health_ok(self, client):
        data = client.get("/api/health").get_json()
        assert data["status"] == "ok"
        assert "dispatch" in data["stats"]

    def test_health_degraded(self, client, engine):
        engine.evaluator.degraded = True
        assert client.get("/api/health").get_json()["status"] == "degraded"

    def test_agent_health(self, client):
        client.post("/api/agents/a1/events", json={"type": "status", "payload": {"status": "online"},
                                                   "timestamp": 1000})
        agents = client.get("/api/agents/health").get_json()["agents"]
        assert agents["a1"]["status"] == "online"


class TestHooks:
    def test_invalidate_group(self, client, engine, monkeypatch):
        spy = MagicMock(wraps=engine.invalidate)
        monkeypatch.setattr(engine, "invalidate", spy)
        resp = client.post("/api/groups/g1/invalidate")
        assert resp.status_code == 200
        spy.assert_called_once_with("g1")

    def test_invalidate_agent(self, client, engine, fleet_db):
        assert engine.config_store.get_agent_group("a1") == "g1"
        fleet_db.upsert_group("g2", "Store 2", account_id="acct-1")
        fleet_db.upsert_agent("a1", "g2", "acct-1")
        assert client.post("/api/agents/a1/invalidate").get_json() == {"invalidated": "a1"}
        assert engine.config_store.get_agent_group("a1") == "g2"

    def test_delete_agent(self, client, engine):
        _post_cpu(client, "a1", 1000, 95)
        _post_cpu(client, "a1", 1035, 96)
        resp = client.delete("/api/agents/a1")
        assert resp.get_json() == {"deleted": "a1"}
        assert engine.evaluator.get_state("a1", "cpu-high") is None


def test_store_unavailable_returns_503(client, engine, monkeypatch):
    monkeypatch.setattr(engine, "list_occurrences", MagicMock(side_effect=StoreUnavailableError("locked")))
    resp = client.get("/api/groups/g1/alerts")
    assert resp.status_code == 503
    assert resp.get_json() == {"error": "store unavailable"}
