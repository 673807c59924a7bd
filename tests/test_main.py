"""
Tests fuer die HTTP-API: Endpunkte, Fehler-Abbildung, Scope-Header und API Key.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from homecore import main
from homecore.controller import HomeController
from homecore.errors import (
    CallTimeoutError,
    ConfigurationError,
    PersistenceError,
    ServiceNotAllowedError,
    UpstreamError,
    ValidationError,
)
from homecore.store import MemoryStore


@pytest.fixture
def controller(ha_mock, llm_mock, sample_states, monkeypatch):
    ha_mock.get_states = AsyncMock(return_value=sample_states)
    ctl = HomeController(ha_mock, llm_mock, MemoryStore())
    monkeypatch.setattr(main, "controller", ctl)
    monkeypatch.setattr(main.settings, "homecore_api_key", "")
    return ctl


@pytest.fixture
def client(controller):
    # Ohne "with": Lifespan (echte Clients, Jobs) wird nicht gestartet
    return TestClient(main.app)


class TestStatusMapping:

    @pytest.mark.parametrize("error, status", [
        (ServiceNotAllowedError("lock.unlock"), 403),
        (ValidationError("bad"), 400),
        (ConfigurationError("no token"), 500),
        (UpstreamError(502, "bad gateway"), 502),
        (CallTimeoutError("slow"), 504),
        (PersistenceError("down"), 503),
    ])
    def test_status_for(self, error, status):
        assert main.status_for(error) == status


class TestEndpoints:

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.headers["x-request-id"]

    def test_not_initialized(self, ha_mock, llm_mock, monkeypatch):
        monkeypatch.setattr(main, "controller", HomeController(ha_mock, llm_mock))
        monkeypatch.setattr(main.settings, "homecore_api_key", "")
        resp = TestClient(main.app).get("/api/health")
        assert resp.status_code == 503

    def test_chat(self, client, llm_mock, ha_mock):
        llm_mock.complete = AsyncMock(return_value="On it. ACTION: light.turn_on light.living_room")
        resp = client.post("/api/chat", json={"text": "turn on the living room light"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["response"] == "On it."
        assert body["actions"][0]["success"] is True
        ha_mock.call_service.assert_awaited_once()

    def test_chat_requires_text(self, client):
        assert client.post("/api/chat", json={"text": ""}).status_code == 422

    def test_scope_header(self, client, controller):
        client.post("/api/chat", json={"text": "turn on the living room light"}, headers={"X-Scope": "alice"})
        alice = client.get("/api/patterns", headers={"X-Scope": "alice"}).json()
        default = client.get("/api/patterns").json()
        assert alice["total"] == 2
        assert default["total"] == 0

    def test_invalid_scope_falls_back(self, client):
        client.post("/api/chat", json={"text": "turn on the living room light"}, headers={"X-Scope": "bad scope!"})
        assert client.get("/api/patterns").json()["total"] == 2

    def test_context(self, client):
        resp = client.get("/api/context", params={"message": "pool pump"})
        assert resp.status_code == 200
        assert resp.json()["mode"] == "relevant"
        assert "switch.pool_pump" in resp.json()["context"]

    def test_instructions_roundtrip(self, client):
        assert client.put("/api/context/instructions", json={"instructions": "Be brief."}).status_code == 200
        assert client.get("/api/context/instructions").json() == {"instructions": "Be brief."}


class TestServiceCalls:

    def test_disallowed_service(self, client, ha_mock):
        resp = client.post("/api/services/call", json={
            "domain": "climate", "service": "set_preset_mode", "entity_id": "climate.bedroom",
        })
        assert resp.status_code == 403
        body = resp.json()
        assert body["error"] == "ServiceNotAllowedError"
        assert body["request_id"] == resp.headers["x-request-id"]
        ha_mock.call_service.assert_not_awaited()

    def test_manual_call_audited(self, client):
        resp = client.post("/api/services/call", json={
            "domain": "light", "service": "turn_off", "entity_id": "light.living_room", "reason": "bedtime",
        })
        assert resp.status_code == 200
        actions = client.get("/api/actions").json()["actions"]
        assert actions[0]["source"] == "user_manual"
        stats = client.get("/api/actions/stats").json()
        assert stats["by_source"] == {"user_manual": 1}
        history = client.get("/api/actions/entity/light.living_room").json()
        assert len(history["actions"]) == 1

    def test_upstream_error(self, client, ha_mock):
        ha_mock.call_service = AsyncMock(side_effect=UpstreamError(500, "Internal", source="Home Assistant API"))
        resp = client.post("/api/services/call", json={
            "domain": "switch", "service": "turn_on", "entity_id": "switch.pool_pump",
        })
        assert resp.status_code == 502


class TestSuggestionsApi:

    def _create(self, client):
        return client.post("/api/suggestions", json={
            "suggestion_type": "cost_saving",
            "title": "Pool pump at night",
            "description": "Run the pool pump after 22:00.",
            "confidence": 0.8,
        }).json()

    def test_lifecycle(self, client):
        created = self._create(client)
        assert created["status"] == "pending"
        resp = client.put(f"/api/suggestions/{created['id']}/status", json={"status": "implemented"})
        assert resp.status_code == 200
        assert resp.json()["implemented_at"] is not None

        again = client.put(f"/api/suggestions/{created['id']}/status", json={"status": "rejected"})
        assert again.status_code == 400

    def test_invalid_confidence(self, client):
        resp = client.post("/api/suggestions", json={
            "suggestion_type": "x", "title": "t", "description": "d", "confidence": 2,
        })
        assert resp.status_code == 400

    def test_energy_suggestions_bootstrap(self, client):
        body = client.get("/api/energy/suggestions").json()
        assert body["suggestions"][0]["title"] == "Start Energy Monitoring"

    def test_energy_feedback_validation(self, client):
        assert client.post("/api/energy/feedback", json={"suggestion_type": "timing", "rating": "meh"}).status_code == 422
        assert client.post("/api/energy/feedback", json={"suggestion_type": "timing", "rating": "down"}).status_code == 200


class TestPricingApi:

    def test_pricing_update_and_cost(self, client):
        resp = client.put("/api/pricing", json={"general_price": 0.4, "feed_in_tariff": 0.1})
        assert resp.status_code == 200
        assert client.get("/api/pricing").json()["general_price"] == 0.4
        cost = client.post("/api/pricing/cost", json={"grid_import_w": 1000, "hours": 2}).json()
        assert cost["grid_cost"] == pytest.approx(0.8)
        assert cost["currency"] == "EUR"


class TestApiKey:

    def test_key_required_when_set(self, client, monkeypatch):
        monkeypatch.setattr(main.settings, "homecore_api_key", "s3cret")
        assert client.get("/api/actions").status_code == 403
        assert client.get("/api/actions", headers={"X-API-Key": "wrong"}).status_code == 403
        assert client.get("/api/actions", headers={"X-API-Key": "s3cret"}).status_code == 200

    def test_health_exempt(self, client, monkeypatch):
        monkeypatch.setattr(main.settings, "homecore_api_key", "s3cret")
        assert client.get("/api/health").status_code == 200


class TestErrorBuffer:

    def test_warnings_collected_and_cleared(self, client):
        client.delete("/api/homecore/errors")
        client.post("/api/services/call", json={"domain": "lock", "service": "unlock", "entity_id": "lock.front"})
        errors = client.get("/api/homecore/errors", params={"level": "warning"}).json()
        assert errors["total"] >= 1
        assert any("lock.unlock" in e["message"] for e in errors["errors"])
        assert client.delete("/api/homecore/errors").json()["cleared"] >= 1
