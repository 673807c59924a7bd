"""
Tests fuer den Vorschlags-Lebenszyklus und die heuristischen Smart-Vorschlaege.
"""

import pytest

from homecore.errors import ValidationError
from homecore.suggestions import (
    SuggestionManager,
    generate_smart_suggestions,
    validate_suggestion,
)


def _data(**overrides):
    data = {
        "suggestion_type": "cost_saving",
        "title": "Pool pump at night",
        "description": "Run the pool pump after 22:00.",
        "confidence": 0.8,
        "impact": "high",
        "category": "energy",
        "entities_involved": ["switch.pool_pump"],
    }
    data.update(overrides)
    return data


@pytest.fixture
def manager(memory_store, fixed_clock):
    return SuggestionManager(memory_store, clock=fixed_clock)


# =====================================================================
# Validierung
# =====================================================================


class TestValidation:

    def test_valid(self):
        validate_suggestion(_data())

    @pytest.mark.parametrize("overrides", [
        {"title": ""},
        {"confidence": 1.2},
        {"confidence": "high"},
        {"confidence": True},
        {"impact": "huge"},
        {"category": "fun"},
        {"entities_involved": "switch.pool_pump"},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValidationError):
            validate_suggestion(_data(**overrides))


# =====================================================================
# Lebenszyklus
# =====================================================================


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_created_pending(self, manager):
        row = await manager.create_suggestion(_data())
        assert row["status"] == "pending"
        assert row["implemented_at"] is None
        assert row["expires_at"] == "2026-10-25T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_implemented_sets_timestamp(self, manager, fixed_clock):
        row = await manager.create_suggestion(_data())
        fixed_clock.advance(hours=2)
        updated = await manager.update_status(row["id"], "implemented")
        assert updated["status"] == "implemented"
        assert updated["implemented_at"] == "2026-10-18T02:00:00+00:00"

    @pytest.mark.asyncio
    async def test_rejected_keeps_implemented_at_empty(self, manager):
        row = await manager.create_suggestion(_data())
        updated = await manager.update_status(row["id"], "rejected")
        assert updated["status"] == "rejected"
        assert updated["implemented_at"] is None

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, manager):
        row = await manager.create_suggestion(_data())
        await manager.update_status(row["id"], "accepted")
        with pytest.raises(ValidationError):
            await manager.update_status(row["id"], "implemented")

    @pytest.mark.asyncio
    async def test_pending_to_pending_rejected(self, manager):
        row = await manager.create_suggestion(_data())
        with pytest.raises(ValidationError):
            await manager.update_status(row["id"], "pending")
        assert (await manager.get_suggestion(row["id"]))["status"] == "pending"

    @pytest.mark.asyncio
    async def test_unknown_status_and_id(self, manager):
        row = await manager.create_suggestion(_data())
        with pytest.raises(ValidationError):
            await manager.update_status(row["id"], "done")
        with pytest.raises(ValidationError):
            await manager.update_status("missing", "accepted")

    @pytest.mark.asyncio
    async def test_expires_on_read(self, manager, fixed_clock):
        row = await manager.create_suggestion(_data(expires_at="2026-10-18T06:00:00+00:00"))
        fixed_clock.advance(hours=7)
        fetched = await manager.get_suggestion(row["id"])
        assert fetched["status"] == "expired"
        with pytest.raises(ValidationError):
            await manager.update_status(row["id"], "accepted")

    @pytest.mark.asyncio
    async def test_expire_stale(self, manager, fixed_clock):
        await manager.create_suggestion(_data(title="a", expires_at="2026-10-18T01:00:00+00:00"))
        await manager.create_suggestion(_data(title="b"))
        fixed_clock.advance(hours=3)
        assert await manager.expire_stale() == 1
        assert [s["title"] for s in await manager.list_suggestions(status="pending")] == ["b"]

    @pytest.mark.asyncio
    async def test_list_newest_first_and_scoped(self, manager, fixed_clock):
        await manager.create_suggestion(_data(title="old"))
        fixed_clock.advance(minutes=1)
        await manager.create_suggestion(_data(title="new"))
        await manager.create_suggestion(_data(title="other"), scope="alice")
        titles = [s["title"] for s in await manager.list_suggestions(scope="global")]
        assert titles == ["new", "old"]
        with pytest.raises(ValidationError):
            await manager.list_suggestions(status="unknown")

    @pytest.mark.asyncio
    async def test_persist_all_skips_invalid(self, manager):
        created = await manager.persist_all([_data(), _data(confidence=3)])
        assert len(created) == 1


# =====================================================================
# Smart-Vorschlaege
# =====================================================================


class TestSmartSuggestions:

    def test_high_power(self):
        states = [
            {"entity_id": "sensor.oven_power", "state": "2400", "attributes": {}},
            {"entity_id": "sensor.fridge_power", "state": "90", "attributes": {}},
            {"entity_id": "sensor.dryer", "state": "1500", "attributes": {"device_class": "power"}},
        ]
        suggestions = generate_smart_suggestions(states, [])
        assert len(suggestions) == 1
        assert suggestions[0]["entities_involved"] == ["sensor.oven_power", "sensor.dryer"]
        assert suggestions[0]["data"]["total_power"] == 3900

    def test_manual_control(self):
        logs = [{"source": "user_manual", "entity_id": "light.hall"}] * 5
        logs += [{"source": "ai_assistant", "entity_id": "light.desk"}] * 8
        suggestions = generate_smart_suggestions([], logs)
        assert [s["suggestion_type"] for s in suggestions] == ["automation"]
        assert suggestions[0]["entities_involved"] == ["light.hall"]

    def test_many_lights(self):
        states = [{"entity_id": f"light.l{i}", "state": "on", "attributes": {}} for i in range(6)]
        suggestions = generate_smart_suggestions(states, [])
        assert suggestions[0]["suggestion_type"] == "optimization"
        assert suggestions[0]["data"]["estimated_power"] == 60

    def test_nothing_to_suggest(self, sample_states):
        assert generate_smart_suggestions(sample_states, []) == []

    @pytest.mark.asyncio
    async def test_smart_suggestions_are_valid(self, manager):
        states = [{"entity_id": f"light.l{i}", "state": "on", "attributes": {}} for i in range(6)]
        created = await manager.persist_all(generate_smart_suggestions(states, []))
        assert len(created) == 1
