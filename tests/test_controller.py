"""
Tests fuer den HomeController: ACTION-Parsing, Prompt, Ablauf und Fehlerfaelle.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from homecore.controller import (
    EMPTY_RESPONSE,
    EXPIRY_JOB,
    FALLBACK_RESPONSE,
    HomeController,
    build_system_prompt,
    filter_relevant_patterns,
    is_energy_query,
    parse_actions,
)
from homecore.energy_miner import SNAPSHOT_JOB
from homecore.errors import CallTimeoutError, UpstreamError, ValidationError
from homecore.llm_client import LLMClient
from homecore.store import MemoryStore


@pytest.fixture
def controller(ha_mock, llm_mock, sample_states):
    ha_mock.get_states = AsyncMock(return_value=sample_states)
    return HomeController(ha_mock, llm_mock, MemoryStore())


# =====================================================================
# Parsing & Prompt
# =====================================================================


class TestParseActions:

    def test_single_action(self):
        text, actions = parse_actions("Turning on the light. ACTION: light.turn_on light.living_room")
        assert text == "Turning on the light."
        assert actions == [{
            "domain": "light", "service": "turn_on", "entity_id": "light.living_room", "data": None,
        }]

    def test_json_data(self):
        _, actions = parse_actions('ACTION: climate.set_temperature climate.bedroom {"temperature": 22}')
        assert actions[0]["data"] == {"temperature": 22}

    def test_unquoted_data(self):
        _, actions = parse_actions("ACTION: light.turn_on light.hall {brightness: 120}")
        assert actions[0]["data"] == {"brightness": 120}

    def test_multiple_and_case(self):
        _, actions = parse_actions(
            "Done. action: LIGHT.TURN_OFF light.a\nACTION: switch.turn_off switch.b",
        )
        assert [(a["domain"], a["service"]) for a in actions] == [("light", "turn_off"), ("switch", "turn_off")]

    def test_no_action(self):
        assert parse_actions("It is 21 degrees.") == ("It is 21 degrees.", [])


class TestPromptHelpers:

    def test_energy_query(self):
        assert is_energy_query("How can I SAVE money?")
        assert not is_energy_query("turn on the light")

    def test_filter_patterns(self):
        patterns = [
            {"pattern_type": "routine", "pattern_key": "morning"},
            {"pattern_type": "routine", "pattern_key": "bedtime"},
            {"pattern_type": "preference", "pattern_key": "communication_style"},
        ]
        kept = filter_relevant_patterns(patterns, "good MORNING")
        assert [p["pattern_key"] for p in kept] == ["morning", "communication_style"]

    def test_system_prompt_sections(self):
        prompt = build_system_prompt(
            "RELEVANT ENTITIES (1 of 4):",
            {"summary": {"total_entities": 4}, "capabilities": {"has_solar": True}},
            [{"pattern_type": "entity_alias", "pattern_key": "living_room",
              "pattern_value": {"natural_name": "lounge"}}],
            {"total_snapshots": 3, "daily_average": 420.0, "trend": "stable", "solar_production": 0},
            [{"title": "Peak Usage Time Identified", "description": "Shift load."}],
        )
        assert "RELEVANT ENTITIES (1 of 4):" in prompt
        assert "SYSTEM: 4 entities | Features: solar" in prompt
        assert "Daily avg: 420W" in prompt
        assert "Solar:" not in prompt
        assert "- Peak Usage Time Identified: Shift load." in prompt
        assert 'User calls "lounge" -> living_room' in prompt
        assert '{"temperature": 22}' in prompt
        assert prompt.rstrip().endswith("Be helpful and concise")


# =====================================================================
# Ablauf
# =====================================================================


class TestProcess:

    @pytest.mark.asyncio
    async def test_empty_message(self, controller):
        with pytest.raises(ValidationError):
            await controller.process("   ")

    @pytest.mark.asyncio
    async def test_executes_action(self, controller, ha_mock, llm_mock):
        llm_mock.complete = AsyncMock(return_value="Turning it on. ACTION: light.turn_on light.living_room")
        result = await controller.process("turn on the living room light")

        assert result["response"] == "Turning it on."
        assert result["error"] is None
        assert result["actions"][0]["success"] is True
        ha_mock.call_service.assert_awaited_once_with("light", "turn_on", {"entity_id": "light.living_room"})

        system_prompt = llm_mock.complete.call_args.args[0]
        assert "light.living_room" in system_prompt

        logs = await controller.audit.get_action_logs()
        assert logs[0]["source"] == "ai_assistant"
        assert logs[0]["reason"] == "turn on the living room light"

    @pytest.mark.asyncio
    async def test_learns_from_interaction(self, controller, llm_mock):
        llm_mock.complete = AsyncMock(return_value="OK. ACTION: light.turn_on light.living_room")
        await controller.process("turn on the living room light", scope="alice")
        patterns = await controller.patterns.get_learned_patterns(scope="alice")
        keys = {p["pattern_key"] for p in patterns}
        assert "turn on the living room light" in keys
        alias = await controller.patterns.get_pattern("entity_alias", "living_room", scope="alice")
        assert alias["usage_count"] == 2

    @pytest.mark.asyncio
    async def test_disallowed_action_reported(self, controller, ha_mock, llm_mock):
        llm_mock.complete = AsyncMock(
            return_value='Switching to eco. ACTION: climate.set_preset_mode climate.bedroom {"preset_mode": "eco"}',
        )
        result = await controller.process("put the bedroom into eco mode")
        ha_mock.call_service.assert_not_awaited()
        assert result["actions"][0]["success"] is False
        assert result["response"].startswith("Switching to eco.")
        assert "Failed to set_preset_mode climate.bedroom: Service not allowed: climate.set_preset_mode" in result["response"]

    @pytest.mark.asyncio
    async def test_upstream_failure_appended(self, controller, ha_mock, llm_mock):
        llm_mock.complete = AsyncMock(return_value="ACTION: switch.turn_on switch.pool_pump")
        ha_mock.call_service = AsyncMock(side_effect=UpstreamError(500, "Internal", source="Home Assistant API"))
        result = await controller.process("start the pool pump")
        assert result["response"].startswith(EMPTY_RESPONSE)
        assert "Failed to turn_on switch.pool_pump" in result["response"]

    @pytest.mark.asyncio
    async def test_llm_failure_fallback(self, controller, llm_mock):
        llm_mock.complete = AsyncMock(side_effect=CallTimeoutError("LLM request timed out after 10s"))
        result = await controller.process("hello")
        assert result == {
            "response": FALLBACK_RESPONSE,
            "actions": [],
            "error": "LLM request timed out after 10s",
        }

    @pytest.mark.asyncio
    async def test_garbled_llm_body_falls_back(self, ha_mock, sample_states):
        resp = MagicMock(status=200, json=AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "", 0)))
        session = MagicMock()
        session.post = MagicMock(return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=resp), __aexit__=AsyncMock(return_value=False),
        ))
        llm = LLMClient(provider="ollama", base_url="http://llm.local:11434")
        llm._get_session = AsyncMock(return_value=session)
        ha_mock.get_states = AsyncMock(return_value=sample_states)
        controller = HomeController(ha_mock, llm, MemoryStore())

        result = await controller.process("turn on the hall light")
        assert result["response"] == FALLBACK_RESPONSE
        assert result["actions"] == []
        ha_mock.call_service.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_context_failure_still_answers(self, controller, ha_mock, llm_mock):
        ha_mock.get_states = AsyncMock(side_effect=UpstreamError(0, "offline"))
        result = await controller.process("what time is it")
        assert result["response"] == "Test-Antwort"
        llm_mock.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_energy_query_adds_suggestions(self, controller, llm_mock):
        await controller.process("how can I reduce my energy cost?")
        system_prompt = llm_mock.complete.call_args.args[0]
        assert "SUGGESTIONS:" in system_prompt
        assert "Start Energy Monitoring" in system_prompt


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_initialize_starts_jobs(self, controller, ha_mock, llm_mock):
        await controller.initialize()
        assert controller.tasks.is_running(SNAPSHOT_JOB)
        assert controller.tasks.is_running(EXPIRY_JOB)
        await controller.shutdown()
        assert controller.tasks.active_tasks == []
        ha_mock.close.assert_awaited_once()
        llm_mock.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health(self, controller, ha_mock):
        health = await controller.health_check()
        assert health["status"] == "ok"
        assert health["components"]["store"] == "MemoryStore"

        ha_mock.is_available = AsyncMock(return_value=False)
        health = await controller.health_check()
        assert health["status"] == "degraded"
        assert health["components"]["home_assistant"] == "disconnected"

    @pytest.mark.asyncio
    async def test_smart_suggestions_persisted(self, controller, ha_mock):
        ha_mock.get_states = AsyncMock(return_value=[
            {"entity_id": f"light.l{i}", "state": "on", "attributes": {}} for i in range(6)
        ])
        created = await controller.generate_smart_suggestions()
        assert [s["suggestion_type"] for s in created] == ["optimization"]
        assert len(await controller.suggestions.list_suggestions(status="pending")) == 1
