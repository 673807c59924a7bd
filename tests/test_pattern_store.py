"""
Tests fuer den Pattern Store: Regel-Extraktion, Verstaerkung, Feedback und Auswertung.
"""

from unittest.mock import AsyncMock

import pytest

from homecore.errors import PersistenceError, ValidationError
from homecore.pattern_store import (
    PatternStore,
    adjusted_confidence,
    extract_candidates,
)


@pytest.fixture
def patterns(memory_store):
    return PatternStore(memory_store)


# =====================================================================
# Extraktion
# =====================================================================


class TestExtraction:

    def test_toggle_and_alias(self):
        candidates = extract_candidates("turn on the living room light")
        found = {(c.pattern_type, c.pattern_key) for c in candidates}
        assert ("command_alias", "turn on the living room light") in found
        assert ("entity_alias", "living_room") in found
        assert len(candidates) == 2

    def test_command_confidence(self):
        candidate = extract_candidates("Dim the kitchen lights")[0]
        assert candidate.pattern_value["action"] == "dim"
        assert candidate.confidence == 0.85
        assert candidate.learning_source == "pattern_detection"

    def test_set_value(self):
        candidate = extract_candidates("set thermostat to 21")[0]
        assert candidate.pattern_value == {"action": "set_value", "original": "set thermostat to 21"}

    def test_preference_and_routine(self):
        candidates = extract_candidates("I prefer short answers in the morning")
        by_type = {c.pattern_type: c for c in candidates}
        assert by_type["preference"].pattern_key == "communication_style"
        assert by_type["preference"].confidence == 0.75
        assert by_type["routine"].pattern_key == "morning"
        assert by_type["routine"].confidence == 0.70

    def test_rule_order_is_stable(self):
        names = [c.rule for c in extract_candidates("open the garage door at night")]
        assert names == ["cover_control", "routine_night", "alias_garage_door"]

    def test_no_match(self):
        assert extract_candidates("what's the weather") == []


# =====================================================================
# Verstaerkung
# =====================================================================


class TestUpsertPattern:

    @pytest.mark.asyncio
    async def test_repeat_raises_confidence_and_usage(self, patterns):
        rows = [
            await patterns.upsert_pattern("command_alias", "lights on", {"action": "toggle"}, 0.85)
            for _ in range(4)
        ]
        assert [r["usage_count"] for r in rows] == [1, 2, 3, 4]
        assert rows[1]["confidence"] == pytest.approx(0.95)
        assert rows[2]["confidence"] == 1.0
        assert rows[3]["confidence"] == 1.0

    @pytest.mark.asyncio
    async def test_value_is_replaced(self, patterns):
        await patterns.upsert_pattern("routine", "morning", {"v": 1}, 0.7)
        row = await patterns.upsert_pattern("routine", "morning", {"v": 2}, 0.7)
        assert row["pattern_value"] == {"v": 2}

    @pytest.mark.asyncio
    async def test_invalid_input(self, patterns):
        with pytest.raises(ValidationError):
            await patterns.upsert_pattern("", "k", None, 0.5)
        with pytest.raises(ValidationError):
            await patterns.upsert_pattern("t", "k", None, 1.5)
        with pytest.raises(ValidationError):
            await patterns.upsert_pattern("t", "k", None, 0.5, learning_source="guess")

    @pytest.mark.asyncio
    async def test_set_pattern_overwrites(self, patterns):
        await patterns.set_pattern("energy_analysis", "latest_analysis", {"n": 1}, 0.8)
        row = await patterns.set_pattern("energy_analysis", "latest_analysis", {"n": 2}, 0.8)
        assert row["usage_count"] == 1
        stored = await patterns.get_pattern("energy_analysis", "latest_analysis")
        assert stored["pattern_value"] == {"n": 2}


class TestLearning:

    @pytest.mark.asyncio
    async def test_learn_from_message(self, patterns):
        learned = await patterns.learn_from_message("turn on the living room light", scope="alice")
        assert len(learned) == 2
        assert await patterns.get_learned_patterns(scope="global") == []
        assert len(await patterns.get_learned_patterns(scope="alice")) == 2

    @pytest.mark.asyncio
    async def test_disabled_learns_nothing(self, patterns):
        patterns.enabled = False
        assert await patterns.learn_from_message("turn on the living room light") == []

    @pytest.mark.asyncio
    async def test_store_failure_does_not_abort(self, patterns, memory_store):
        memory_store.reinforce = AsyncMock(side_effect=PersistenceError("down"))
        assert await patterns.learn_from_message("turn on the living room light") == []

    @pytest.mark.asyncio
    async def test_learn_from_actions(self, patterns):
        learned = await patterns.learn_from_actions(
            "please switch the pool pump off",
            [{"domain": "switch", "service": "turn_off", "entity_id": "switch.pool_pump"}],
        )
        assert len(learned) == 1
        assert learned[0]["pattern_key"] == "pool_pump"
        assert learned[0]["pattern_value"]["natural_name"] == "pool pump"
        assert learned[0]["confidence"] == 0.7

    @pytest.mark.asyncio
    async def test_three_word_phrase(self, patterns):
        learned = await patterns.learn_from_actions(
            "close living room blinds",
            [{"entity_id": "cover.living_room_blinds"}],
        )
        values = {r["pattern_value"]["natural_name"] for r in learned}
        assert "living room blinds" in values

    @pytest.mark.asyncio
    async def test_actions_without_entity(self, patterns):
        assert await patterns.learn_from_actions("reload everything", [{"entity_id": None}]) == []


class TestFeedback:

    @pytest.mark.asyncio
    async def test_down_with_wrong_device(self, patterns):
        learned = await patterns.record_feedback("Wrong device was switched", "down")
        types = {r["pattern_type"] for r in learned}
        assert types == {"correction", "entity_issue"}
        confidences = {r["pattern_type"]: r["confidence"] for r in learned}
        assert confidences["correction"] == 0.3
        assert confidences["entity_issue"] == 0.4

    @pytest.mark.asyncio
    async def test_up_is_ignored(self, patterns):
        assert await patterns.record_feedback("wrong", "up") == []

    @pytest.mark.asyncio
    async def test_invalid_rating(self, patterns):
        with pytest.raises(ValidationError):
            await patterns.record_feedback("wrong", "meh")

    @pytest.mark.asyncio
    async def test_entity_name_correction(self, patterns):
        row = await patterns.correct_response("kitchen light", "light.kitchen_main", "entity_name")
        assert row["pattern_key"] == "entity_reference"
        assert row["confidence"] == 0.9
        assert row["pattern_value"] == {"original": "kitchen light", "corrected": "light.kitchen_main"}

    @pytest.mark.asyncio
    async def test_other_correction_not_learned(self, patterns):
        assert await patterns.correct_response("a", "b", "tone") is None


# =====================================================================
# Lesen & Auswertung
# =====================================================================


class TestQueries:

    @pytest.mark.asyncio
    async def test_threshold_and_order(self, patterns):
        await patterns.upsert_pattern("routine", "low", {}, 0.3)
        for _ in range(3):
            await patterns.upsert_pattern("routine", "often", {}, 0.6)
        await patterns.upsert_pattern("routine", "once", {}, 0.9)
        rows = await patterns.get_learned_patterns()
        assert [r["pattern_key"] for r in rows] == ["often", "once"]
        rows = await patterns.get_learned_patterns(min_confidence=0.0)
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_store_failure_returns_empty(self, patterns, memory_store):
        memory_store.select = AsyncMock(side_effect=PersistenceError("down"))
        assert await patterns.get_learned_patterns() == []

    @pytest.mark.asyncio
    async def test_by_type(self, patterns):
        await patterns.upsert_pattern("routine", "morning", {}, 0.7)
        await patterns.upsert_pattern("preference", "communication_style", {}, 0.75)
        rows = await patterns.get_patterns_by_type("routine")
        assert [r["pattern_key"] for r in rows] == ["morning"]

    def test_adjusted_confidence_bonus(self):
        assert adjusted_confidence({"confidence": 0.5, "usage_count": 5}) == pytest.approx(0.6)
        assert adjusted_confidence({"confidence": 0.5, "usage_count": 100}) == pytest.approx(0.8)
        assert adjusted_confidence({"confidence": 0.95, "usage_count": 10}) == 1.0

    @pytest.mark.asyncio
    async def test_insights(self, patterns):
        await patterns.upsert_pattern("routine", "morning", {}, 0.5)
        await patterns.upsert_pattern("correction", "response_issue", {}, 0.3, "feedback")
        insights = await patterns.get_pattern_insights()
        assert insights["total_patterns"] == 2
        assert insights["by_type"] == {"routine": 1, "correction": 1}
        assert insights["by_source"]["feedback"]["count"] == 1
        # Bonus 0.02 je Nutzung
        assert insights["by_source"]["feedback"]["avg_confidence"] == pytest.approx(0.32)
        assert insights["average_confidence"] == pytest.approx((0.52 + 0.32) / 2)

        stored = await patterns.get_pattern("routine", "morning")
        assert stored["confidence"] == 0.5
