"""
Pattern Store - lernt Befehls-Aliase, Vorlieben, Routinen und Entity-Namen.

Kandidaten werden ueber eine geordnete, deklarative Regeltabelle aus
Nachrichten extrahiert. Jede Wiederholung verstaerkt die Konfidenz
(atomar im Record-Store), bis sie bei 1.0 saettigt.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import yaml_config
from .constants import (
    INSIGHT_USAGE_BONUS,
    INSIGHT_USAGE_BONUS_MAX,
    PATTERN_DEFAULT_SCOPE,
    PATTERN_MIN_CONFIDENCE,
    PATTERN_QUERY_LIMIT,
    PATTERN_TOP_INSIGHTS,
)
from .errors import PersistenceError, ValidationError
from .store import PATTERNS, RecordStore

logger = logging.getLogger(__name__)

PATTERN_CONFLICT = ("scope", "pattern_type", "pattern_key")
LEARNING_SOURCES = frozenset({"user_interaction", "feedback", "automation", "pattern_detection"})


@dataclass(frozen=True)
class ExtractionRule:
    """Eine Zeile der Regeltabelle: Treffer -> (Typ, Schluessel, Wert, Konfidenz)."""

    name: str
    matcher: re.Pattern
    pattern_type: str
    confidence: float
    learning_source: str
    key: Callable[[re.Match], str]
    value: Callable[[re.Match, str], Any]


@dataclass
class PatternCandidate:
    pattern_type: str
    pattern_key: str
    pattern_value: Any
    confidence: float
    learning_source: str
    rule: str


def _command(action: str) -> ExtractionRule:
    return ExtractionRule(
        name=action,
        matcher=re.compile(_COMMAND_REGEX[action], re.IGNORECASE),
        pattern_type="command_alias",
        confidence=0.85,
        learning_source="pattern_detection",
        key=lambda m: m.group(0).lower(),
        value=lambda m, _msg, action=action: {"action": action, "original": m.group(0)},
    )


def _routine(keyword: str) -> ExtractionRule:
    return ExtractionRule(
        name=f"routine_{keyword}",
        matcher=re.compile(keyword, re.IGNORECASE),
        pattern_type="routine",
        confidence=0.70,
        learning_source="user_interaction",
        key=lambda m, keyword=keyword: keyword,
        value=lambda _m, msg: {"context": msg, "mentioned_at": _now()},
    )


def _entity_alias(phrase: str, alias: str) -> ExtractionRule:
    return ExtractionRule(
        name=f"alias_{alias}",
        matcher=re.compile(phrase, re.IGNORECASE),
        pattern_type="entity_alias",
        confidence=0.90,
        learning_source="user_interaction",
        key=lambda m, alias=alias: alias,
        value=lambda m, _msg: {"natural_name": m.group(0)},
    )


_COMMAND_REGEX = {
    "toggle": r"turn (on|off) (the )?(.*)",
    "set_value": r"set (.*) to (\d+)",
    "dim": r"dim (the )?(.*)",
    "brighten": r"brighten (the )?(.*)",
    "cover_control": r"(open|close) (the )?(.*)",
}

# Reihenfolge ist Teil des Verhaltens: jede Regel liefert hoechstens einen Kandidaten
EXTRACTION_RULES: tuple[ExtractionRule, ...] = (
    *(_command(action) for action in _COMMAND_REGEX),
    ExtractionRule(
        name="preference",
        matcher=re.compile(r"prefer|like", re.IGNORECASE),
        pattern_type="preference",
        confidence=0.75,
        learning_source="user_interaction",
        key=lambda _m: "communication_style",
        value=lambda _m, msg: {"message": msg},
    ),
    *(_routine(k) for k in ("morning", "evening", "night", "bedtime")),
    _entity_alias(r"bedroom light", "bedroom_light"),
    _entity_alias(r"living room", "living_room"),
    _entity_alias(r"front door", "front_door"),
    _entity_alias(r"garage door", "garage_door"),
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def extract_candidates(message: str, rules=EXTRACTION_RULES) -> list[PatternCandidate]:
    """Wendet die Regeltabelle auf eine Nachricht an."""
    candidates = []
    for rule in rules:
        match = rule.matcher.search(message or "")
        if not match:
            continue
        candidates.append(PatternCandidate(
            pattern_type=rule.pattern_type,
            pattern_key=rule.key(match),
            pattern_value=rule.value(match, message),
            confidence=rule.confidence,
            learning_source=rule.learning_source,
            rule=rule.name,
        ))
    return candidates


def adjusted_confidence(pattern: dict) -> float:
    """Anzeige-Konfidenz inkl. Nutzungsbonus (wird nie gespeichert)."""
    bonus = min(INSIGHT_USAGE_BONUS_MAX, int(pattern.get("usage_count", 0)) * INSIGHT_USAGE_BONUS)
    return min(1.0, float(pattern.get("confidence", 0.0)) + bonus)


class PatternStore:
    """Lernt und liefert Muster je Scope (Benutzer oder global)."""

    def __init__(self, store: RecordStore):
        cfg = yaml_config.get("learning", {})
        self.enabled = cfg.get("enabled", True)
        self.min_confidence = float(cfg.get("min_confidence", PATTERN_MIN_CONFIDENCE))
        self.max_patterns = int(cfg.get("max_patterns", PATTERN_QUERY_LIMIT))
        self._store = store

    # ----- Schreiben -----

    async def upsert_pattern(
        self,
        pattern_type: str,
        pattern_key: str,
        pattern_value: Any,
        confidence: float,
        learning_source: str = "user_interaction",
        source_metadata: Optional[dict] = None,
        scope: str = PATTERN_DEFAULT_SCOPE,
    ) -> dict:
        """Legt ein Muster an oder verstaerkt es (atomar)."""
        if not pattern_type or not pattern_key:
            raise ValidationError("pattern_type and pattern_key are required")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"confidence out of range: {confidence}")
        if learning_source not in LEARNING_SOURCES:
            raise ValidationError(f"unknown learning_source: {learning_source}")

        now = _now()
        record = {
            "scope": scope,
            "pattern_type": pattern_type,
            "pattern_key": pattern_key,
            "pattern_value": pattern_value,
            "confidence": confidence,
            "learning_source": learning_source,
            "source_metadata": source_metadata or {},
            "created_at": now,
        }
        row = await self._store.reinforce(PATTERNS, record, PATTERN_CONFLICT, now)
        logger.debug(
            "Muster %s/%s: confidence=%.2f usage=%d",
            pattern_type, pattern_key, row["confidence"], row["usage_count"],
        )
        return row

    async def set_pattern(
        self,
        pattern_type: str,
        pattern_key: str,
        pattern_value: Any,
        confidence: float,
        learning_source: str = "feedback",
        scope: str = PATTERN_DEFAULT_SCOPE,
    ) -> dict:
        """Ueberschreibt ein Muster ohne Verstaerkung (Analysen, Feedback)."""
        now = _now()
        return await self._store.upsert(PATTERNS, {
            "scope": scope,
            "pattern_type": pattern_type,
            "pattern_key": pattern_key,
            "pattern_value": pattern_value,
            "confidence": max(0.0, min(1.0, confidence)),
            "usage_count": 1,
            "learning_source": learning_source,
            "source_metadata": {},
            "created_at": now,
            "updated_at": now,
            "last_used_at": now,
        }, conflict=PATTERN_CONFLICT)

    async def learn_from_message(self, message: str, scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        """Extrahiert Kandidaten und verstaerkt sie. Einzelne Fehler brechen nicht ab."""
        if not self.enabled:
            return []
        learned = []
        for candidate in extract_candidates(message):
            try:
                learned.append(await self.upsert_pattern(
                    candidate.pattern_type,
                    candidate.pattern_key,
                    candidate.pattern_value,
                    candidate.confidence,
                    candidate.learning_source,
                    {"rule": candidate.rule, "message": message[:100]},
                    scope,
                ))
            except PersistenceError as e:
                logger.error("Muster '%s' nicht gespeichert: %s", candidate.pattern_key, e)
        return learned

    async def learn_from_actions(self, message: str, actions: list[dict],
                                 scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        """Lernt welche Wortfolgen der Benutzer fuer ausgefuehrte Entities verwendet.

        Zwei-Wort-Folgen werden mit 0.7 gelernt, Drei-Wort-Folgen mit 0.8,
        sofern ihre Unterstrich-Form im Namensteil der Entity vorkommt.
        """
        if not self.enabled:
            return []
        words = (message or "").lower().split()
        learned = []
        for action in actions:
            entity_id = action.get("entity_id") or ""
            if "." not in entity_id:
                continue
            entity_part = entity_id.split(".", 1)[1]
            for i in range(len(words) - 1):
                phrases = [(" ".join(words[i:i + 2]), 0.7)]
                if i < len(words) - 2:
                    phrases.append((" ".join(words[i:i + 3]), 0.8))
                for phrase, confidence in phrases:
                    if phrase.replace(" ", "_") not in entity_part:
                        continue
                    try:
                        learned.append(await self.upsert_pattern(
                            "entity_alias", entity_part,
                            {"natural_name": phrase, "entity_id": entity_id},
                            confidence, "user_interaction",
                            {"detected_from": "executed_action"}, scope,
                        ))
                    except PersistenceError as e:
                        logger.error("Entity-Alias nicht gespeichert: %s", e)
        return learned

    async def record_feedback(self, message_text: str, rating: str,
                              scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        """Negatives Feedback auf eine Antwort in Korrektur-Muster uebersetzen."""
        if rating not in ("up", "down"):
            raise ValidationError(f"rating must be 'up' or 'down', got {rating!r}")
        if rating == "up":
            return []
        content = (message_text or "").lower()
        value = {"content": message_text, "timestamp": _now()}
        learned = []
        if "wrong" in content or "incorrect" in content:
            learned.append(await self.upsert_pattern(
                "correction", "response_issue", value, 0.3, "feedback",
                {"feedback_type": "negative", "reason": "incorrect_response"}, scope,
            ))
        if "device" in content or "entity" in content:
            learned.append(await self.upsert_pattern(
                "entity_issue", "needs_clarification", value, 0.4, "feedback",
                {"feedback_type": "negative", "reason": "entity_confusion"}, scope,
            ))
        return learned

    async def correct_response(self, original: str, corrected: str, correction_type: str,
                               scope: str = PATTERN_DEFAULT_SCOPE) -> Optional[dict]:
        """Benutzer-Korrektur einer Antwort; Entity-Namen werden als Muster gelernt."""
        if correction_type != "entity_name":
            logger.info("Korrektur vom Typ '%s' nicht lernbar", correction_type)
            return None
        return await self.upsert_pattern(
            "correction", "entity_reference",
            {"original": original, "corrected": corrected},
            0.9, "feedback",
            {"correction_type": correction_type, "timestamp": _now()}, scope,
        )

    # ----- Lesen -----

    async def get_learned_patterns(self, min_confidence: Optional[float] = None,
                                   scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        """Muster ab Schwellwert, nach usage_count absteigend. Fehler -> []."""
        threshold = self.min_confidence if min_confidence is None else min_confidence
        try:
            return await self._store.select(
                PATTERNS,
                where=[("scope", "eq", scope), ("confidence", "gte", threshold)],
                order_by="usage_count",
                descending=True,
                limit=self.max_patterns,
            )
        except PersistenceError as e:
            logger.warning("Gelernte Muster nicht ladbar: %s", e)
            return []

    async def get_pattern(self, pattern_type: str, pattern_key: str,
                          scope: str = PATTERN_DEFAULT_SCOPE) -> Optional[dict]:
        rows = await self._store.select(PATTERNS, where=[
            ("scope", "eq", scope),
            ("pattern_type", "eq", pattern_type),
            ("pattern_key", "eq", pattern_key),
        ], limit=1)
        return rows[0] if rows else None

    async def get_patterns_by_type(self, pattern_type: str, scope: str = PATTERN_DEFAULT_SCOPE,
                                   limit: Optional[int] = None) -> list[dict]:
        return await self._store.select(
            PATTERNS,
            where=[("scope", "eq", scope), ("pattern_type", "eq", pattern_type)],
            order_by="usage_count", descending=True, limit=limit,
        )

    async def get_pattern_insights(self, scope: Optional[str] = None) -> dict:
        """Auswertung nach Typ und Quelle mit angepasster Konfidenz."""
        where = [("scope", "eq", scope)] if scope else None
        try:
            patterns = await self._store.select(PATTERNS, where=where, order_by="usage_count", descending=True)
        except PersistenceError as e:
            logger.warning("Muster-Auswertung nicht moeglich: %s", e)
            patterns = []

        by_type: dict[str, int] = {}
        source_stats: dict[str, list[float]] = {}
        for p in patterns:
            by_type[p["pattern_type"]] = by_type.get(p["pattern_type"], 0) + 1
            source = p.get("learning_source") or "user_interaction"
            source_stats.setdefault(source, []).append(adjusted_confidence(p))

        adjusted = [adjusted_confidence(p) for p in patterns]
        return {
            "total_patterns": len(patterns),
            "by_type": by_type,
            "by_source": {
                source: {"count": len(values), "avg_confidence": sum(values) / len(values)}
                for source, values in source_stats.items()
            },
            "top_patterns": patterns[:PATTERN_TOP_INSIGHTS],
            "average_confidence": sum(adjusted) / len(adjusted) if adjusted else 0.0,
        }
