"""
Context Builder - verdichtet die HA-Entity-Liste fuer den LLM-Prompt.

Zwei Modi:
  - Voll: alle Entities nach Domain gruppiert mit Aliasen
  - Relevant: Entities nach Treffern auf die Nutzer-Nachricht gewichtet,
    auf ein Limit gekuerzt; ohne Treffer eine Domain-Uebersicht

Der ContextCache gehoert der jeweiligen Compactor-Instanz (kein Modul-Singleton),
damit Tests und mehrere Haushalte isolierte Caches nutzen koennen.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import yaml_config
from .constants import (
    CONTEXT_CACHE_TTL,
    CONTEXT_MAX_ALIASES_SHOWN,
    CONTEXT_MAX_RELEVANT,
    CONTEXT_MIN_KEYWORD_LEN,
    CONTEXT_RELEVANCE_TTL,
    SCORE_COMMON_DOMAIN,
    SCORE_DOMAIN_MATCH,
    SCORE_NAME_MATCH,
)
from .entity_catalog import EntityAliasMapping, build_catalog
from .errors import HomeCoreError, PersistenceError
from .store import PREFERENCES, RecordStore

logger = logging.getLogger(__name__)

# Domains die bei einem Treffer einen kleinen Bonus bekommen
COMMON_DOMAINS = frozenset({"light", "switch", "sensor", "climate"})

SMART_CONTEXT_KEY = "ai_context"
AI_INSTRUCTIONS_KEY = "ai_instructions"

QUERY_INSTRUCTIONS = (
    "ENTITY QUERY INSTRUCTIONS:\n"
    "- When user asks about a device, search by friendly name, entity_id, or aliases\n"
    "- Report current state with units of measurement\n"
    "- If multiple matches found, list all of them\n"
)

# Prompt-Injection-Schutz fuer Namen aus HA
_INJECTION_PATTERN = re.compile(
    r'\[(?:SYSTEM|INSTRUCTION|OVERRIDE|ADMIN|COMMAND|PROMPT|ROLE)\b'
    r'|IGNORE\s+(?:ALL\s+)?(?:PREVIOUS\s+)?INSTRUCTIONS'
    r'|SYSTEM\s*(?:MODE|OVERRIDE|INSTRUCTION)'
    r'|<\/?(?:system|instruction|admin|role|prompt)\b',
    re.IGNORECASE,
)
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _sanitize_for_prompt(text: str, max_len: int = 120) -> str:
    """Entfernt Newlines und verdaechtige Injection-Muster aus HA-Namen."""
    if not text or not isinstance(text, str):
        return ""
    text = re.sub(r"\s+", " ", text).strip()[:max_len]
    if _INJECTION_PATTERN.search(text):
        logger.warning("Prompt-Injection-Verdacht in Entity-Name blockiert: %.80s", text)
        return ""
    return text


# ============================================================
# Cache
# ============================================================

@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


class ContextCache:
    """TTL-Map fuer Kontextdaten. Last-writer-wins, keine Versionierung."""

    def __init__(self, default_ttl: float = CONTEXT_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Any]:
        """Liefert den Wert nur solange er frisch ist."""
        entry = self._entries.get(key)
        if entry and entry.is_fresh(self._clock()):
            return entry.value
        return None

    def get_stale(self, key: str) -> Optional[Any]:
        """Letzter bekannter Wert, unabhaengig vom Alter."""
        entry = self._entries.get(key)
        return entry.value if entry else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(value, self._clock(), ttl if ttl is not None else self.default_ttl)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Kontext-Cache geleert")

    def stats(self) -> dict:
        return {"size": len(self._entries), "keys": list(self._entries)}


# ============================================================
# Verdichtung
# ============================================================

def extract_keywords(message: str) -> list[str]:
    """Woerter > 2 Zeichen, ohne Sonderzeichen, in Nachrichten-Reihenfolge."""
    keywords = []
    for token in (message or "").lower().split():
        if len(token) < CONTEXT_MIN_KEYWORD_LEN:
            continue
        cleaned = _NON_ALNUM.sub("", token)
        if cleaned:
            keywords.append(cleaned)
    return keywords


def score_entity(mapping: EntityAliasMapping, keywords: list[str]) -> int:
    """Relevanz einer Entity fuer die Schluesselwoerter.

    +10 je Wort das in einem Alias vorkommt, +5 wenn das Wort die Domain ist.
    Entities aus den Standard-Domains bekommen bei einem Treffer +1.
    """
    score = 0
    for keyword in keywords:
        if any(keyword in name for name in mapping.possible_names):
            score += SCORE_NAME_MATCH
        if keyword == mapping.domain:
            score += SCORE_DOMAIN_MATCH
    if score and mapping.domain in COMMON_DOMAINS:
        score += SCORE_COMMON_DOMAIN
    return score


def score_entities(mappings: list[EntityAliasMapping], message: str,
                   cap: int = CONTEXT_MAX_RELEVANT) -> list[tuple[EntityAliasMapping, int]]:
    """Gewichtete Treffer, absteigend sortiert; Gleichstand behaelt die Katalog-Reihenfolge."""
    keywords = extract_keywords(message)
    scored = [(m, score_entity(m, keywords)) for m in mappings]
    scored = [pair for pair in scored if pair[1] > 0]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:cap]


def _state_display(mapping: EntityAliasMapping) -> str:
    return f"{mapping.state} {mapping.unit}" if mapping.unit else mapping.state


def _render_entity(mapping: EntityAliasMapping) -> str:
    name = _sanitize_for_prompt(mapping.friendly_name) or mapping.entity_id
    line = f"  - {name} ({mapping.entity_id}): {_state_display(mapping)}\n"
    if len(mapping.possible_names) > 2:
        aliases = [_sanitize_for_prompt(a) for a in mapping.possible_names[:CONTEXT_MAX_ALIASES_SHOWN]]
        line += f"    Aliases: {', '.join(a for a in aliases if a)}\n"
    return line


def group_by_domain(mappings: list[EntityAliasMapping]) -> dict[str, list[EntityAliasMapping]]:
    grouped: dict[str, list[EntityAliasMapping]] = {}
    for mapping in mappings:
        grouped.setdefault(mapping.domain, []).append(mapping)
    return grouped


def render_full_listing(mappings: list[EntityAliasMapping]) -> str:
    parts = ["COMPLETE ENTITY DATABASE:\n\n"]
    for domain, entities in group_by_domain(mappings).items():
        parts.append(f"{domain.upper()} ({len(entities)} entities):\n")
        parts.extend(_render_entity(m) for m in entities)
        parts.append("\n")
    return "".join(parts)


def build_domain_summary(mappings: list[EntityAliasMapping]) -> str:
    """Anzahl je Domain, absteigend nach Anzahl."""
    counts = {domain: len(items) for domain, items in group_by_domain(mappings).items()}
    lines = ["NO DIRECTLY MATCHING ENTITIES. AVAILABLE DEVICES BY DOMAIN:\n"]
    for domain, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True):
        lines.append(f"  - {domain.upper()}: {count} entities\n")
    return "".join(lines)


def build_full_context(mappings: list[EntityAliasMapping]) -> str:
    return render_full_listing(mappings) + "\n" + QUERY_INSTRUCTIONS


def build_relevant_context(mappings: list[EntityAliasMapping], message: str,
                           cap: int = CONTEXT_MAX_RELEVANT) -> str:
    scored = score_entities(mappings, message, cap)
    if not scored:
        return build_domain_summary(mappings) + "\n" + QUERY_INSTRUCTIONS
    parts = [f"RELEVANT ENTITIES ({len(scored)} of {len(mappings)}):\n"]
    parts.extend(_render_entity(m) for m, _score in scored)
    parts.append("\n")
    return "".join(parts) + QUERY_INSTRUCTIONS


def _summarize(states: list[dict]) -> dict:
    domains: dict[str, int] = {}
    for state in states:
        domain = state.get("entity_id", "").split(".", 1)[0]
        if domain:
            domains[domain] = domains.get(domain, 0) + 1
    ids = [s.get("entity_id", "") for s in states]
    return {
        "summary": {
            "total_entities": len(states),
            "total_automations": domains.get("automation", 0),
            "domains": domains,
        },
        "capabilities": {
            "has_solar": any("solar" in i for i in ids),
            "has_battery": any("battery" in i for i in ids),
            "has_climate_control": domains.get("climate", 0) > 0,
        },
    }


class ContextCompactor:
    """Liefert gecachten, verdichteten Entity-Kontext fuer den LLM-Prompt."""

    def __init__(self, ha_client, store: Optional[RecordStore] = None,
                 cache: Optional[ContextCache] = None):
        cfg = yaml_config.get("context", {})
        self._ha = ha_client
        self._store = store
        self.cache = cache or ContextCache(cfg.get("cache_ttl_seconds", CONTEXT_CACHE_TTL))
        self.relevance_ttl = float(cfg.get("relevance_ttl_seconds", CONTEXT_RELEVANCE_TTL))
        self.max_relevant = int(cfg.get("max_relevant_entities", CONTEXT_MAX_RELEVANT))

    async def get_smart_context(self, force_refresh: bool = False) -> dict:
        """States plus Zusammenfassung, 30s gecacht.

        Schlaegt die Aktualisierung fehl, wird der letzte gute Wert geliefert;
        ohne einen solchen wird der Fehler weitergereicht.
        """
        if not force_refresh:
            cached = self.cache.get(SMART_CONTEXT_KEY)
            if cached is not None:
                logger.debug("Kontext aus Cache")
                return cached

        try:
            states = await self._ha.get_states()
        except HomeCoreError as e:
            stale = self.cache.get_stale(SMART_CONTEXT_KEY)
            if stale is not None:
                logger.warning("Kontext-Aktualisierung fehlgeschlagen, nutze alten Stand: %s", e)
                return stale
            raise

        context = {
            "states": states,
            "fetched_at": datetime.now(timezone.utc).isoformat(),
            **_summarize(states),
        }
        self.cache.set(SMART_CONTEXT_KEY, context)
        return context

    async def get_relevant_entities(self, query: str) -> list[dict]:
        """Rohe States der relevantesten Entities, 5s gecacht."""
        keywords = extract_keywords(query)
        cache_key = "entities_" + "_".join(sorted(set(keywords)))
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            states = await self._ha.get_states()
        except HomeCoreError as e:
            logger.warning("Relevante Entities nicht ladbar: %s", e)
            stale = self.cache.get_stale(cache_key)
            return stale if stale is not None else []

        by_id = {s.get("entity_id"): s for s in states}
        scored = score_entities(build_catalog(states), query, self.max_relevant)
        result = [by_id[m.entity_id] for m, _score in scored if m.entity_id in by_id]
        self.cache.set(cache_key, result, ttl=self.relevance_ttl)
        return result

    async def build_context(self, message: Optional[str] = None,
                            force_refresh: bool = False) -> str:
        """Kompletter Entity-Kontext inkl. gespeicherter Benutzer-Anweisungen."""
        context = await self.get_smart_context(force_refresh)
        mappings = build_catalog(context["states"])

        parts = []
        instructions = await self.get_ai_instructions()
        if instructions:
            parts.append("USER INSTRUCTIONS:\n")
            parts.append(instructions + "\n\n")
            parts.append("IMPORTANT: Always follow the user instructions above when responding.\n\n")

        if message:
            parts.append(build_relevant_context(mappings, message, self.max_relevant))
        else:
            parts.append(build_full_context(mappings))
        return "".join(parts)

    # ----- Benutzer-Anweisungen -----

    async def get_ai_instructions(self) -> str:
        if not self._store:
            return ""
        try:
            rows = await self._store.select(PREFERENCES, where=[("key", "eq", AI_INSTRUCTIONS_KEY)], limit=1)
        except PersistenceError as e:
            logger.debug("AI-Anweisungen nicht ladbar: %s", e)
            return ""
        if not rows:
            return ""
        return (rows[0].get("value") or {}).get("instructions", "")

    async def save_ai_instructions(self, instructions: str) -> None:
        if not self._store:
            raise PersistenceError("No store configured")
        await self._store.upsert(PREFERENCES, {
            "key": AI_INSTRUCTIONS_KEY,
            "value": {"instructions": instructions},
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }, conflict=("key",))
        logger.info("AI-Anweisungen gespeichert (%d Zeichen)", len(instructions))
