"""
Home Controller - verbindet alle Komponenten zum Conversational Controller.

Ablauf einer Nachricht (process):
  1. Entity-Kontext (relevanter Ausschnitt, gecacht)
  2. Gelernte Muster, auf die Nachricht gefiltert
  3. Bei Energie-Fragen: Energie-Insights und Spar-Vorschlaege
  4. System-Prompt bauen und das Text-Modell fragen
  5. ACTION-Zeilen aus der Antwort parsen und ueber das Action Gateway ausfuehren
  6. Aus der Interaktion lernen
"""

import json
import logging
import re
from typing import Any, Optional

import yaml

from .action_gateway import ActionGateway
from .audit import AuditLedger
from .config import settings
from .constants import PATTERN_DEFAULT_SCOPE
from .context_builder import SMART_CONTEXT_KEY, ContextCompactor
from .energy_miner import EnergyMiner
from .errors import HomeCoreError, ValidationError
from .ha_client import HomeAssistantClient
from .llm_client import LLMClient
from .pattern_store import PatternStore
from .pricing import EnergyPricingService
from .store import RecordStore, create_store
from .suggestions import SuggestionManager, generate_smart_suggestions
from .task_registry import TaskRegistry

logger = logging.getLogger(__name__)

ACTION_PATTERN = re.compile(
    r"ACTION:\s+(\w+)\.(\w+)\s+([\w.]+)(?:\s+(\{[^}]+\}))?",
    re.IGNORECASE,
)
ENERGY_KEYWORDS = ("energy", "power", "cost", "save", "usage", "suggest")

EXPIRY_JOB = "suggestion_expiry"
EXPIRY_INTERVAL_SECONDS = 3600

FALLBACK_RESPONSE = (
    "I apologize, but I'm having trouble reaching the language model right now. "
    "Please try again in a moment."
)
EMPTY_RESPONSE = "I apologize, but I could not generate a response."

PROMPT_HEADER = """You are an intelligent Home Assistant AI with action capabilities.

{context}

IMPORTANT - ACTION FORMAT:
When you need to control a device, respond with this exact format:
ACTION: domain.service entity_id

Examples:
- "Turning on the light. ACTION: light.turn_on light.living_room"
- "Setting temperature. ACTION: climate.set_temperature climate.bedroom {{"temperature": 22}}"

For queries (no action needed), just respond naturally.
"""

PROMPT_RULES = """

RULES:
1. Search entities by friendly_name OR entity_id
2. For multi-word names like "upstairs light 6", match EXACTLY to the entity
3. Include ACTION: line ONLY when controlling devices
4. Be helpful and concise"""


def is_energy_query(message: str) -> bool:
    lower = message.lower()
    return any(kw in lower for kw in ENERGY_KEYWORDS)


def filter_relevant_patterns(patterns: list[dict], message: str) -> list[dict]:
    """Muster deren Key in der Nachricht vorkommt, plus alle Praeferenzen und Aliase."""
    lower = message.lower()
    return [
        p for p in patterns
        if str(p.get("pattern_key", "")).lower() in lower
        or p.get("pattern_type") in ("preference", "entity_alias")
    ]


def _parse_action_data(raw: Optional[str]) -> Optional[dict]:
    """JSON-Daten einer ACTION-Zeile. Modelle lassen gern Anfuehrungszeichen weg,
    daher YAML als zweiter Versuch ({temperature: 22})."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError:
            logger.warning("ACTION-Daten nicht lesbar: %s", raw)
            return None
    return data if isinstance(data, dict) else None


def parse_actions(text: str) -> tuple[str, list[dict]]:
    """Trennt ACTION-Anweisungen vom Antworttext."""
    actions = [
        {
            "domain": m.group(1).lower(),
            "service": m.group(2).lower(),
            "entity_id": m.group(3),
            "data": _parse_action_data(m.group(4)),
        }
        for m in ACTION_PATTERN.finditer(text or "")
    ]
    cleaned = ACTION_PATTERN.sub("", text or "").strip()
    return cleaned, actions


def build_system_prompt(context_text: str, smart_context: Optional[dict],
                        patterns: list[dict], energy_insights: Optional[dict],
                        energy_suggestions: Optional[list[dict]]) -> str:
    prompt = PROMPT_HEADER.format(context=context_text)

    if smart_context:
        summary = smart_context.get("summary") or {}
        prompt += f"\nSYSTEM: {summary.get('total_entities', 0)} entities"
        caps = smart_context.get("capabilities") or {}
        features = [
            name for key, name in (
                ("has_solar", "solar"), ("has_battery", "battery"), ("has_climate_control", "climate"),
            ) if caps.get(key)
        ]
        if features:
            prompt += f" | Features: {', '.join(features)}"

    if energy_insights and energy_insights.get("total_snapshots"):
        prompt += "\n\nENERGY:"
        prompt += f"\n- Daily avg: {energy_insights['daily_average']:.0f}W"
        prompt += f"\n- Trend: {energy_insights['trend']}"
        if energy_insights.get("solar_production", 0) > 0:
            prompt += f"\n- Solar: {energy_insights['solar_production']:.0f}W"

    if energy_suggestions:
        prompt += "\n\nSUGGESTIONS:"
        for s in energy_suggestions[:2]:
            prompt += f"\n- {s['title']}: {s['description']}"

    if patterns:
        prompt += "\n\nLEARNED PATTERNS:"
        for p in patterns[:5]:
            value = p.get("pattern_value") or {}
            if p.get("pattern_type") == "entity_alias" and isinstance(value, dict):
                prompt += f"\n- User calls \"{value.get('natural_name')}\" -> {p['pattern_key']}"
            else:
                prompt += f"\n- {p['pattern_type']}: {p['pattern_key']}"

    return prompt + PROMPT_RULES


class HomeController:
    """Haelt alle Komponenten und verarbeitet Benutzer-Nachrichten."""

    def __init__(self, ha_client=None, llm_client=None, store: Optional[RecordStore] = None):
        self.ha = ha_client or HomeAssistantClient()
        self.llm = llm_client or LLMClient()
        self.tasks = TaskRegistry()
        self.store = store
        self.context: Optional[ContextCompactor] = None
        self.patterns: Optional[PatternStore] = None
        self.energy: Optional[EnergyMiner] = None
        self.pricing: Optional[EnergyPricingService] = None
        self.suggestions: Optional[SuggestionManager] = None
        self.audit: Optional[AuditLedger] = None
        self.gateway: Optional[ActionGateway] = None
        self._initialized = False
        if store is not None:
            self._wire(store)

    def _wire(self, store: RecordStore) -> None:
        self.store = store
        self.context = ContextCompactor(self.ha, store)
        self.patterns = PatternStore(store)
        self.audit = AuditLedger(store)
        self.gateway = ActionGateway(self.ha, self.audit)
        self.suggestions = SuggestionManager(store)
        self.energy = EnergyMiner(store, self.ha, self.patterns, self.tasks)
        self.pricing = EnergyPricingService(store, self.ha, self.tasks)

    async def initialize(self, start_jobs: bool = True) -> None:
        """Store verbinden, Komponenten verdrahten, periodische Jobs starten."""
        if self.store is None:
            self._wire(await create_store(settings.store_backend, settings.redis_url))
        if start_jobs:
            self.energy.start()
            if self.suggestions.enabled:
                self.tasks.schedule_periodic(EXPIRY_JOB, self.suggestions.expire_stale, EXPIRY_INTERVAL_SECONDS)
            pricing = await self.pricing.get_pricing()
            if self.pricing.enabled and pricing.pricing_mode == "dynamic":
                self.pricing.start_dynamic_pricing(pricing.update_interval_minutes)
        self._initialized = True
        logger.info("HomeController initialisiert (Store: %s)", type(self.store).__name__)

    async def process(self, text: str, scope: str = PATTERN_DEFAULT_SCOPE) -> dict[str, Any]:
        """
        Verarbeitet eine Benutzer-Nachricht.

        Returns:
            {"response": str, "actions": [...], "error": Optional[str]}
        """
        if not text or not text.strip():
            raise ValidationError("message must not be empty")

        try:
            context_text = await self.context.build_context(text)
        except HomeCoreError as e:
            logger.warning("Kein Entity-Kontext verfuegbar: %s", e)
            context_text = ""
        smart_context = self.context.cache.get_stale(SMART_CONTEXT_KEY)

        patterns = filter_relevant_patterns(await self.patterns.get_learned_patterns(scope=scope), text)

        insights = energy_suggestions = None
        if self.energy.enabled and is_energy_query(text):
            insights = await self.energy.get_energy_insights(scope)
            energy_suggestions = await self.energy.generate_suggestions(scope)

        system_prompt = build_system_prompt(context_text, smart_context, patterns, insights, energy_suggestions)
        logger.debug("System-Prompt: %d Zeichen, %d Muster", len(system_prompt), len(patterns))

        try:
            raw = await self.llm.complete(system_prompt, text)
        except HomeCoreError as e:
            logger.error("Text-Modell fehlgeschlagen: %s", e)
            return {"response": FALLBACK_RESPONSE, "actions": [], "error": str(e)}

        reply, actions = parse_actions(raw)
        reply = reply or EMPTY_RESPONSE
        executed = []
        for action in actions:
            try:
                await self.gateway.call_service(
                    action["domain"], action["service"], action["entity_id"], action["data"],
                    source="ai_assistant", reason=text[:200],
                )
                executed.append({**action, "success": True})
            except HomeCoreError as e:
                executed.append({**action, "success": False, "error": str(e)})
                reply += f"\n\nFailed to {action['service']} {action['entity_id']}: {e}"

        await self._learn(text, [a for a in executed if a["success"]], scope)
        return {"response": reply, "actions": executed, "error": None}

    async def _learn(self, text: str, actions: list[dict], scope: str) -> None:
        try:
            await self.patterns.learn_from_message(text, scope)
            if actions:
                await self.patterns.learn_from_actions(text, actions, scope)
        except HomeCoreError as e:
            logger.warning("Lernen aus Interaktion fehlgeschlagen: %s", e)

    async def generate_smart_suggestions(self, scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        """Heuristische Vorschlaege aus States und Aktions-Log, direkt gespeichert."""
        states = (await self.context.get_smart_context())["states"]
        logs = await self.audit.get_action_logs(limit=50)
        return await self.suggestions.persist_all(generate_smart_suggestions(states, logs), scope)

    async def health_check(self) -> dict:
        ha_ok = await self.ha.is_available()
        llm_ok = await self.llm.is_available()
        return {
            "status": "ok" if (ha_ok and llm_ok) else "degraded",
            "components": {
                "home_assistant": "connected" if ha_ok else "disconnected",
                "llm": f"{self.llm.provider} ({'connected' if llm_ok else 'disconnected'})",
                "store": type(self.store).__name__ if self.store else "none",
                "energy_miner": "active" if self.energy and self.energy.enabled else "inactive",
                "audit": self.audit.status() if self.audit else {},
            },
            "context_cache": self.context.cache.stats() if self.context else {},
            "tasks": self.tasks.status(),
        }

    async def shutdown(self) -> None:
        if self.energy:
            self.energy.stop()
        if self.pricing:
            self.pricing.stop_dynamic_pricing()
        await self.tasks.shutdown()
        await self.ha.close()
        await self.llm.close()
        if self.store:
            await self.store.close()
        logger.info("HomeController heruntergefahren")
