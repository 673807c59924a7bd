"""
Suggestion Manager - Lebenszyklus von Vorschlaegen.

Status: pending -> accepted | rejected | implemented | expired.
Nur pending-Vorschlaege koennen wechseln; alle anderen Status sind final.

Ablauf (expires_at) wird beim Lesen ausgewertet: ein pending-Vorschlag
dessen expires_at in der Vergangenheit liegt wird vor der Rueckgabe auf
expired gesetzt. expire_stale() erledigt dasselbe fuer alle Vorschlaege.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import yaml_config
from .constants import (
    SMART_HIGH_POWER_W,
    SMART_MANUAL_LOG_WINDOW,
    SMART_MANUAL_MIN_COUNT,
    SMART_MAX_LIGHTS_ON,
    SUGGESTION_DEFAULT_TTL_HOURS,
)
from .errors import PersistenceError, ValidationError
from .store import SUGGESTIONS, RecordStore

logger = logging.getLogger(__name__)

STATUSES = frozenset({"pending", "accepted", "rejected", "implemented", "expired"})
IMPACTS = frozenset({"high", "medium", "low"})
CATEGORIES = frozenset({"energy", "comfort", "security", "convenience", "maintenance"})
REQUIRED_FIELDS = ("suggestion_type", "title", "description")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def validate_suggestion(data: dict) -> None:
    """Pflichtfelder, Konfidenzbereich und Wertemengen pruefen."""
    missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}")
    confidence = data.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        raise ValidationError("confidence must be a number")
    if not 0.0 <= confidence <= 1.0:
        raise ValidationError(f"confidence out of range: {confidence}")
    if data.get("impact", "medium") not in IMPACTS:
        raise ValidationError(f"impact must be one of {sorted(IMPACTS)}")
    if data.get("category", "energy") not in CATEGORIES:
        raise ValidationError(f"category must be one of {sorted(CATEGORIES)}")
    entities = data.get("entities_involved", [])
    if not isinstance(entities, list):
        raise ValidationError("entities_involved must be a list")


class SuggestionManager:
    """Erstellt, listet und aktualisiert Vorschlaege."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = _utcnow):
        cfg = yaml_config.get("suggestions", {})
        self.enabled = cfg.get("enabled", True)
        self.default_ttl_hours = int(cfg.get("default_ttl_hours", SUGGESTION_DEFAULT_TTL_HOURS))
        self._store = store
        self._clock = clock

    async def create_suggestion(self, data: dict, scope: str = "global") -> dict:
        validate_suggestion(data)
        now = self._clock()
        expires_at = data.get("expires_at")
        if not expires_at and self.default_ttl_hours > 0:
            expires_at = (now + timedelta(hours=self.default_ttl_hours)).isoformat()
        record = {
            "scope": scope,
            "suggestion_type": data["suggestion_type"],
            "title": data["title"],
            "description": data["description"],
            "confidence": float(data["confidence"]),
            "impact": data.get("impact", "medium"),
            "category": data.get("category", "energy"),
            "entities_involved": list(data.get("entities_involved", [])),
            "data": data.get("data") or {},
            "status": "pending",
            "created_at": now.isoformat(),
            "implemented_at": None,
            "expires_at": expires_at,
        }
        row = await self._store.insert(SUGGESTIONS, record)
        logger.info("Vorschlag erstellt: %s (%s)", row["title"], row["suggestion_type"])
        return row

    async def _expire_if_due(self, row: dict) -> dict:
        if row.get("status") != "pending":
            return row
        expires = _parse_ts(row.get("expires_at"))
        if expires is None or expires > self._clock():
            return row
        updated = await self._store.update(SUGGESTIONS, row["id"], {"status": "expired"})
        logger.debug("Vorschlag %s abgelaufen", row["id"])
        return updated or {**row, "status": "expired"}

    async def get_suggestion(self, suggestion_id: str) -> Optional[dict]:
        row = await self._store.get(SUGGESTIONS, suggestion_id)
        return await self._expire_if_due(row) if row else None

    async def list_suggestions(self, status: Optional[str] = None,
                               scope: Optional[str] = None) -> list[dict]:
        """Vorschlaege nach created_at absteigend, optional nach Status gefiltert."""
        if status is not None and status not in STATUSES:
            raise ValidationError(f"unknown status: {status}")
        where = [("scope", "eq", scope)] if scope else []
        try:
            rows = await self._store.select(SUGGESTIONS, where=where, order_by="created_at", descending=True)
        except PersistenceError as e:
            logger.warning("Vorschlaege nicht ladbar: %s", e)
            return []
        rows = [await self._expire_if_due(r) for r in rows]
        if status:
            rows = [r for r in rows if r.get("status") == status]
        return rows

    async def update_status(self, suggestion_id: str, status: str) -> dict:
        """Statuswechsel; implemented_at wird nur beim Wechsel auf implemented gesetzt."""
        if status not in STATUSES:
            raise ValidationError(f"unknown status: {status}")
        row = await self.get_suggestion(suggestion_id)
        if row is None:
            raise ValidationError(f"suggestion not found: {suggestion_id}")
        if row["status"] != "pending":
            raise ValidationError(f"suggestion is already {row['status']}")
        if status == "pending":
            raise ValidationError("suggestion is already pending")

        changes: dict = {"status": status}
        if status == "implemented":
            changes["implemented_at"] = self._clock().isoformat()
        updated = await self._store.update(SUGGESTIONS, suggestion_id, changes)
        logger.info("Vorschlag %s: pending -> %s", suggestion_id, status)
        return updated

    async def expire_stale(self) -> int:
        """Setzt alle faelligen pending-Vorschlaege auf expired. Gibt die Anzahl zurueck."""
        rows = await self._store.select(SUGGESTIONS, where=[("status", "eq", "pending")])
        expired = 0
        for row in rows:
            if (await self._expire_if_due(row))["status"] == "expired":
                expired += 1
        if expired:
            logger.info("%d Vorschlaege abgelaufen", expired)
        return expired

    async def persist_all(self, suggestions: list[dict], scope: str = "global") -> list[dict]:
        """Speichert mehrere Vorschlaege; ungueltige werden geloggt und uebersprungen."""
        created = []
        for data in suggestions:
            try:
                created.append(await self.create_suggestion(data, scope))
            except ValidationError as e:
                logger.warning("Vorschlag '%s' verworfen: %s", data.get("title"), e)
        return created


def generate_smart_suggestions(states: list[dict], action_logs: list[dict]) -> list[dict]:
    """Heuristische Vorschlaege aus aktuellen States und den letzten Aktionen.

    - Geraete ueber 1 kW Leistung -> cost_saving
    - Mindestens 5 manuelle Schaltungen derselben Entity -> automation
    - Mehr als 5 Lichter an -> optimization
    """
    suggestions = []

    high_power = []
    for s in states:
        eid = s.get("entity_id", "")
        device_class = (s.get("attributes") or {}).get("device_class")
        if not ("power" in eid or "energy" in eid or device_class in ("power", "energy")):
            continue
        try:
            value = float(s.get("state"))
        except (TypeError, ValueError):
            continue
        if value > SMART_HIGH_POWER_W:
            high_power.append((eid, value))
    if high_power:
        suggestions.append({
            "suggestion_type": "cost_saving",
            "title": "High Power Consumption Detected",
            "description": (
                f"{len(high_power)} device(s) are consuming over 1kW. "
                "Consider scheduling usage during off-peak hours to reduce costs."
            ),
            "confidence": 0.85,
            "impact": "high",
            "category": "energy",
            "entities_involved": [eid for eid, _ in high_power],
            "data": {"total_power": sum(v for _, v in high_power)},
        })

    manual_counts: dict[str, int] = {}
    for log in action_logs[:SMART_MANUAL_LOG_WINDOW]:
        if log.get("source") == "user_manual" and log.get("entity_id"):
            manual_counts[log["entity_id"]] = manual_counts.get(log["entity_id"], 0) + 1
    for entity_id, count in manual_counts.items():
        if count >= SMART_MANUAL_MIN_COUNT:
            suggestions.append({
                "suggestion_type": "automation",
                "title": "Frequent Manual Control Detected",
                "description": (
                    f"You've manually controlled {entity_id} {count} times recently. "
                    "Consider creating an automation to simplify this."
                ),
                "confidence": 0.75,
                "impact": "medium",
                "category": "convenience",
                "entities_involved": [entity_id],
                "data": {"action_count": count},
            })

    lights_on = [s["entity_id"] for s in states
                 if s.get("entity_id", "").startswith("light.") and s.get("state") == "on"]
    if len(lights_on) > SMART_MAX_LIGHTS_ON:
        suggestions.append({
            "suggestion_type": "optimization",
            "title": "Multiple Lights On",
            "description": (
                f"{len(lights_on)} lights are currently on. "
                "Consider turning off unused lights to save energy."
            ),
            "confidence": 0.70,
            "impact": "medium",
            "category": "energy",
            "entities_involved": lights_on,
            "data": {"count": len(lights_on), "estimated_power": len(lights_on) * 10},
        })

    return suggestions
