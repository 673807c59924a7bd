"""
Audit Ledger - unveraenderliches Aktions-Log und Rollback-Punkte.

Schreiben ist best-effort: Fehler beim Loggen landen in einem internen
Fehlerzaehler (status()) und im Log, nie beim Aufrufer. Lesende Abfragen
liefern bei Store-Fehlern leere Ergebnisse.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .config import yaml_config
from .constants import AUDIT_DEFAULT_LIMIT, AUDIT_HISTORY_LIMIT, AUDIT_ROLLBACK_LIMIT
from .errors import PersistenceError
from .store import ACTION_LOGS, ROLLBACK_POINTS, RecordStore

logger = logging.getLogger(__name__)

ACTION_TYPES = frozenset({"service_call", "automation_trigger", "manual_toggle"})
SOURCES = frozenset({"ai_assistant", "user_manual", "automation", "voice"})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditSink:
    """Ziel fuer Audit-Eintraege."""

    async def write(self, table: str, record: dict) -> dict:
        raise NotImplementedError


class StoreAuditSink(AuditSink):
    """Schreibt Audit-Eintraege in den Record-Store."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def write(self, table: str, record: dict) -> dict:
        return await self._store.insert(table, record)


class AuditLedger:
    """Aktions-Log, Statistiken und Rollback-Punkte."""

    def __init__(self, store: RecordStore, sink: Optional[AuditSink] = None):
        cfg = yaml_config.get("audit", {})
        self.enabled = cfg.get("enabled", True)
        self._store = store
        self._sink = sink or StoreAuditSink(store)
        self.failures = 0
        self.last_error: Optional[str] = None

    def _record_failure(self, what: str, error: Exception) -> None:
        self.failures += 1
        self.last_error = f"{what}: {error}"
        logger.error("Audit-Eintrag (%s) nicht geschrieben: %s", what, error)

    def status(self) -> dict:
        return {"enabled": self.enabled, "failures": self.failures, "last_error": self.last_error}

    async def log_action(
        self,
        action_type: str,
        entity_id: Optional[str],
        *,
        service: Optional[str] = None,
        data: Optional[dict] = None,
        reason: str = "",
        source: str = "ai_assistant",
        before_state: Optional[str] = None,
        after_state: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[dict]:
        """Haengt einen Eintrag an. Gibt None zurueck wenn das Schreiben scheitert."""
        if not self.enabled:
            return None
        record = {
            "action_type": action_type if action_type in ACTION_TYPES else "service_call",
            "entity_id": entity_id,
            "service": service,
            "data": data or {},
            "reason": reason,
            "source": source if source in SOURCES else "ai_assistant",
            "before_state": before_state,
            "after_state": after_state,
            "success": success,
            "error_message": error_message,
            "duration_ms": duration_ms,
            "created_at": _now(),
        }
        try:
            return await self._sink.write(ACTION_LOGS, record)
        except Exception as e:
            self._record_failure("action_log", e)
            return None

    async def get_action_logs(self, limit: int = AUDIT_DEFAULT_LIMIT, offset: int = 0) -> list[dict]:
        try:
            return await self._store.select(
                ACTION_LOGS, order_by="created_at", descending=True, limit=limit, offset=offset,
            )
        except PersistenceError as e:
            logger.warning("Aktions-Log nicht ladbar: %s", e)
            return []

    async def get_entity_history(self, entity_id: str, limit: int = AUDIT_HISTORY_LIMIT) -> list[dict]:
        try:
            return await self._store.select(
                ACTION_LOGS, where=[("entity_id", "eq", entity_id)],
                order_by="created_at", descending=True, limit=limit,
            )
        except PersistenceError as e:
            logger.warning("Verlauf fuer %s nicht ladbar: %s", entity_id, e)
            return []

    async def get_action_stats(self) -> dict:
        """Anzahl je Quelle, Erfolgsquote in Prozent und mittlere Dauer."""
        try:
            logs = await self._store.select(ACTION_LOGS)
        except PersistenceError as e:
            logger.warning("Aktions-Statistik nicht moeglich: %s", e)
            logs = []
        if not logs:
            return {"total": 0, "by_source": {}, "success_rate": 100.0, "avg_duration": 0.0}

        by_source: dict[str, int] = {}
        successes = 0
        durations = []
        for log in logs:
            by_source[log.get("source")] = by_source.get(log.get("source"), 0) + 1
            if log.get("success"):
                successes += 1
            if log.get("duration_ms"):
                durations.append(log["duration_ms"])
        return {
            "total": len(logs),
            "by_source": by_source,
            "success_rate": successes / len(logs) * 100,
            "avg_duration": sum(durations) / len(durations) if durations else 0.0,
        }

    async def create_rollback_point(self, action_log_id: str, entity_states: dict,
                                    description: str) -> Optional[dict]:
        """Speichert einen Zustands-Snapshot zur Aktion. Wird nicht wiedergegeben."""
        if not self.enabled:
            return None
        try:
            return await self._sink.write(ROLLBACK_POINTS, {
                "action_log_id": action_log_id,
                "entity_states": entity_states,
                "description": description,
                "can_rollback": True,
                "created_at": _now(),
            })
        except Exception as e:
            self._record_failure("rollback_point", e)
            return None

    async def get_rollback_points(self, limit: int = AUDIT_ROLLBACK_LIMIT) -> list[dict]:
        try:
            return await self._store.select(
                ROLLBACK_POINTS, where=[("can_rollback", "eq", True)],
                order_by="created_at", descending=True, limit=limit,
            )
        except PersistenceError as e:
            logger.warning("Rollback-Punkte nicht ladbar: %s", e)
            return []
