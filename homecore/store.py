"""
Record Store - Persistenz fuer Muster, Snapshots, Vorschlaege und Audit-Logs.

Zwei Backends mit identischer Schnittstelle:
  - MemoryStore: In-Process (Tests, Einzelbetrieb ohne Redis)
  - RedisStore: redis.asyncio, ein Hash pro Tabelle mit JSON-Zeilen
    plus ein Konflikt-Index-Hash fuer Upserts

Die Muster-Verstaerkung (reinforce) ist auf Store-Ebene atomar:
im Speicher per asyncio.Lock, in Redis per Lua-Skript.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .constants import (
    REDIS_KEY_PREFIX,
    REINFORCE_EARLY_LIMIT,
    REINFORCE_MID_LIMIT,
    REINFORCE_STEP_EARLY,
    REINFORCE_STEP_LATE,
    REINFORCE_STEP_MID,
)
from .errors import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)

# Bekannte Tabellen
PATTERNS = "patterns"
ENERGY_SNAPSHOTS = "energy_snapshots"
ACTION_LOGS = "action_logs"
SUGGESTIONS = "suggestions"
ROLLBACK_POINTS = "rollback_points"
PREFERENCES = "preferences"
PRICE_HISTORY = "price_history"

# Bedingung: (feld, operator, wert) mit operator in eq, ne, gte, lte, gt, lt, is_null, in
Condition = tuple[str, str, Any]


@dataclass(frozen=True)
class ReinforceSchedule:
    """Schrittweiten der Konfidenz-Verstaerkung abhaengig vom neuen usage_count."""

    early_limit: int = REINFORCE_EARLY_LIMIT
    mid_limit: int = REINFORCE_MID_LIMIT
    early_step: float = REINFORCE_STEP_EARLY
    mid_step: float = REINFORCE_STEP_MID
    late_step: float = REINFORCE_STEP_LATE

    def step_for(self, usage_count: int) -> float:
        if usage_count < self.early_limit:
            return self.early_step
        if usage_count < self.mid_limit:
            return self.mid_step
        return self.late_step


DEFAULT_SCHEDULE = ReinforceSchedule()


def _matches(record: dict, where: Optional[Sequence[Condition]]) -> bool:
    """Prueft ob ein Record alle Bedingungen erfuellt."""
    for field_name, op, value in where or ():
        current = record.get(field_name)
        if op == "is_null":
            if (current is None) != bool(value):
                return False
            continue
        if op == "eq":
            ok = current == value
        elif op == "ne":
            ok = current != value
        elif op == "in":
            ok = current in value
        elif current is None:
            return False
        elif op == "gte":
            ok = current >= value
        elif op == "lte":
            ok = current <= value
        elif op == "gt":
            ok = current > value
        elif op == "lt":
            ok = current < value
        else:
            raise ValueError(f"Unknown condition operator: {op}")
        if not ok:
            return False
    return True


def _apply_query(
    records: list[dict],
    where: Optional[Sequence[Condition]],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int],
    offset: int,
) -> list[dict]:
    rows = [r for r in records if _matches(r, where)]
    if order_by:
        # None-Werte immer ans Ende, sort() ist stabil
        present = [r for r in rows if r.get(order_by) is not None]
        missing = [r for r in rows if r.get(order_by) is None]
        present.sort(key=lambda r: r[order_by], reverse=descending)
        rows = present + missing
    if offset:
        rows = rows[offset:]
    if limit is not None:
        rows = rows[:limit]
    return rows


def conflict_key(record: dict, conflict: Sequence[str]) -> str:
    """Baut den Index-Schluessel aus den Konfliktfeldern."""
    return "|".join("" if record.get(f) is None else str(record.get(f)) for f in conflict)


def _new_id() -> str:
    return uuid.uuid4().hex


class RecordStore:
    """Schnittstelle fuer alle Persistenz-Backends."""

    backend = "abstract"

    async def insert(self, table: str, record: dict) -> dict:
        raise NotImplementedError

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def update(self, table: str, record_id: str, changes: dict) -> Optional[dict]:
        raise NotImplementedError

    async def select(
        self,
        table: str,
        where: Optional[Sequence[Condition]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[dict]:
        raise NotImplementedError

    async def upsert(self, table: str, record: dict, conflict: Sequence[str]) -> dict:
        """Ueberschreibt den Record mit gleichem Konflikt-Schluessel oder legt ihn an."""
        raise NotImplementedError

    async def reinforce(
        self,
        table: str,
        record: dict,
        conflict: Sequence[str],
        now: str,
        schedule: ReinforceSchedule = DEFAULT_SCHEDULE,
    ) -> dict:
        """Atomarer Insert-oder-Verstaerken Schritt fuer gelernte Muster.

        Neu: Insert mit der uebergebenen confidence und usage_count=1.
        Vorhanden: usage_count += 1, confidence += schedule.step_for(neuer Count),
        maximal 1.0; pattern_value wird ersetzt, last_used_at aktualisiert.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStore(RecordStore):
    """In-Process Store. Records werden als JSON kopiert damit keine Aliase entstehen."""

    backend = "memory"

    def __init__(self):
        self._tables: dict[str, dict[str, str]] = {}
        self._indexes: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> dict[str, str]:
        return self._tables.setdefault(table, {})

    def _index(self, table: str) -> dict[str, str]:
        return self._indexes.setdefault(table, {})

    @staticmethod
    def _dump(record: dict) -> str:
        try:
            return json.dumps(record)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Record not serializable: {e}") from e

    async def insert(self, table: str, record: dict) -> dict:
        row = dict(record)
        row.setdefault("id", _new_id())
        async with self._lock:
            self._table(table)[row["id"]] = self._dump(row)
        return row

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        raw = self._table(table).get(record_id)
        return json.loads(raw) if raw else None

    async def update(self, table: str, record_id: str, changes: dict) -> Optional[dict]:
        async with self._lock:
            rows = self._table(table)
            raw = rows.get(record_id)
            if raw is None:
                return None
            row = json.loads(raw)
            row.update(changes)
            row["id"] = record_id
            rows[record_id] = self._dump(row)
        return row

    async def select(self, table, where=None, order_by=None, descending=False, limit=None, offset=0):
        records = [json.loads(raw) for raw in self._table(table).values()]
        return _apply_query(records, where, order_by, descending, limit, offset)

    async def upsert(self, table: str, record: dict, conflict: Sequence[str]) -> dict:
        key = conflict_key(record, conflict)
        async with self._lock:
            rows = self._table(table)
            index = self._index(table)
            existing_id = index.get(key)
            row = dict(record)
            if existing_id and existing_id in rows:
                previous = json.loads(rows[existing_id])
                row["id"] = existing_id
                if "created_at" in previous:
                    row["created_at"] = previous["created_at"]
            else:
                row.setdefault("id", _new_id())
                index[key] = row["id"]
            rows[row["id"]] = self._dump(row)
        return row

    async def reinforce(self, table, record, conflict, now, schedule=DEFAULT_SCHEDULE):
        key = conflict_key(record, conflict)
        async with self._lock:
            rows = self._table(table)
            index = self._index(table)
            existing_id = index.get(key)
            if existing_id is None or existing_id not in rows:
                row = dict(record)
                row.setdefault("id", _new_id())
                row["usage_count"] = 1
                row["confidence"] = min(1.0, max(0.0, float(row.get("confidence", 0.0))))
                row.setdefault("created_at", now)
                row["updated_at"] = now
                row["last_used_at"] = now
                index[key] = row["id"]
            else:
                row = json.loads(rows[existing_id])
                usage = int(row.get("usage_count", 0)) + 1
                step = schedule.step_for(usage)
                row["usage_count"] = usage
                row["confidence"] = min(1.0, float(row.get("confidence", 0.0)) + step)
                row["pattern_value"] = record.get("pattern_value")
                row["last_used_at"] = now
                row["updated_at"] = now
            rows[row["id"]] = self._dump(row)
        return row


class RedisStore(RecordStore):
    """Redis-Backend: hc:<tabelle> (id -> JSON) und hc:<tabelle>:idx (konflikt -> id)."""

    backend = "redis"

    # Atomarer Insert-oder-Verstaerken Schritt.
    # KEYS: rows, index. ARGV: konflikt, neue id, record-json, now,
    # early_limit, mid_limit, early_step, mid_step, late_step
    _REINFORCE_LUA = """
    local rows = KEYS[1]
    local index = KEYS[2]
    local incoming = cjson.decode(ARGV[3])
    local now = ARGV[4]
    local existing_id = redis.call('HGET', index, ARGV[1])
    local raw = false
    if existing_id then
        raw = redis.call('HGET', rows, existing_id)
    end
    if not raw then
        incoming['id'] = ARGV[2]
        incoming['usage_count'] = 1
        local conf = tonumber(incoming['confidence']) or 0
        if conf > 1 then conf = 1 end
        if conf < 0 then conf = 0 end
        incoming['confidence'] = conf
        if not incoming['created_at'] then incoming['created_at'] = now end
        incoming['updated_at'] = now
        incoming['last_used_at'] = now
        local out = cjson.encode(incoming)
        redis.call('HSET', rows, ARGV[2], out)
        redis.call('HSET', index, ARGV[1], ARGV[2])
        return out
    end
    local row = cjson.decode(raw)
    local usage = (tonumber(row['usage_count']) or 0) + 1
    local step = tonumber(ARGV[9])
    if usage < tonumber(ARGV[5]) then
        step = tonumber(ARGV[7])
    elseif usage < tonumber(ARGV[6]) then
        step = tonumber(ARGV[8])
    end
    local conf = (tonumber(row['confidence']) or 0) + step
    if conf > 1 then conf = 1 end
    row['usage_count'] = usage
    row['confidence'] = conf
    row['pattern_value'] = incoming['pattern_value']
    row['last_used_at'] = now
    row['updated_at'] = now
    local out = cjson.encode(row)
    redis.call('HSET', rows, existing_id, out)
    return out
    """

    def __init__(self, redis_client: aioredis.Redis, prefix: str = REDIS_KEY_PREFIX):
        self._redis = redis_client
        self._prefix = prefix

    def _rows_key(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    def _index_key(self, table: str) -> str:
        return f"{self._prefix}:{table}:idx"

    async def insert(self, table: str, record: dict) -> dict:
        row = dict(record)
        row.setdefault("id", _new_id())
        try:
            await self._redis.hset(self._rows_key(table), row["id"], json.dumps(row))
        except (RedisError, TypeError, ValueError) as e:
            raise PersistenceError(f"Insert into {table} failed: {e}") from e
        return row

    async def get(self, table: str, record_id: str) -> Optional[dict]:
        try:
            raw = await self._redis.hget(self._rows_key(table), record_id)
        except RedisError as e:
            raise PersistenceError(f"Read from {table} failed: {e}") from e
        return json.loads(raw) if raw else None

    async def update(self, table: str, record_id: str, changes: dict) -> Optional[dict]:
        row = await self.get(table, record_id)
        if row is None:
            return None
        row.update(changes)
        row["id"] = record_id
        try:
            await self._redis.hset(self._rows_key(table), record_id, json.dumps(row))
        except (RedisError, TypeError, ValueError) as e:
            raise PersistenceError(f"Update in {table} failed: {e}") from e
        return row

    async def select(self, table, where=None, order_by=None, descending=False, limit=None, offset=0):
        try:
            raw_rows = await self._redis.hvals(self._rows_key(table))
        except RedisError as e:
            raise PersistenceError(f"Select from {table} failed: {e}") from e
        records = []
        for raw in raw_rows or []:
            try:
                records.append(json.loads(raw))
            except (TypeError, ValueError):
                logger.debug("Defekter Record in %s uebersprungen", table)
        return _apply_query(records, where, order_by, descending, limit, offset)

    async def upsert(self, table: str, record: dict, conflict: Sequence[str]) -> dict:
        key = conflict_key(record, conflict)
        row = dict(record)
        try:
            existing_id = await self._redis.hget(self._index_key(table), key)
            if existing_id:
                previous = await self._redis.hget(self._rows_key(table), existing_id)
                row["id"] = existing_id
                if previous:
                    created = json.loads(previous).get("created_at")
                    if created:
                        row["created_at"] = created
            else:
                row.setdefault("id", _new_id())
            pipe = self._redis.pipeline()
            pipe.hset(self._rows_key(table), row["id"], json.dumps(row))
            pipe.hset(self._index_key(table), key, row["id"])
            await pipe.execute()
        except (RedisError, TypeError, ValueError) as e:
            raise PersistenceError(f"Upsert into {table} failed: {e}") from e
        return row

    async def reinforce(self, table, record, conflict, now, schedule=DEFAULT_SCHEDULE):
        key = conflict_key(record, conflict)
        try:
            out = await self._redis.eval(
                self._REINFORCE_LUA, 2,
                self._rows_key(table), self._index_key(table),
                key, _new_id(), json.dumps(record), now,
                schedule.early_limit, schedule.mid_limit,
                schedule.early_step, schedule.mid_step, schedule.late_step,
            )
        except (RedisError, TypeError, ValueError) as e:
            raise PersistenceError(f"Reinforce in {table} failed: {e}") from e
        return json.loads(out)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as e:
            logger.debug("Redis close fehlgeschlagen: %s", e)


async def create_store(backend: str, redis_url: str = "") -> RecordStore:
    """Erzeugt das konfigurierte Backend.

    Ist Redis nicht erreichbar, wird auf den MemoryStore ausgewichen
    (Daten gehen dann beim Neustart verloren).
    """
    backend = (backend or "memory").lower()
    if backend == "memory":
        logger.info("Record-Store: memory")
        return MemoryStore()
    if backend != "redis":
        raise ConfigurationError(f"Unknown store backend: {backend}")

    client = aioredis.from_url(redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("Redis nicht verfuegbar (%s), nutze MemoryStore", e)
        return MemoryStore()
    logger.info("Record-Store: redis (%s)", redis_url)
    return RedisStore(client)
