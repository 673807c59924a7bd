"""
Globale Test-Fixtures fuer homecore.

  - redis_mock: AsyncMock Redis Client mit In-Memory Hashes
  - ha_mock: AsyncMock Home Assistant Client
  - llm_mock: AsyncMock Text-Modell
  - memory_store: frischer MemoryStore
  - fixed_clock: steuerbare Uhr fuer zeitabhaengige Komponenten
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from homecore.store import MemoryStore


# ============================================================
# Redis Mock
# ============================================================

@pytest.fixture
def redis_mock():
    """AsyncMock Redis Client; Hash-Befehle arbeiten auf einem Dict."""
    mock = AsyncMock()
    hashes: dict[str, dict[str, str]] = {}

    async def hset(key, field, value):
        hashes.setdefault(key, {})[field] = value
        return 1

    async def hget(key, field):
        return hashes.get(key, {}).get(field)

    async def hvals(key):
        return list(hashes.get(key, {}).values())

    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    mock.hset = AsyncMock(side_effect=hset)
    mock.hget = AsyncMock(side_effect=hget)
    mock.hvals = AsyncMock(side_effect=hvals)
    mock.eval = AsyncMock(return_value="{}")

    # pipeline() ist synchron, nur execute() ist async
    pipe_mock = MagicMock()
    pending: list[tuple] = []
    pipe_mock.hset = MagicMock(side_effect=lambda k, f, v: pending.append((k, f, v)))

    async def execute():
        results = [await hset(k, f, v) for k, f, v in pending]
        pending.clear()
        return results

    pipe_mock.execute = AsyncMock(side_effect=execute)
    mock.pipeline = MagicMock(return_value=pipe_mock)
    mock._pipeline = pipe_mock
    mock._hashes = hashes
    return mock


# ============================================================
# Home Assistant Client Mock
# ============================================================

@pytest.fixture
def ha_mock():
    """AsyncMock Home Assistant Client."""
    mock = AsyncMock()
    mock.get_states = AsyncMock(return_value=[])
    mock.get_state = AsyncMock(return_value=None)
    mock.call_service = AsyncMock(return_value=[])
    mock.is_available = AsyncMock(return_value=True)
    mock.close = AsyncMock()
    return mock


# ============================================================
# LLM Mock
# ============================================================

@pytest.fixture
def llm_mock():
    """AsyncMock Text-Modell."""
    mock = AsyncMock()
    mock.provider = "ollama"
    mock.complete = AsyncMock(return_value="Test-Antwort")
    mock.is_available = AsyncMock(return_value=True)
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def memory_store():
    return MemoryStore()


class FixedClock:
    """Uhr die nur auf Anweisung weiterlaeuft."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def fixed_clock():
    # Sonntag, 18.10.2026 00:00 UTC
    return FixedClock(datetime(2026, 10, 18, 0, 0, tzinfo=timezone.utc))


SAMPLE_STATES = [
    {
        "entity_id": "light.living_room",
        "state": "on",
        "attributes": {"friendly_name": "Living Room Light", "brightness": 200},
        "last_updated": "2026-10-18T10:00:00+00:00",
    },
    {
        "entity_id": "sensor.outdoor_temp",
        "state": "12.5",
        "attributes": {"friendly_name": "Outdoor Temperature", "unit_of_measurement": "°C"},
        "last_updated": "2026-10-18T10:00:00+00:00",
    },
    {
        "entity_id": "switch.pool_pump",
        "state": "off",
        "attributes": {"friendly_name": "Pool Pump"},
        "last_updated": "2026-10-18T10:00:00+00:00",
    },
    {
        "entity_id": "climate.bedroom",
        "state": "heat",
        "attributes": {"friendly_name": "Bedroom Thermostat", "temperature": 21},
        "last_updated": "2026-10-18T10:00:00+00:00",
    },
]


@pytest.fixture
def sample_states():
    return [dict(s, attributes=dict(s["attributes"])) for s in SAMPLE_STATES]
