"""
Energy Miner - erfasst Leistungs-Snapshots und lernt Verbrauchsmuster.

Zwei periodische Jobs:
  - Snapshot (Standard 15 Min): Gesamtleistung, Solar, Netzbezug, Batterie,
    aktive Geraete; unveraenderlich gespeichert mit Stunde und Wochentag
  - Analyse (Standard stuendlich): Nutzungsmuster (7 Tage), Spitzenzeiten,
    Geraetemuster (3 Tage) und Verschwendung (24h); Ergebnis ersetzt den
    Datensatz "latest_analysis"

Aus der letzten Analyse werden Spar-Vorschlaege abgeleitet. Vorschlagstypen
mit negativem Feedback werden ausgeblendet.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import yaml_config
from .constants import (
    DAYS_PER_MONTH,
    ENERGY_ALWAYS_ON_DEVICE_W,
    ENERGY_ALWAYS_ON_MIN_SNAPSHOTS,
    ENERGY_ALWAYS_ON_RATIO,
    ENERGY_ANALYSIS_INTERVAL_MIN,
    ENERGY_DEVICE_WINDOW_DAYS,
    ENERGY_EFFICIENCY_FLAT_SAVINGS,
    ENERGY_EFFICIENCY_TOP_DEVICES,
    ENERGY_FREQUENT_DEVICE_MIN,
    ENERGY_NIGHT_DEVICE_RATIO,
    ENERGY_NIGHT_HOURS,
    ENERGY_NIGHT_THRESHOLD_W,
    ENERGY_PEAK_COUNT,
    ENERGY_PEAK_SHIFT_RATIO,
    ENERGY_SNAPSHOT_INTERVAL_MIN,
    ENERGY_USAGE_WINDOW_DAYS,
    ENERGY_WASTE_MIN_SNAPSHOTS,
    ENERGY_WASTE_WINDOW_HOURS,
    PATTERN_DEFAULT_SCOPE,
    PEAK_RATE_PER_KWH,
    TREND_LOWER,
    TREND_UPPER,
    WASTE_RATE_PER_KWH,
)
from .errors import PersistenceError, ValidationError
from .pattern_store import PatternStore
from .store import ENERGY_SNAPSHOTS, RecordStore

logger = logging.getLogger(__name__)

SNAPSHOT_JOB = "energy_snapshot"
ANALYSIS_JOB = "energy_analysis"

ACTIVE_DEVICE_DOMAINS = ("light.", "switch.", "climate.")
POWER_UNITS = frozenset({"w", "kw"})
# Zaehlerstaende, keine Momentanleistung
ENERGY_UNITS = frozenset({"wh", "kwh", "mwh"})
ALWAYS_ON_DOMAINS = ("light.", "switch.")
NIGHT_HOURS = frozenset({23, 0, 1, 2, 3, 4, 5})
PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}
# Konfidenz beim Uebernehmen in den Vorschlags-Lebenszyklus
PRIORITY_CONFIDENCE = {"high": 0.85, "medium": 0.75, "low": 0.6}

BOOTSTRAP_SUGGESTION = {
    "type": "efficiency",
    "priority": "medium",
    "title": "Start Energy Monitoring",
    "description": (
        "I need more data to provide personalized energy saving suggestions. "
        "Let me monitor your usage for 24 hours."
    ),
    "estimated_savings": 0.0,
    "actions": [],
}


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _numeric(value) -> float:
    """Numerischer State, sonst 0."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def classify_states(states: list[dict]) -> dict:
    """Summiert Leistung, Solar und Batterie und sammelt aktive Geraete."""
    total_power = 0.0
    solar = 0.0
    battery: Optional[float] = None
    active = []
    for s in states:
        eid = s.get("entity_id", "")
        unit = ((s.get("attributes") or {}).get("unit_of_measurement") or "").lower()
        state = s.get("state")
        is_power = unit not in ENERGY_UNITS and ("power" in eid or unit in POWER_UNITS)
        if is_power:
            total_power += _numeric(state)
        if is_power and "solar" in eid and "power" in eid:
            solar += _numeric(state)
        if battery is None and "battery" in eid and ("level" in eid or "soc" in eid):
            battery = _numeric(state)
        if eid.startswith(ACTIVE_DEVICE_DOMAINS) and state == "on":
            active.append(eid)
    return {
        "total_power": total_power,
        "solar_production": solar,
        "grid_consumption": max(0.0, total_power - solar),
        "battery_level": battery or 0.0,
        "active_devices": active,
    }


def identify_usage_patterns(snapshots: list[dict]) -> list[dict]:
    """Buckets nach (Wochentag, Stunde) mit Mittelwert, Spitze und Geraeten."""
    buckets: dict[tuple[int, int], dict] = {}
    for snap in snapshots:
        key = (snap["day_of_week"], snap["hour"])
        bucket = buckets.setdefault(key, {"powers": [], "devices": []})
        bucket["powers"].append(snap["total_power"])
        for device in snap.get("active_devices") or []:
            if device not in bucket["devices"]:
                bucket["devices"].append(device)
    return [
        {
            "time_of_day": hour,
            "day_of_week": day,
            "average_power": sum(b["powers"]) / len(b["powers"]),
            "peak_power": max(b["powers"]),
            "common_devices": b["devices"],
        }
        for (day, hour), b in buckets.items()
    ]


def identify_peak_times(usage_patterns: list[dict], count: int = ENERGY_PEAK_COUNT) -> list[dict]:
    ranked = sorted(usage_patterns, key=lambda p: p["average_power"], reverse=True)
    return [{"hour": p["time_of_day"], "power": p["average_power"]} for p in ranked[:count]]


def identify_device_patterns(snapshots: list[dict]) -> dict:
    """Je Geraet: Anzahl Snapshots in denen es aktiv war und die Stunden."""
    usage: dict[str, dict] = {}
    for snap in snapshots:
        for device in snap.get("active_devices") or []:
            entry = usage.setdefault(device, {"usage_count": 0, "hours": set()})
            entry["usage_count"] += 1
            entry["hours"].add(snap["hour"])
    return {
        device: {"usage_count": d["usage_count"], "common_hours": sorted(d["hours"])}
        for device, d in usage.items()
    }


def _device_counts(snapshots: list[dict]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for snap in snapshots:
        for device in snap.get("active_devices") or []:
            counts[device] = counts.get(device, 0) + 1
    return counts


def identify_waste(snapshots: list[dict],
                   night_threshold: float = ENERGY_NIGHT_THRESHOLD_W,
                   night_ratio: float = ENERGY_NIGHT_DEVICE_RATIO,
                   always_on_ratio: float = ENERGY_ALWAYS_ON_RATIO,
                   rate: float = WASTE_RATE_PER_KWH) -> list[dict]:
    """Nachtverbrauch und Dauerlaeufer. Braucht mindestens 10 Snapshots."""
    if len(snapshots) < ENERGY_WASTE_MIN_SNAPSHOTS:
        return []
    waste = []

    night = [s for s in snapshots if s["hour"] in NIGHT_HOURS]
    if night:
        average = sum(s["total_power"] for s in night) / len(night)
        threshold = len(night) * night_ratio
        devices = [d for d, c in _device_counts(night).items() if c >= threshold]
        if average > night_threshold and devices:
            waste.append({
                "type": "night_usage",
                "average_power": average,
                "devices": devices,
                "potential_savings": average * ENERGY_NIGHT_HOURS * DAYS_PER_MONTH * rate / 1000,
            })

    if len(snapshots) >= ENERGY_ALWAYS_ON_MIN_SNAPSHOTS:
        threshold = len(snapshots) * always_on_ratio
        always_on = [
            d for d, c in _device_counts(snapshots).items()
            if c >= threshold and d.startswith(ALWAYS_ON_DOMAINS)
        ]
        if always_on:
            waste.append({
                "type": "always_on_devices",
                "devices": always_on,
                "potential_savings": (
                    len(always_on) * ENERGY_ALWAYS_ON_DEVICE_W * 24 * DAYS_PER_MONTH * rate / 1000
                ),
            })
    return waste


def build_suggestions(analysis: Optional[dict], disliked_types: set[str],
                      peak_rate: float = PEAK_RATE_PER_KWH) -> list[dict]:
    """Leitet Spar-Vorschlaege aus einer Analyse ab, sortiert nach Prioritaet."""
    if not analysis:
        return [dict(BOOTSTRAP_SUGGESTION)]

    suggestions = []
    for waste in analysis.get("waste_patterns") or []:
        if waste["type"] == "night_usage":
            suggestions.append({
                "type": "cost_saving",
                "priority": "high",
                "title": "High Nighttime Energy Usage Detected",
                "description": (
                    f"You're using an average of {waste['average_power']:.0f}W during late night "
                    "hours (11 PM - 5 AM). Consider turning off unnecessary devices."
                ),
                "estimated_savings": waste["potential_savings"],
                "actions": [{"device_id": d, "action": "turn_off", "timing": "23:00"} for d in waste["devices"]],
            })
        elif waste["type"] == "always_on_devices":
            suggestions.append({
                "type": "device_optimization",
                "priority": "medium",
                "title": "Devices Running Continuously",
                "description": (
                    f"{len(waste['devices'])} devices are on almost 24/7. "
                    "Consider creating automation to turn them off when not needed."
                ),
                "estimated_savings": waste["potential_savings"],
                "actions": [{"device_id": d, "action": "create_automation"} for d in waste["devices"]],
            })

    peaks = analysis.get("peak_times") or []
    if peaks:
        top = peaks[0]
        suggestions.append({
            "type": "timing",
            "priority": "medium",
            "title": "Peak Usage Time Identified",
            "description": (
                f"Your highest energy usage is at {top['hour']}:00 ({top['power']:.0f}W average). "
                "Consider shifting some activities to off-peak hours to save on electricity costs."
            ),
            "estimated_savings": top["power"] * ENERGY_PEAK_SHIFT_RATIO * DAYS_PER_MONTH * peak_rate / 1000,
            "actions": [],
        })

    devices = analysis.get("device_patterns") or {}
    frequent = sorted(
        ((d, p) for d, p in devices.items() if p["usage_count"] > ENERGY_FREQUENT_DEVICE_MIN),
        key=lambda item: item[1]["usage_count"],
        reverse=True,
    )[:ENERGY_EFFICIENCY_TOP_DEVICES]
    if frequent:
        suggestions.append({
            "type": "efficiency",
            "priority": "low",
            "title": "High-Usage Devices",
            "description": (
                "Your most frequently used devices could benefit from "
                "energy-efficient upgrades or usage scheduling."
            ),
            "estimated_savings": ENERGY_EFFICIENCY_FLAT_SAVINGS,
            "actions": [{"device_id": d, "action": "optimize"} for d, _ in frequent],
        })

    suggestions = [s for s in suggestions if s["type"] not in disliked_types]
    suggestions.sort(key=lambda s: PRIORITY_RANK[s["priority"]], reverse=True)
    return suggestions


class EnergyMiner:
    """Erfasst Snapshots, analysiert sie und liefert Spar-Vorschlaege."""

    def __init__(self, store: RecordStore, ha_client, patterns: PatternStore,
                 task_registry=None, clock: Callable[[], datetime] = _local_now):
        cfg = yaml_config.get("energy", {})
        self.enabled = cfg.get("enabled", True)
        self.snapshot_interval_min = int(cfg.get("snapshot_interval_minutes", ENERGY_SNAPSHOT_INTERVAL_MIN))
        self.analysis_interval_min = int(cfg.get("analysis_interval_minutes", ENERGY_ANALYSIS_INTERVAL_MIN))
        self.night_threshold = float(cfg.get("night_threshold_watts", ENERGY_NIGHT_THRESHOLD_W))
        self.night_ratio = float(cfg.get("night_device_ratio", ENERGY_NIGHT_DEVICE_RATIO))
        self.always_on_ratio = float(cfg.get("always_on_ratio", ENERGY_ALWAYS_ON_RATIO))
        self.waste_rate = float(cfg.get("waste_rate_per_kwh", WASTE_RATE_PER_KWH))
        self.peak_rate = float(cfg.get("peak_rate_per_kwh", PEAK_RATE_PER_KWH))
        self._store = store
        self._ha = ha_client
        self._patterns = patterns
        self._tasks = task_registry
        self._clock = clock

    # ----- Timer -----

    def start(self, scope: str = PATTERN_DEFAULT_SCOPE) -> None:
        """Startet Snapshot- und Analyse-Job (mit In-Flight-Guard je Job)."""
        if not self.enabled or not self._tasks:
            return
        self._tasks.schedule_periodic(
            SNAPSHOT_JOB, lambda: self.capture_snapshot(scope=scope),
            self.snapshot_interval_min * 60, run_immediately=True,
        )
        self._tasks.schedule_periodic(
            ANALYSIS_JOB, lambda: self.analyze(scope=scope),
            self.analysis_interval_min * 60,
        )
        logger.info(
            "Energy-Learning gestartet (Snapshot alle %d Min, Analyse alle %d Min)",
            self.snapshot_interval_min, self.analysis_interval_min,
        )

    def stop(self) -> None:
        if not self._tasks:
            return
        self._tasks.cancel(SNAPSHOT_JOB)
        self._tasks.cancel(ANALYSIS_JOB)

    # ----- Erfassung -----

    async def capture_snapshot(self, states: Optional[list[dict]] = None,
                               scope: str = PATTERN_DEFAULT_SCOPE) -> dict:
        if states is None:
            states = await self._ha.get_states()
        now = self._clock()
        snapshot = {
            "scope": scope,
            "timestamp": now.isoformat(),
            "epoch": now.timestamp(),
            "hour": now.hour,
            # 0 = Sonntag
            "day_of_week": (now.weekday() + 1) % 7,
            **classify_states(states),
        }
        row = await self._store.insert(ENERGY_SNAPSHOTS, snapshot)
        logger.debug(
            "Energy-Snapshot: %.0fW gesamt, %.0fW Solar, %d Geraete aktiv",
            snapshot["total_power"], snapshot["solar_production"], len(snapshot["active_devices"]),
        )
        return row

    async def _snapshots_since(self, delta: timedelta, scope: str) -> list[dict]:
        cutoff = (self._clock() - delta).timestamp()
        return await self._store.select(
            ENERGY_SNAPSHOTS,
            where=[("scope", "eq", scope), ("epoch", "gte", cutoff)],
            order_by="epoch",
        )

    # ----- Analyse -----

    async def analyze(self, scope: str = PATTERN_DEFAULT_SCOPE) -> dict:
        """Berechnet alle Muster und ersetzt den Datensatz latest_analysis."""
        logger.info("Energy-Analyse gestartet")
        weekly = await self._snapshots_since(timedelta(days=ENERGY_USAGE_WINDOW_DAYS), scope)
        recent = await self._snapshots_since(timedelta(days=ENERGY_DEVICE_WINDOW_DAYS), scope)
        daily = await self._snapshots_since(timedelta(hours=ENERGY_WASTE_WINDOW_HOURS), scope)

        usage = identify_usage_patterns(weekly)
        analysis = {
            "timestamp": self._clock().isoformat(),
            "usage_patterns": usage,
            "peak_times": identify_peak_times(usage),
            "device_patterns": identify_device_patterns(recent),
            "waste_patterns": identify_waste(
                daily, self.night_threshold, self.night_ratio, self.always_on_ratio, self.waste_rate,
            ),
        }
        await self._patterns.set_pattern(
            "energy_analysis", "latest_analysis", analysis, 0.8,
            learning_source="pattern_detection", scope=scope,
        )
        logger.info(
            "Energy-Analyse fertig: %d Buckets, %d Verschwendungsmuster",
            len(usage), len(analysis["waste_patterns"]),
        )
        return analysis

    async def get_latest_analysis(self, scope: str = PATTERN_DEFAULT_SCOPE) -> Optional[dict]:
        try:
            row = await self._patterns.get_pattern("energy_analysis", "latest_analysis", scope)
        except PersistenceError as e:
            logger.warning("Energy-Analyse nicht ladbar: %s", e)
            return None
        return row["pattern_value"] if row else None

    # ----- Vorschlaege -----

    async def generate_suggestions(self, scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        analysis = await self.get_latest_analysis(scope)
        disliked: set[str] = set()
        try:
            feedback = await self._patterns.get_patterns_by_type("suggestion_feedback", scope)
            disliked = {p["pattern_key"] for p in feedback if (p.get("pattern_value") or {}).get("rating") == "down"}
        except PersistenceError as e:
            logger.debug("Vorschlags-Feedback nicht ladbar: %s", e)
        return build_suggestions(analysis, disliked, self.peak_rate)

    async def record_suggestion_feedback(self, suggestion_type: str, rating: str,
                                         scope: str = PATTERN_DEFAULT_SCOPE) -> dict:
        if rating not in ("up", "down"):
            raise ValidationError(f"rating must be 'up' or 'down', got {rating!r}")
        return await self._patterns.set_pattern(
            "suggestion_feedback", suggestion_type,
            {"rating": rating, "timestamp": self._clock().isoformat()},
            0.8 if rating == "up" else 0.2,
            learning_source="feedback", scope=scope,
        )

    async def persist_suggestions(self, manager, scope: str = PATTERN_DEFAULT_SCOPE) -> list[dict]:
        """Uebernimmt neue Vorschlaege in den Lebenszyklus (ohne Bootstrap, ohne Duplikate)."""
        existing = {s["title"] for s in await manager.list_suggestions(status="pending", scope=scope)}
        items = []
        for s in await self.generate_suggestions(scope):
            if s["title"] == BOOTSTRAP_SUGGESTION["title"] or s["title"] in existing:
                continue
            items.append({
                "suggestion_type": s["type"],
                "title": s["title"],
                "description": s["description"],
                "confidence": PRIORITY_CONFIDENCE[s["priority"]],
                "impact": s["priority"],
                "category": "energy",
                "entities_involved": [a["device_id"] for a in s["actions"]],
                "data": {"estimated_savings": s["estimated_savings"], "actions": s["actions"]},
            })
        return await manager.persist_all(items, scope)

    # ----- Auswertung -----

    async def get_energy_insights(self, scope: str = PATTERN_DEFAULT_SCOPE) -> dict:
        """Tages- und Wochenmittel, Trend und Solar-Mittel. Fehler -> Leerwerte."""
        try:
            daily = await self._snapshots_since(timedelta(hours=24), scope)
            weekly = await self._snapshots_since(timedelta(days=7), scope)
        except PersistenceError as e:
            logger.warning("Energy-Insights nicht ladbar: %s", e)
            daily, weekly = [], []

        if not daily:
            return {
                "daily_average": 0.0,
                "weekly_average": 0.0,
                "trend": "insufficient_data",
                "total_snapshots": 0,
                "solar_production": 0.0,
            }

        daily_avg = sum(s["total_power"] for s in daily) / len(daily)
        weekly_avg = sum(s["total_power"] for s in weekly) / len(weekly) if weekly else daily_avg
        if daily_avg > weekly_avg * TREND_UPPER:
            trend = "increasing"
        elif daily_avg < weekly_avg * TREND_LOWER:
            trend = "decreasing"
        else:
            trend = "stable"
        return {
            "daily_average": daily_avg,
            "weekly_average": weekly_avg,
            "trend": trend,
            "total_snapshots": len(daily),
            "solar_production": sum(s.get("solar_production", 0.0) for s in daily) / len(daily),
        }
