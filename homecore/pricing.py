"""
Energy Pricing - Strompreis, Einspeiseverguetung und Kostenrechnung.

Statischer Modus: Preise aus settings.yaml bzw. gespeicherter Konfiguration.
Dynamischer Modus: Preise werden periodisch aus HA-Preis-Sensoren gelesen
(z.B. sensor.electricity_price, sensor.feed_in_tariff).
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Optional

from .config import yaml_config
from .constants import (
    DEFAULT_CURRENCY,
    DEFAULT_FEED_IN_TARIFF,
    DEFAULT_GENERAL_PRICE,
    PRICING_UPDATE_INTERVAL_MIN,
)
from .errors import HomeCoreError, PersistenceError, ValidationError
from .store import PREFERENCES, PRICE_HISTORY, RecordStore

logger = logging.getLogger(__name__)

PRICING_KEY = "energy_pricing"
PRICING_JOB = "pricing_refresh"

GENERAL_PRICE_KEYWORDS = ("general_price", "electricity_price", "grid_price")
FEED_IN_KEYWORDS = ("feed_in", "export_price", "feedin_tariff")
GRID_IMPORT_KEYWORDS = ("grid_import", "grid_power")
SOLAR_KEYWORDS = ("solar", "pv_power")
GRID_EXPORT_KEYWORDS = ("grid_export", "feed_in")


@dataclass
class EnergyPricing:
    general_price: float = DEFAULT_GENERAL_PRICE
    feed_in_tariff: float = DEFAULT_FEED_IN_TARIFF
    currency: str = DEFAULT_CURRENCY
    pricing_mode: str = "static"
    update_interval_minutes: int = PRICING_UPDATE_INTERVAL_MIN
    last_updated: Optional[str] = None

    def validate(self) -> None:
        if self.pricing_mode not in ("static", "dynamic"):
            raise ValidationError(f"pricing_mode must be static or dynamic, got {self.pricing_mode!r}")
        if self.general_price < 0 or self.feed_in_tariff < 0:
            raise ValidationError("prices must not be negative")
        if self.update_interval_minutes < 1:
            raise ValidationError("update_interval_minutes must be >= 1")


def calculate_real_time_cost(grid_import_w: float, solar_w: float, grid_export_w: float,
                             general_price: float, feed_in_tariff: float,
                             hours: float = 1.0) -> dict:
    """Kosten fuer einen Zeitraum bei konstanter Leistung. Alle Werte >= 0."""
    grid_import_kwh = grid_import_w / 1000 * hours
    solar_kwh = solar_w / 1000 * hours
    grid_export_kwh = grid_export_w / 1000 * hours

    grid_cost = grid_import_kwh * general_price
    solar_savings = max(0.0, solar_kwh - grid_export_kwh) * general_price
    export_earnings = grid_export_kwh * feed_in_tariff
    return {
        "grid_cost": max(0.0, grid_cost),
        "solar_savings": max(0.0, solar_savings),
        "export_earnings": max(0.0, export_earnings),
        "net_cost": max(0.0, grid_cost - export_earnings),
    }


def _find_numeric(states: list[dict], keywords: tuple[str, ...]) -> Optional[float]:
    """Erster numerischer State einer Entity deren ID eines der Keywords enthaelt."""
    for s in states:
        eid = s.get("entity_id", "").lower()
        if any(kw in eid for kw in keywords):
            try:
                return float(s.get("state"))
            except (ValueError, TypeError):
                continue
    return None


class EnergyPricingService:
    """Verwaltet Preise und rechnet Leistungswerte in Kosten um."""

    def __init__(self, store: RecordStore, ha_client, task_registry=None):
        cfg = yaml_config.get("pricing", {})
        self.enabled = cfg.get("enabled", True)
        self._defaults = EnergyPricing(
            general_price=float(cfg.get("general_price", DEFAULT_GENERAL_PRICE)),
            feed_in_tariff=float(cfg.get("feed_in_tariff", DEFAULT_FEED_IN_TARIFF)),
            currency=cfg.get("currency", DEFAULT_CURRENCY),
            pricing_mode=cfg.get("pricing_mode", "static"),
            update_interval_minutes=int(cfg.get("update_interval_minutes", PRICING_UPDATE_INTERVAL_MIN)),
        )
        self._store = store
        self._ha = ha_client
        self._tasks = task_registry

    async def get_pricing(self) -> EnergyPricing:
        """Gespeicherte Preise oder die Defaults aus settings.yaml."""
        try:
            rows = await self._store.select(PREFERENCES, where=[("key", "eq", PRICING_KEY)], limit=1)
        except PersistenceError as e:
            logger.warning("Strompreise nicht ladbar, nutze Defaults: %s", e)
            return self._defaults
        if not rows:
            return self._defaults
        return EnergyPricing(**{**asdict(self._defaults), **(rows[0].get("value") or {})})

    async def save_pricing(self, pricing: EnergyPricing, source: str = "manual") -> EnergyPricing:
        pricing.validate()
        previous = await self.get_pricing()
        pricing.last_updated = datetime.now(timezone.utc).isoformat()
        await self._store.upsert(PREFERENCES, {
            "key": PRICING_KEY,
            "value": asdict(pricing),
            "updated_at": pricing.last_updated,
        }, conflict=("key",))

        if (previous.general_price != pricing.general_price
                or previous.feed_in_tariff != pricing.feed_in_tariff):
            await self._record_history(pricing, source)

        if pricing.pricing_mode == "dynamic":
            self.start_dynamic_pricing(pricing.update_interval_minutes)
        else:
            self.stop_dynamic_pricing()
        logger.info(
            "Strompreise gespeichert: %.3f / %.3f %s (%s)",
            pricing.general_price, pricing.feed_in_tariff, pricing.currency, pricing.pricing_mode,
        )
        return pricing

    async def _record_history(self, pricing: EnergyPricing, source: str) -> None:
        try:
            await self._store.insert(PRICE_HISTORY, {
                "general_price": pricing.general_price,
                "feed_in_tariff": pricing.feed_in_tariff,
                "pricing_mode": pricing.pricing_mode,
                "source": source,
                "recorded_at": datetime.now(timezone.utc).isoformat(),
            })
        except PersistenceError as e:
            logger.error("Preis-Historie nicht gespeichert: %s", e)

    async def get_price_history(self, limit: int = 100) -> list[dict]:
        try:
            return await self._store.select(PRICE_HISTORY, order_by="recorded_at", descending=True, limit=limit)
        except PersistenceError as e:
            logger.warning("Preis-Historie nicht ladbar: %s", e)
            return []

    async def calculate_daily_cost(self) -> dict:
        """Hochrechnung der aktuellen Leistungswerte auf 24h."""
        pricing = await self.get_pricing()
        try:
            states = await self._ha.get_states()
        except HomeCoreError as e:
            logger.warning("Tageskosten ohne HA-Daten: %s", e)
            states = []
        result = calculate_real_time_cost(
            _find_numeric(states, GRID_IMPORT_KEYWORDS) or 0.0,
            _find_numeric(states, SOLAR_KEYWORDS) or 0.0,
            _find_numeric(states, GRID_EXPORT_KEYWORDS) or 0.0,
            pricing.general_price,
            pricing.feed_in_tariff,
            hours=24,
        )
        result["currency"] = pricing.currency
        result["date"] = date.today().isoformat()
        return result

    # ----- Dynamische Preise -----

    async def refresh_dynamic_prices(self) -> bool:
        """Liest Preis-Sensoren und speichert Aenderungen. True bei Aenderung."""
        current = await self.get_pricing()
        if current.pricing_mode != "dynamic":
            logger.debug("Preis-Modus ist statisch, keine Aktualisierung")
            return False

        states = await self._ha.get_states()
        price = _find_numeric(states, GENERAL_PRICE_KEYWORDS)
        tariff = _find_numeric(states, FEED_IN_KEYWORDS)

        updated = EnergyPricing(**asdict(current))
        changed = False
        if price is not None and price > 0 and price != current.general_price:
            updated.general_price = price
            changed = True
        if tariff is not None and tariff >= 0 and tariff != current.feed_in_tariff:
            updated.feed_in_tariff = tariff
            changed = True

        if not changed:
            logger.debug("Keine Preisaenderung erkannt")
            return False

        updated.last_updated = datetime.now(timezone.utc).isoformat()
        await self._store.upsert(PREFERENCES, {
            "key": PRICING_KEY,
            "value": asdict(updated),
            "updated_at": updated.last_updated,
        }, conflict=("key",))
        await self._record_history(updated, "auto_update")
        logger.info(
            "Dynamische Preise aktualisiert: %.3f -> %.3f, Einspeisung %.3f -> %.3f",
            current.general_price, updated.general_price,
            current.feed_in_tariff, updated.feed_in_tariff,
        )
        return True

    def start_dynamic_pricing(self, interval_minutes: int) -> None:
        if not self._tasks:
            return
        self._tasks.schedule_periodic(
            PRICING_JOB, self.refresh_dynamic_prices, interval_minutes * 60, run_immediately=True,
        )
        logger.info("Dynamische Preise: Aktualisierung alle %d Min", interval_minutes)

    def stop_dynamic_pricing(self) -> None:
        if self._tasks and self._tasks.cancel(PRICING_JOB):
            logger.info("Dynamische Preis-Aktualisierung gestoppt")
