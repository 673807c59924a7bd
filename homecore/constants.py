"""
Zentrale Konstanten fuer homecore.

Timeouts, TTLs, Schwellwerte und Kostensaetze an einem Ort.
Werte aus settings.yaml ueberschreiben die Defaults zur Laufzeit.
"""

from typing import Final

# ============================================================
# Timeouts (Sekunden)
# ============================================================

# Home Assistant Client
HA_SESSION_TIMEOUT: Final[int] = 10
HA_READ_RETRIES: Final[int] = 1
HA_RETRY_JITTER_MAX: Final[float] = 0.5

# LLM
LLM_TIMEOUT_LOCAL: Final[int] = 10
LLM_TIMEOUT_REMOTE: Final[int] = 30

# Controller
CONTROLLER_PROCESS_TIMEOUT: Final[int] = 60

# ============================================================
# Kontext-Cache
# ============================================================

CONTEXT_CACHE_TTL: Final[float] = 30.0
CONTEXT_RELEVANCE_TTL: Final[float] = 5.0
CONTEXT_MAX_RELEVANT: Final[int] = 50
CONTEXT_MAX_ALIASES_SHOWN: Final[int] = 5
CONTEXT_MIN_KEYWORD_LEN: Final[int] = 3

# Relevanz-Gewichte
SCORE_NAME_MATCH: Final[int] = 10
SCORE_DOMAIN_MATCH: Final[int] = 5
SCORE_COMMON_DOMAIN: Final[int] = 1

# ============================================================
# Muster-Lernen
# ============================================================

PATTERN_MIN_CONFIDENCE: Final[float] = 0.5
PATTERN_QUERY_LIMIT: Final[int] = 50
PATTERN_TOP_INSIGHTS: Final[int] = 10
PATTERN_DEFAULT_SCOPE: Final[str] = "global"

# Verstaerkung: +0.10 bis usage_count 5, +0.05 bis 10, danach +0.02
REINFORCE_STEP_EARLY: Final[float] = 0.10
REINFORCE_STEP_MID: Final[float] = 0.05
REINFORCE_STEP_LATE: Final[float] = 0.02
REINFORCE_EARLY_LIMIT: Final[int] = 5
REINFORCE_MID_LIMIT: Final[int] = 10

# Nur fuer Auswertungen, nie persistiert
INSIGHT_USAGE_BONUS: Final[float] = 0.02
INSIGHT_USAGE_BONUS_MAX: Final[float] = 0.3

# ============================================================
# Energie-Miner
# ============================================================

ENERGY_SNAPSHOT_INTERVAL_MIN: Final[int] = 15
ENERGY_ANALYSIS_INTERVAL_MIN: Final[int] = 60
ENERGY_USAGE_WINDOW_DAYS: Final[int] = 7
ENERGY_DEVICE_WINDOW_DAYS: Final[int] = 3
ENERGY_WASTE_WINDOW_HOURS: Final[int] = 24
ENERGY_WASTE_MIN_SNAPSHOTS: Final[int] = 10
ENERGY_ALWAYS_ON_MIN_SNAPSHOTS: Final[int] = 20
ENERGY_PEAK_COUNT: Final[int] = 5
ENERGY_NIGHT_THRESHOLD_W: Final[float] = 100.0
ENERGY_NIGHT_DEVICE_RATIO: Final[float] = 0.7
ENERGY_ALWAYS_ON_RATIO: Final[float] = 0.95
ENERGY_NIGHT_HOURS: Final[int] = 6
ENERGY_ALWAYS_ON_DEVICE_W: Final[float] = 10.0
ENERGY_PEAK_SHIFT_RATIO: Final[float] = 0.3
ENERGY_EFFICIENCY_FLAT_SAVINGS: Final[float] = 15.0
ENERGY_EFFICIENCY_TOP_DEVICES: Final[int] = 3
ENERGY_FREQUENT_DEVICE_MIN: Final[int] = 100

# Kostensaetze pro kWh
WASTE_RATE_PER_KWH: Final[float] = 0.15
PEAK_RATE_PER_KWH: Final[float] = 0.10
DAYS_PER_MONTH: Final[int] = 30

# Trend-Band (+/- 10%)
TREND_UPPER: Final[float] = 1.1
TREND_LOWER: Final[float] = 0.9

# ============================================================
# Strompreise
# ============================================================

DEFAULT_GENERAL_PRICE: Final[float] = 0.30
DEFAULT_FEED_IN_TARIFF: Final[float] = 0.08
DEFAULT_CURRENCY: Final[str] = "EUR"
PRICING_UPDATE_INTERVAL_MIN: Final[int] = 60

# ============================================================
# Vorschlaege
# ============================================================

SUGGESTION_DEFAULT_TTL_HOURS: Final[int] = 168
SMART_HIGH_POWER_W: Final[float] = 1000.0
SMART_MANUAL_MIN_COUNT: Final[int] = 5
SMART_MANUAL_LOG_WINDOW: Final[int] = 50
SMART_MAX_LIGHTS_ON: Final[int] = 5

# ============================================================
# Audit
# ============================================================

AUDIT_DEFAULT_LIMIT: Final[int] = 100
AUDIT_HISTORY_LIMIT: Final[int] = 50
AUDIT_ROLLBACK_LIMIT: Final[int] = 20

# ============================================================
# Redis Keys
# ============================================================

REDIS_KEY_PREFIX: Final[str] = "hc"

# ============================================================
# HTTP-Server
# ============================================================

ERROR_BUFFER_MAX_SIZE: Final[int] = 500
