"""
homecore - HTTP-API (FastAPI Server).

Stellt den Conversational Controller und alle Komponenten als REST-API
bereit. Fehler der Komponenten werden zentral auf Status-Codes abgebildet.
"""

import asyncio
import logging
import re
import secrets
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import settings
from .constants import CONTROLLER_PROCESS_TIMEOUT, ERROR_BUFFER_MAX_SIZE
from .controller import HomeController
from .errors import (
    CallTimeoutError,
    ConfigurationError,
    HomeCoreError,
    PersistenceError,
    ServiceNotAllowedError,
    UpstreamError,
    ValidationError,
)
from .pricing import EnergyPricing, calculate_real_time_cost
from .request_context import RequestContextMiddleware, get_request_id, get_scope, setup_structured_logging
from .schemas import (
    ChatRequest,
    ChatResponse,
    CostRequest,
    EnergyFeedback,
    InstructionsUpdate,
    PatternCorrection,
    PatternFeedback,
    PricingUpdate,
    ServiceCallRequest,
    SuggestionCreate,
    SuggestionStatusUpdate,
)

setup_structured_logging()
logger = logging.getLogger("homecore")

# ---- Fehlerspeicher: Ring-Buffer fuer WARNING/ERROR Logs ----
_error_buffer: deque[dict] = deque(maxlen=ERROR_BUFFER_MAX_SIZE)

_SENSITIVE_PATTERNS = re.compile(
    r'(api[_-]?key|token|password|secret|credential|auth)[=:"\s]+\S+',
    re.IGNORECASE,
)


class _ErrorBufferHandler(logging.Handler):
    """Speichert WARNING+ Eintraege im Ring-Buffer, sensible Werte maskiert."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = _SENSITIVE_PATTERNS.sub("[REDACTED]", self.format(record))
            _error_buffer.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "request_id": get_request_id(),
                "message": msg,
            })
        except (TypeError, ValueError):
            self.handleError(record)


_err_handler = _ErrorBufferHandler(level=logging.WARNING)
_err_handler.setFormatter(logging.Formatter("%(message)s"))
logging.getLogger().addHandler(_err_handler)


controller = HomeController()


def _ctl() -> HomeController:
    if controller.store is None:
        raise HTTPException(status_code=503, detail="homecore is not initialized")
    return controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup und Shutdown."""
    logger.info("=" * 50)
    logger.info(" homecore startet...")
    logger.info("=" * 50)
    await controller.initialize()

    health = await controller.health_check()
    for component, status in health["components"].items():
        logger.info(" %s: %s", component, status)
    logger.info(" homecore bereit auf %s:%d", settings.homecore_host, settings.homecore_port)

    yield

    await controller.shutdown()
    logger.info("homecore heruntergefahren.")


app = FastAPI(
    title="homecore",
    description="Conversational Controller fuer Home Assistant",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# ----- API Key -----
# Nur aktiv wenn HOMECORE_API_KEY gesetzt ist. Health bleibt offen.
_API_KEY_EXEMPT_PATHS = frozenset({"/api/health"})


@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    path = request.url.path
    api_key = settings.homecore_api_key
    if api_key and path.startswith("/api/") and path not in _API_KEY_EXEMPT_PATHS:
        key = request.headers.get("x-api-key", "")
        if not (key and secrets.compare_digest(key, api_key)):
            return JSONResponse(status_code=403, content={"detail": "Invalid or missing API key"})
    return await call_next(request)


# ----- Fehler-Abbildung -----

_STATUS_BY_ERROR: tuple[tuple[type, int], ...] = (
    (ServiceNotAllowedError, 403),
    (ValidationError, 400),
    (ConfigurationError, 500),
    (UpstreamError, 502),
    (CallTimeoutError, 504),
    (PersistenceError, 503),
)


def status_for(exc: HomeCoreError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(HomeCoreError)
async def homecore_error_handler(request: Request, exc: HomeCoreError):
    status = status_for(exc)
    log = logger.warning if status < 500 else logger.error
    log("%s %s -> %d: %s", request.method, request.url.path, status, exc)
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__, "request_id": get_request_id()},
    )


# ----- Health & Chat -----

@app.get("/api/health")
async def health():
    return await _ctl().health_check()


@app.post("/api/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """Verarbeitet eine Benutzer-Nachricht inklusive Geraetesteuerung."""
    scope = request.scope or get_scope()
    try:
        result = await asyncio.wait_for(
            _ctl().process(request.text, scope), timeout=CONTROLLER_PROCESS_TIMEOUT,
        )
    except asyncio.TimeoutError as e:
        raise CallTimeoutError(f"processing exceeded {CONTROLLER_PROCESS_TIMEOUT}s") from e
    return ChatResponse(**result)


# ----- Kontext -----

@app.get("/api/context")
async def get_context(message: Optional[str] = None, force_refresh: bool = False):
    ctl = _ctl()
    text = await ctl.context.build_context(message, force_refresh=force_refresh)
    return {"context": text, "mode": "relevant" if message else "full", "cache": ctl.context.cache.stats()}


@app.get("/api/context/instructions")
async def get_instructions():
    return {"instructions": await _ctl().context.get_ai_instructions()}


@app.put("/api/context/instructions")
async def put_instructions(update: InstructionsUpdate):
    await _ctl().context.save_ai_instructions(update.instructions)
    return {"success": True}


# ----- Muster -----

@app.get("/api/patterns")
async def get_patterns(min_confidence: Optional[float] = None):
    patterns = await _ctl().patterns.get_learned_patterns(min_confidence, scope=get_scope())
    return {"patterns": patterns, "total": len(patterns)}


@app.get("/api/patterns/insights")
async def get_pattern_insights():
    return await _ctl().patterns.get_pattern_insights(get_scope())


@app.post("/api/patterns/feedback")
async def pattern_feedback(feedback: PatternFeedback):
    learned = await _ctl().patterns.record_feedback(feedback.message_text, feedback.rating, get_scope())
    return {"success": True, "learned": len(learned)}


@app.post("/api/patterns/correction")
async def pattern_correction(correction: PatternCorrection):
    row = await _ctl().patterns.correct_response(
        correction.original, correction.corrected, correction.correction_type, get_scope(),
    )
    return {"success": row is not None, "pattern": row}


# ----- Energie -----

@app.get("/api/energy/analysis")
async def energy_analysis():
    return {"analysis": await _ctl().energy.get_latest_analysis(get_scope())}


@app.get("/api/energy/insights")
async def energy_insights():
    return await _ctl().energy.get_energy_insights(get_scope())


@app.get("/api/energy/suggestions")
async def energy_suggestions():
    return {"suggestions": await _ctl().energy.generate_suggestions(get_scope())}


@app.post("/api/energy/suggestions/persist")
async def persist_energy_suggestions():
    ctl = _ctl()
    created = await ctl.energy.persist_suggestions(ctl.suggestions, get_scope())
    return {"created": created}


@app.post("/api/energy/feedback")
async def energy_feedback(feedback: EnergyFeedback):
    await _ctl().energy.record_suggestion_feedback(feedback.suggestion_type, feedback.rating, get_scope())
    return {"success": True}


@app.post("/api/energy/snapshot")
async def energy_snapshot():
    return {"snapshot": await _ctl().energy.capture_snapshot(scope=get_scope())}


@app.post("/api/energy/analyze")
async def energy_analyze():
    return {"analysis": await _ctl().energy.analyze(get_scope())}


# ----- Vorschlaege -----

@app.get("/api/suggestions")
async def list_suggestions(status: Optional[str] = None):
    return {"suggestions": await _ctl().suggestions.list_suggestions(status, get_scope())}


@app.post("/api/suggestions")
async def create_suggestion(suggestion: SuggestionCreate):
    return await _ctl().suggestions.create_suggestion(suggestion.model_dump(), get_scope())


@app.put("/api/suggestions/{suggestion_id}/status")
async def update_suggestion_status(suggestion_id: str, update: SuggestionStatusUpdate):
    return await _ctl().suggestions.update_status(suggestion_id, update.status)


@app.post("/api/suggestions/generate")
async def generate_suggestions():
    return {"created": await _ctl().generate_smart_suggestions(get_scope())}


# ----- Audit -----

@app.get("/api/actions")
async def get_actions(limit: int = 100, offset: int = 0):
    return {"actions": await _ctl().audit.get_action_logs(min(limit, 500), max(offset, 0))}


@app.get("/api/actions/stats")
async def get_action_stats():
    return await _ctl().audit.get_action_stats()


@app.get("/api/actions/entity/{entity_id}")
async def get_entity_history(entity_id: str, limit: int = 50):
    return {"entity_id": entity_id, "actions": await _ctl().audit.get_entity_history(entity_id, limit)}


@app.get("/api/rollback-points")
async def get_rollback_points(limit: int = 20):
    return {"rollback_points": await _ctl().audit.get_rollback_points(limit)}


# ----- Geraetesteuerung -----

@app.post("/api/services/call")
async def call_service(call: ServiceCallRequest):
    """Manueller Service-Aufruf, laeuft wie alle Befehle durch das Action Gateway."""
    return await _ctl().gateway.call_service(
        call.domain, call.service, call.entity_id, call.data,
        source="user_manual", reason=call.reason,
    )


# ----- Strompreise -----

@app.get("/api/pricing")
async def get_pricing():
    return asdict(await _ctl().pricing.get_pricing())


@app.put("/api/pricing")
async def put_pricing(update: PricingUpdate):
    pricing = await _ctl().pricing.save_pricing(EnergyPricing(**update.model_dump()))
    return asdict(pricing)


@app.post("/api/pricing/cost")
async def pricing_cost(request: CostRequest):
    pricing = await _ctl().pricing.get_pricing()
    result = calculate_real_time_cost(
        request.grid_import_w, request.solar_w, request.grid_export_w,
        pricing.general_price, pricing.feed_in_tariff, request.hours,
    )
    result["currency"] = pricing.currency
    return result


@app.get("/api/pricing/daily")
async def pricing_daily():
    return await _ctl().pricing.calculate_daily_cost()


@app.get("/api/pricing/history")
async def pricing_history(limit: int = 100):
    return {"history": await _ctl().pricing.get_price_history(limit)}


# ----- Fehlerspeicher -----

@app.get("/api/homecore/errors")
async def get_errors(limit: int = 100, level: Optional[str] = None):
    entries = list(reversed(_error_buffer))
    if level:
        entries = [e for e in entries if e["level"] == level.upper()]
    return {"errors": entries[:min(limit, ERROR_BUFFER_MAX_SIZE)], "total": len(entries)}


@app.delete("/api/homecore/errors")
async def clear_errors():
    count = len(_error_buffer)
    _error_buffer.clear()
    return {"cleared": count}


def start():
    """Einstiegspunkt fuer den Server."""
    import uvicorn

    uvicorn.run(
        "homecore.main:app",
        host=settings.homecore_host,
        port=settings.homecore_port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    start()
