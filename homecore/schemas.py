"""Request- und Response-Modelle der HTTP-API."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    text: str = Field(..., min_length=1)
    scope: Optional[str] = None


class ChatResponse(BaseModel):
    response: str
    actions: list[dict] = []
    error: Optional[str] = None


class InstructionsUpdate(BaseModel):
    instructions: str = ""


class PatternFeedback(BaseModel):
    message_text: str
    rating: Literal["up", "down"]


class PatternCorrection(BaseModel):
    original: str
    corrected: str
    correction_type: str = "entity_name"


class EnergyFeedback(BaseModel):
    suggestion_type: str
    rating: Literal["up", "down"]


class SuggestionCreate(BaseModel):
    suggestion_type: str
    title: str
    description: str
    confidence: float
    impact: str = "medium"
    category: str = "energy"
    entities_involved: list[str] = []
    data: dict[str, Any] = {}
    expires_at: Optional[str] = None


class SuggestionStatusUpdate(BaseModel):
    status: Literal["accepted", "rejected", "implemented", "expired"]


class ServiceCallRequest(BaseModel):
    domain: str
    service: str
    entity_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    reason: str = ""


class PricingUpdate(BaseModel):
    general_price: float = Field(..., ge=0)
    feed_in_tariff: float = Field(..., ge=0)
    currency: str = "EUR"
    pricing_mode: Literal["static", "dynamic"] = "static"
    update_interval_minutes: int = Field(60, ge=1)


class CostRequest(BaseModel):
    grid_import_w: float = 0.0
    solar_w: float = 0.0
    grid_export_w: float = 0.0
    hours: float = Field(1.0, gt=0)
