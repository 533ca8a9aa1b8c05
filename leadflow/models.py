"""Data models (pydantic) for LeadFlow."""

from datetime import date, datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from leadflow.db_models import (
    AppointmentStatus,
    ConversationMode,
    ConversationStatus,
    Intention,
    LeadTemperature,
    MessageSender,
)


# ─── AI contract ────────────────────────────────────────────────

AI_ACTIONS = ("none", "schedule", "transfer", "follow_up", "close")

# Portuguese values the prompt asks for, plus the stored English values.
_INTENTION_ALIASES = {
    "vender": Intention.SELL,
    "venda": Intention.SELL,
    "sell": Intention.SELL,
    "comprar": Intention.BUY,
    "compra": Intention.BUY,
    "buy": Intention.BUY,
    "trocar": Intention.TRADE,
    "troca": Intention.TRADE,
    "trade": Intention.TRADE,
    "avaliar": Intention.APPRAISE,
    "avaliacao": Intention.APPRAISE,
    "avaliação": Intention.APPRAISE,
    "appraise": Intention.APPRAISE,
}


def _blank_to_none(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or stripped.lower() in {"null", "none", "undefined"}:
            return None
        return stripped
    return value


class ExtractedData(BaseModel):
    """Fields the AI extracted from what the customer said."""
    model_config = ConfigDict(populate_by_name=True)

    customer_name: Optional[str] = Field(default=None, alias="customerName")
    vehicle: Optional[str] = None
    city: Optional[str] = None
    intention: Optional[Intention] = None
    desired_date: Optional[str] = Field(default=None, alias="desiredDate")
    desired_time: Optional[str] = Field(default=None, alias="desiredTime")

    @field_validator("customer_name", "vehicle", "city", "desired_date", "desired_time", mode="before")
    @classmethod
    def _clean_text(cls, value):
        value = _blank_to_none(value)
        return str(value) if value is not None else None

    @field_validator("intention", mode="before")
    @classmethod
    def _coerce_intention(cls, value):
        value = _blank_to_none(value)
        if value is None or isinstance(value, Intention):
            return value
        return _INTENTION_ALIASES.get(str(value).lower())


class AIResponse(BaseModel):
    """Reply produced by an AI provider for one conversation turn."""
    model_config = ConfigDict(populate_by_name=True)

    message: str
    action: str = "none"
    extracted_data: ExtractedData = Field(default_factory=ExtractedData, alias="extractedData")
    lead_temperature: Optional[LeadTemperature] = Field(default=None, alias="leadTemperature")
    confidence: float = 0.7

    @field_validator("action", mode="before")
    @classmethod
    def _coerce_action(cls, value):
        value = (_blank_to_none(value) or "none")
        value = str(value).lower()
        return value if value in AI_ACTIONS else "none"

    @field_validator("extracted_data", mode="before")
    @classmethod
    def _coerce_extracted(cls, value):
        return value or {}

    @field_validator("lead_temperature", mode="before")
    @classmethod
    def _coerce_temperature(cls, value):
        value = _blank_to_none(value)
        if value is None or isinstance(value, LeadTemperature):
            return value
        try:
            return LeadTemperature(str(value).lower())
        except ValueError:
            return None

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value):
        if value is None:
            return 0.7
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.7
        return min(max(number, 0.0), 1.0)


# ─── Scheduling ─────────────────────────────────────────────────

class AvailabilitySlot(BaseModel):
    """A bookable time on a given day (computed, never persisted)."""
    day: date
    time: str  # "HH:MM"

    @property
    def display_text(self) -> str:
        return f"{self.day.day}/{self.day.month} às {self.time}"


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[str] = None


class ScheduleRequest(BaseModel):
    conversation_id: Optional[int] = None
    customer_name: str
    phone: str
    vehicle: Optional[str] = None
    city: Optional[str] = None
    intention: Optional[Intention] = None
    lead_temperature: Optional[LeadTemperature] = None
    day: date
    time: str
    created_by: str


class ScheduleResult(BaseModel):
    success: bool
    message: str
    appointment_id: Optional[int] = None
    suggested_slots: list[AvailabilitySlot] = Field(default_factory=list)


class CalendarBooking(BaseModel):
    """One row written to the external calendar."""
    day: date
    time: str
    pre_sales: str
    client_name: str
    vehicle: str = ""
    phone: str
    city: str = ""
    origin: str = "LEAD"


class LeadUpdate(BaseModel):
    """Outcome fields tracked per lead in the lead-tracking sheet."""
    customer_name: Optional[str] = None
    vehicle: Optional[str] = None
    busca: Optional[str] = None
    qualificado: Optional[str] = None
    agendou: Optional[str] = None
    vendeu: Optional[str] = None
    responsible: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


# ─── Transport ──────────────────────────────────────────────────

class TransportStatus(BaseModel):
    status: str
    is_ready: bool
    has_pending_auth_challenge: bool


# ─── API bodies ─────────────────────────────────────────────────

class SimulateRequest(BaseModel):
    """Request model for POST /simulate."""
    phone: str
    message: str
    force: bool = False  # bypass the business-hours gate


class SimulateResponse(BaseModel):
    success: bool
    phone: str
    incoming_message: str
    bot_response: Optional[str] = None
    note: str = "Simulation only - no WhatsApp message was sent"


class HumanMessageRequest(BaseModel):
    message: str
    agent_name: str = "Atendente"


class TransferRequest(BaseModel):
    agent_name: Optional[str] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender: MessageSender
    content: str
    created_at: datetime


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone_number: str
    status: ConversationStatus
    mode: ConversationMode
    assigned_to: Optional[str] = None
    customer_name: Optional[str] = None
    vehicle: Optional[str] = None
    city: Optional[str] = None
    intention: Optional[Intention] = None
    lead_temperature: LeadTemperature
    created_at: datetime
    updated_at: datetime


class ConversationDetail(ConversationOut):
    messages: list[MessageOut] = Field(default_factory=list)


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: Optional[int] = None
    customer_name: str
    phone_number: str
    vehicle: Optional[str] = None
    city: Optional[str] = None
    scheduled_date: date
    scheduled_time: str
    status: AppointmentStatus
    created_by: str
    sheets_row_id: Optional[int] = None
