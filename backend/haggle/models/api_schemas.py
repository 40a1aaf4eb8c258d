"""
Pydantic API schemas for the negotiation endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation and serialization of the public API
HOW: Pydantic v2 models with constraints; responses wrap domain models
"""

from typing import Optional, List, Literal
from pydantic import BaseModel, Field, field_validator
from datetime import datetime

from ..core.config import settings
from .negotiation import (
    Analytics,
    Event,
    Negotiation,
    NegotiationStatus,
    ParticipantRole,
    Pricing,
    Progress,
    TimelineEntry,
)


# ========== Requests ==========

class StartNegotiationRequest(BaseModel):
    """Open a negotiation on a listing."""
    listing_id: str = Field(..., min_length=1, max_length=100, description="Listing ID")
    initial_offer: float = Field(..., gt=0, description="Opening offer")
    message: Optional[str] = Field(default=None, description="Optional opening message")
    max_rounds: Optional[int] = Field(
        default=None, ge=1, le=settings.NEGOTIATION_MAX_ROUNDS_CEILING,
        description="Round budget (defaults to the configured value)"
    )


class SendMessageRequest(BaseModel):
    """Non-offer event."""
    content: str = Field(..., description="Message text")
    kind: Literal["text", "acceptance", "rejection"] = "text"


class MakeOfferRequest(BaseModel):
    """Offer or counter-offer event."""
    amount: float = Field(..., ge=0, description="Offered amount")
    message: Optional[str] = Field(default=None, description="Optional message sent with the offer")
    kind: Optional[Literal["offer", "counter_offer"]] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class EditEventRequest(BaseModel):
    content: str


class ReactionRequest(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=8)


# ========== Responses ==========

class NegotiationResponse(BaseModel):
    """Full negotiation as seen by one participant."""
    negotiation: Negotiation
    role: ParticipantRole
    progress: Progress
    can_continue: bool
    unread_count: int

    @classmethod
    def build(cls, negotiation: Negotiation, role: ParticipantRole, now: datetime) -> "NegotiationResponse":
        return cls(
            negotiation=negotiation,
            role=role,
            progress=negotiation.progress,
            can_continue=negotiation.can_continue(now),
            unread_count=negotiation.unread_count_for(role),
        )


class NegotiationSummary(BaseModel):
    """List entry."""
    id: str
    listing_id: str
    requester_id: str
    responder_id: str
    status: NegotiationStatus
    pricing: Pricing
    progress: Progress
    last_event: Optional[Event] = None
    agent_assisted: bool
    expires_at: datetime
    updated_at: datetime

    @classmethod
    def from_negotiation(cls, negotiation: Negotiation) -> "NegotiationSummary":
        return cls(
            id=negotiation.id,
            listing_id=negotiation.listing_id,
            requester_id=negotiation.requester_id,
            responder_id=negotiation.responder_id,
            status=negotiation.status,
            pricing=negotiation.pricing,
            progress=negotiation.progress,
            last_event=negotiation.last_event,
            agent_assisted=negotiation.agent_assisted,
            expires_at=negotiation.expires_at,
            updated_at=negotiation.updated_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class NegotiationListResponse(BaseModel):
    items: List[NegotiationSummary]
    pagination: Pagination


class EventActionResponse(BaseModel):
    """Result of appending an event."""
    event: Event
    negotiation: NegotiationResponse


class EventListResponse(BaseModel):
    events: List[Event]
    cursor: Optional[int] = Field(None, description="Pass back to fetch only newer events")


class ReactionResponse(BaseModel):
    added: bool
    event: Event


class ReadResponse(BaseModel):
    marked: int
    unread_count: int


class TimelineItem(BaseModel):
    index: int
    entry: TimelineEntry


class TimelineResponse(BaseModel):
    entries: List[TimelineItem]
    cursor: Optional[int] = None


class AnalyticsResponse(BaseModel):
    negotiation_id: str
    rounds: int
    max_rounds: int
    analytics: Analytics


class StatisticsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    completed: int
    cancelled: int
    success_rate: float
    average_rounds: Optional[float] = None
    average_duration_minutes: Optional[float] = None
    average_final_price: Optional[float] = None
