"""
Negotiation domain models.

WHAT: The negotiation aggregate and everything it exclusively owns
WHY: One typed document that is validated, mutated and persisted as a unit
HOW: Pydantic v2 models; events are addressed by their ledger index
"""

import enum
from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class NegotiationStatus(str, enum.Enum):
    """Negotiation lifecycle status."""
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({
    NegotiationStatus.COMPLETED,
    NegotiationStatus.CANCELLED,
    NegotiationStatus.EXPIRED,
    NegotiationStatus.REJECTED,
})


class ParticipantRole(str, enum.Enum):
    """Who produced an event or a timeline entry."""
    REQUESTER = "requester"
    RESPONDER = "responder"
    AGENT = "agent"
    SYSTEM = "system"

    @property
    def side(self) -> Optional["ParticipantRole"]:
        """Negotiating side: the agent speaks for the responder, system for nobody."""
        if self is ParticipantRole.AGENT:
            return ParticipantRole.RESPONDER
        if self is ParticipantRole.SYSTEM:
            return None
        return self


class EventKind(str, enum.Enum):
    """Ledger event kinds."""
    TEXT = "text"
    OFFER = "offer"
    COUNTER_OFFER = "counter_offer"
    ACCEPTANCE = "acceptance"
    REJECTION = "rejection"
    SYSTEM = "system"


OFFER_KINDS = frozenset({EventKind.OFFER, EventKind.COUNTER_OFFER})

ReactionSymbol = Literal["👍", "👎", "😊", "😞", "🤔", "✅", "❌"]


class Money(BaseModel):
    """An offered amount."""
    amount: float = Field(ge=0.0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class Reaction(BaseModel):
    actor_id: str
    symbol: ReactionSymbol
    timestamp: datetime = Field(default_factory=utcnow)


class AgentMetadata(BaseModel):
    """Provenance of an agent-produced event."""
    model: str
    prompt_id: Optional[str] = None
    processing_time_ms: float = Field(default=0.0, ge=0.0)
    tokens_used: Optional[int] = Field(default=None, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class Event(BaseModel):
    """One ledger entry. `id` is its position in the ledger."""
    id: int = Field(ge=0)
    sender: ParticipantRole
    kind: EventKind = EventKind.TEXT
    content: str
    offer: Optional[Money] = None
    metadata: Optional[AgentMetadata] = None
    reactions: list[Reaction] = Field(default_factory=list)
    is_read: bool = False
    read_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_offer(self) -> bool:
        return self.kind in OFFER_KINDS


class OfferHistoryEntry(BaseModel):
    amount: float = Field(ge=0.0)
    offered_by: ParticipantRole
    timestamp: datetime
    event_ref: int = Field(ge=0)


class Pricing(BaseModel):
    initial_offer: float = Field(ge=0.0)
    current_offer: Optional[float] = Field(default=None, ge=0.0)
    final_price: Optional[float] = Field(default=None, ge=0.0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


# ========== Timeline ==========

class TimelineEventKind(str, enum.Enum):
    INITIATED = "initiated"
    MESSAGE_SENT = "message_sent"
    OFFER_MADE = "offer_made"
    STATUS_CHANGED = "status_changed"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    MESSAGE_DELETED = "message_deleted"


class InitiatedPayload(BaseModel):
    type: Literal["initiated"] = "initiated"
    initial_offer: float
    currency: str
    max_rounds: int


class MessagePayload(BaseModel):
    type: Literal["message"] = "message"
    event_ref: int
    kind: EventKind


class OfferPayload(BaseModel):
    type: Literal["offer"] = "offer"
    event_ref: int
    amount: float
    currency: str
    round: int


class StatusPayload(BaseModel):
    type: Literal["status"] = "status"
    from_status: NegotiationStatus
    to_status: NegotiationStatus


class AcceptancePayload(BaseModel):
    type: Literal["acceptance"] = "acceptance"
    final_price: float
    rounds: int


class RejectionPayload(BaseModel):
    type: Literal["rejection"] = "rejection"
    reason: Optional[str] = None


class CancellationPayload(BaseModel):
    type: Literal["cancellation"] = "cancellation"
    cancelled_by: str
    reason: Optional[str] = None


class ExpiryPayload(BaseModel):
    type: Literal["expiry"] = "expiry"
    expires_at: datetime


class DeletionPayload(BaseModel):
    type: Literal["deletion"] = "deletion"
    event_ref: int
    was_offer: bool


TimelinePayload = Annotated[
    Union[
        InitiatedPayload,
        MessagePayload,
        OfferPayload,
        StatusPayload,
        AcceptancePayload,
        RejectionPayload,
        CancellationPayload,
        ExpiryPayload,
        DeletionPayload,
    ],
    Field(discriminator="type"),
]


class TimelineEntry(BaseModel):
    """Human-readable lifecycle entry; never read by business rules."""
    event: TimelineEventKind
    actor: ParticipantRole
    timestamp: datetime
    details: str
    payload: TimelinePayload


# ========== Analytics ==========

class ResponseTimeSample(BaseModel):
    timestamp: datetime
    seconds: float = Field(ge=0.0)
    sender: ParticipantRole


class PriceMovement(BaseModel):
    direction: Literal["up", "down", "stable"]
    magnitude: float = Field(ge=0.0)
    percentage: float = Field(ge=0.0)


class Analytics(BaseModel):
    total_message_count: int = Field(default=0, ge=0)
    average_response_time_seconds: float = Field(default=0.0, ge=0.0)
    response_time_samples: list[ResponseTimeSample] = Field(default_factory=list)
    price_movement: Optional[PriceMovement] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_minutes: Optional[float] = None


class Progress(BaseModel):
    current_round: int
    max_rounds: int
    percentage: float
    remaining_rounds: int


# ========== Aggregate root ==========

class Negotiation(BaseModel):
    """
    Negotiation aggregate root.

    Owns its ledger, offer history, timeline and analytics. Every mutation
    goes through the engine, which works on a deep copy and hands back the
    new aggregate only when every step succeeded.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    listing_id: str
    requester_id: str
    responder_id: str
    status: NegotiationStatus = NegotiationStatus.INITIATED
    pricing: Pricing
    rounds: int = Field(default=0, ge=0)
    max_rounds: int = Field(default=10, ge=1, le=20)
    events: list[Event] = Field(default_factory=list)
    offer_history: list[OfferHistoryEntry] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    analytics: Analytics = Field(default_factory=Analytics)
    agent_assisted: bool = False
    expires_at: datetime = Field(default_factory=lambda: utcnow() + timedelta(days=7))
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_rounds(self):
        """Rounds never exceed the budget."""
        if self.rounds > self.max_rounds:
            raise ValueError(f"rounds ({self.rounds}) must not exceed max_rounds ({self.max_rounds})")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> Progress:
        return Progress(
            current_round=self.rounds,
            max_rounds=self.max_rounds,
            percentage=round(self.rounds / self.max_rounds * 100, 2),
            remaining_rounds=self.max_rounds - self.rounds,
        )

    @property
    def last_event(self) -> Optional[Event]:
        return self.events[-1] if self.events else None

    def participant_role(self, actor_id: str) -> Optional[ParticipantRole]:
        """Resolve an actor id to requester/responder, or None for outsiders."""
        if actor_id == self.requester_id:
            return ParticipantRole.REQUESTER
        if actor_id == self.responder_id:
            return ParticipantRole.RESPONDER
        return None

    def unread_count_for(self, role: ParticipantRole) -> int:
        """Events from the other side that the given side has not read."""
        return sum(
            1 for e in self.events
            if not e.is_read and not e.is_deleted and e.sender.side != role.side
        )

    def can_continue(self, now: Optional[datetime] = None) -> bool:
        """True while offers can still be exchanged."""
        now = now or utcnow()
        return (
            self.status == NegotiationStatus.IN_PROGRESS
            and self.rounds < self.max_rounds
            and self.expires_at >= now
        )
