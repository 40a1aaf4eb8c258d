"""
Event ledger.

WHAT: The ordered, append-only list of negotiation events
WHY: Events are the source of truth for offers, rounds and read state
HOW: Validate, then append at the next index; deletes only flag the event.
     Offer bookkeeping, timeline and analytics are applied by the engine.
"""

from datetime import datetime
from typing import Optional, get_args

from ..core.config import settings
from ..models.negotiation import (
    AgentMetadata,
    Event,
    EventKind,
    Money,
    Negotiation,
    NegotiationStatus,
    OFFER_KINDS,
    ParticipantRole,
    Reaction,
    ReactionSymbol,
)
from ..utils.exceptions import (
    EventNotFoundError,
    InvalidEventKindError,
    NegotiationClosedError,
    UnauthorizedError,
    ValidationError,
)
from . import state_machine


REACTION_SYMBOLS = frozenset(get_args(ReactionSymbol))

# Events produced by the platform itself; participants cannot remove them.
UNDELETABLE_SENDERS = frozenset({ParticipantRole.AGENT, ParticipantRole.SYSTEM})


def ensure_open(negotiation: Negotiation, now: datetime) -> None:
    """Ledger mutations need a non-terminal negotiation whose deadline has not passed."""
    if negotiation.is_terminal:
        raise NegotiationClosedError(negotiation.id, negotiation.status.value)
    if state_machine.deadline_elapsed(negotiation, now):
        raise NegotiationClosedError(negotiation.id, NegotiationStatus.EXPIRED.value)


def validate_content(content: str) -> None:
    max_length = settings.MESSAGE_MAX_LENGTH
    if content is None or not content.strip():
        raise ValidationError(
            "Message content must not be empty",
            field_errors=[{"field": "content", "message": "empty"}],
        )
    if len(content) > max_length:
        raise ValidationError(
            f"Message content exceeds {max_length} characters",
            field_errors=[{"field": "content", "message": f"max {max_length} characters"}],
        )


def get_event(negotiation: Negotiation, event_ref: int) -> Event:
    if event_ref < 0 or event_ref >= len(negotiation.events):
        raise EventNotFoundError(negotiation.id, event_ref)
    return negotiation.events[event_ref]


def _build_offer(
    negotiation: Negotiation,
    kind: EventKind,
    amount: Optional[float],
    currency: Optional[str],
) -> Optional[Money]:
    if kind in OFFER_KINDS:
        if amount is None:
            raise InvalidEventKindError(kind.value, "an offer amount is required")
        if amount < 0:
            raise ValidationError(
                "Offer amount must not be negative",
                field_errors=[{"field": "amount", "message": "must be >= 0"}],
            )
        currency = currency or negotiation.pricing.currency
        if currency != negotiation.pricing.currency:
            raise ValidationError(
                f"Offer currency {currency} does not match negotiation currency "
                f"{negotiation.pricing.currency}",
                field_errors=[{"field": "currency", "message": "currency mismatch"}],
            )
        return Money(amount=amount, currency=currency)

    if amount is not None:
        raise InvalidEventKindError(kind.value, "only offer events may carry an amount")
    return None


def append(
    negotiation: Negotiation,
    sender: ParticipantRole,
    kind: EventKind,
    content: str,
    now: datetime,
    amount: Optional[float] = None,
    currency: Optional[str] = None,
    metadata: Optional[AgentMetadata] = None,
) -> Event:
    """
    Append a validated event at the next ledger index.

    Raises:
        NegotiationClosedError: terminal status or deadline passed
        ValidationError: bad content, negative amount, currency mismatch
        InvalidEventKindError: kind and offer payload disagree
    """
    ensure_open(negotiation, now)
    validate_content(content)
    offer = _build_offer(negotiation, kind, amount, currency)

    event = Event(
        id=len(negotiation.events),
        sender=sender,
        kind=kind,
        content=content,
        offer=offer,
        metadata=metadata,
        created_at=now,
    )
    negotiation.events.append(event)
    negotiation.updated_at = now
    return event


def soft_delete(
    negotiation: Negotiation,
    event_ref: int,
    actor_role: ParticipantRole,
    now: datetime,
) -> Event:
    """Flag an event as deleted; only its author may do so."""
    ensure_open(negotiation, now)
    event = get_event(negotiation, event_ref)

    if event.sender in UNDELETABLE_SENDERS or event.sender != actor_role:
        raise UnauthorizedError(actor_role.value, reason="Only the author can delete this event")
    if event.is_deleted:
        raise ValidationError(f"Event {event_ref} is already deleted")

    event.is_deleted = True
    event.deleted_at = now
    negotiation.updated_at = now
    return event


def edit(
    negotiation: Negotiation,
    event_ref: int,
    actor_role: ParticipantRole,
    content: str,
    now: datetime,
) -> Event:
    """Replace the content of one of the author's own text events."""
    ensure_open(negotiation, now)
    event = get_event(negotiation, event_ref)

    if event.sender != actor_role:
        raise UnauthorizedError(actor_role.value, reason="Only the author can edit this event")
    if event.is_deleted:
        raise ValidationError(f"Event {event_ref} is deleted")
    if event.kind != EventKind.TEXT:
        raise InvalidEventKindError(event.kind.value, "only text events can be edited")
    validate_content(content)

    event.content = content
    event.edited_at = now
    negotiation.updated_at = now
    return event


def add_reaction(
    negotiation: Negotiation,
    event_ref: int,
    actor_id: str,
    symbol: str,
    now: datetime,
) -> bool:
    """Attach a reaction; returns False when the actor already used that symbol."""
    ensure_open(negotiation, now)
    if symbol not in REACTION_SYMBOLS:
        raise ValidationError(
            f"Unsupported reaction: {symbol}",
            field_errors=[{"field": "symbol", "message": "not an allowed reaction"}],
        )
    event = get_event(negotiation, event_ref)
    if event.is_deleted:
        raise ValidationError(f"Event {event_ref} is deleted")

    if any(r.actor_id == actor_id and r.symbol == symbol for r in event.reactions):
        return False

    event.reactions.append(Reaction(actor_id=actor_id, symbol=symbol, timestamp=now))
    negotiation.updated_at = now
    return True


def mark_read(negotiation: Negotiation, reader_role: ParticipantRole, now: datetime) -> int:
    """Mark every event from the other side as read. Allowed on closed negotiations."""
    marked = 0
    for event in negotiation.events:
        if event.is_read or event.sender.side == reader_role.side:
            continue
        event.is_read = True
        event.read_at = now
        marked += 1
    if marked:
        negotiation.updated_at = now
    return marked


def list_since(negotiation: Negotiation, cursor: Optional[int] = None) -> list[Event]:
    """Events after `cursor` in ledger order; None or -1 returns the whole ledger."""
    start = 0 if cursor is None else max(cursor + 1, 0)
    return negotiation.events[start:]
