"""
Negotiation engine.

WHAT: One function per caller action, each a complete unit of work
WHY: A failed step must leave the stored negotiation exactly as it was
HOW: Every action runs the ordered handler pipeline on a deep copy and
     returns that copy; the caller persists it only if nothing raised.

Append pipeline:
    validate -> ledger append -> offer tracker -> timeline -> analytics -> state machine
"""

from datetime import datetime
from typing import Optional

from ..core.config import settings
from ..models.negotiation import (
    AgentMetadata,
    Analytics,
    DeletionPayload,
    Event,
    EventKind,
    InitiatedPayload,
    MessagePayload,
    Negotiation,
    NegotiationStatus,
    OFFER_KINDS,
    OfferPayload,
    ParticipantRole,
    Pricing,
    TimelineEventKind,
)
from ..utils.exceptions import ValidationError
from . import (
    analytics,
    event_ledger,
    expiry_policy,
    offer_tracker,
    state_machine,
    timeline_auditor,
)
from .listing_lookup import ListingTerms


def _working_copy(negotiation: Negotiation) -> Negotiation:
    return negotiation.model_copy(deep=True)


def validate_initial_offer(listing: ListingTerms, initial_offer: float) -> None:
    """Initial offer must be positive, within base price and above the floor."""
    if initial_offer <= 0:
        raise ValidationError(
            "Initial offer must be greater than zero",
            field_errors=[{"field": "initial_offer", "message": "must be > 0"}],
        )
    if initial_offer > listing.base_price:
        raise ValidationError(
            f"Offer cannot exceed the asking price of {listing.base_price:.2f}",
            field_errors=[{"field": "initial_offer", "message": "above base price"}],
        )
    if listing.min_price is not None:
        floor = listing.min_price * settings.MIN_OFFER_RATIO
        if initial_offer < floor:
            raise ValidationError(
                f"Offer is too low. Minimum acceptable offer is {floor:.2f}",
                field_errors=[{"field": "initial_offer", "message": "below minimum"}],
            )


def resolve_max_rounds(max_rounds: Optional[int]) -> int:
    if max_rounds is None:
        return settings.NEGOTIATION_DEFAULT_MAX_ROUNDS
    ceiling = settings.NEGOTIATION_MAX_ROUNDS_CEILING
    if max_rounds < 1 or max_rounds > ceiling:
        raise ValidationError(
            f"max_rounds must be between 1 and {ceiling}",
            field_errors=[{"field": "max_rounds", "message": f"1..{ceiling}"}],
        )
    return max_rounds


def create(
    listing: ListingTerms,
    requester_id: str,
    initial_offer: float,
    now: datetime,
    max_rounds: Optional[int] = None,
    message: Optional[str] = None,
) -> Negotiation:
    """
    Open a negotiation on a listing.

    The initial offer seeds `pricing.initial_offer` only; the ledger starts
    empty unless an opening message is supplied, in which case it becomes
    the first text event and the negotiation moves to in_progress.
    """
    if requester_id == listing.owner_id:
        raise ValidationError("You cannot negotiate on your own listing")
    validate_initial_offer(listing, initial_offer)
    rounds_budget = resolve_max_rounds(max_rounds)

    negotiation = Negotiation(
        listing_id=listing.listing_id,
        requester_id=requester_id,
        responder_id=listing.owner_id,
        pricing=Pricing(initial_offer=initial_offer, currency=listing.currency),
        max_rounds=rounds_budget,
        agent_assisted=listing.agent_assisted,
        analytics=Analytics(start_time=now),
        expires_at=expiry_policy.default_expiry(now),
        created_at=now,
        updated_at=now,
    )
    timeline_auditor.record(
        negotiation,
        TimelineEventKind.INITIATED,
        ParticipantRole.REQUESTER,
        f"Negotiation started with an offer of {initial_offer:.2f} {listing.currency}",
        InitiatedPayload(
            initial_offer=initial_offer,
            currency=listing.currency,
            max_rounds=rounds_budget,
        ),
        now,
    )

    if message is not None and message.strip():
        negotiation, _ = append_event(
            negotiation, ParticipantRole.REQUESTER, EventKind.TEXT, message, now
        )
    return negotiation


def default_offer_kind(negotiation: Negotiation) -> EventKind:
    """The first offer in the ledger is an offer, every later one a counter-offer."""
    if any(e.is_offer for e in negotiation.events):
        return EventKind.COUNTER_OFFER
    return EventKind.OFFER


def append_event(
    negotiation: Negotiation,
    sender: ParticipantRole,
    kind: EventKind,
    content: str,
    now: datetime,
    amount: Optional[float] = None,
    currency: Optional[str] = None,
    metadata: Optional[AgentMetadata] = None,
) -> tuple[Negotiation, Event]:
    """Append one event and run every downstream handler; all or nothing."""
    working = _working_copy(negotiation)

    event_ledger.ensure_open(working, now)
    if kind in OFFER_KINDS:
        offer_tracker.ensure_round_capacity(working)

    event = event_ledger.append(
        working, sender, kind, content, now,
        amount=amount, currency=currency, metadata=metadata,
    )
    offer_tracker.on_event_appended(working, event)

    if event.is_offer:
        timeline_auditor.record(
            working,
            TimelineEventKind.OFFER_MADE,
            sender,
            f"{sender.value.capitalize()} offered {event.offer.amount:.2f} {event.offer.currency}",
            OfferPayload(
                event_ref=event.id,
                amount=event.offer.amount,
                currency=event.offer.currency,
                round=working.rounds,
            ),
            now,
        )
    else:
        timeline_auditor.record(
            working,
            TimelineEventKind.MESSAGE_SENT,
            sender,
            f"{sender.value.capitalize()} sent a {kind.value} message",
            MessagePayload(event_ref=event.id, kind=kind),
            now,
        )

    analytics.on_event_appended(working, event)

    if working.status == NegotiationStatus.INITIATED:
        state_machine.start(working, sender, now)

    return working, event


def soft_delete_event(
    negotiation: Negotiation,
    event_ref: int,
    actor_role: ParticipantRole,
    now: datetime,
) -> Negotiation:
    working = _working_copy(negotiation)
    event = event_ledger.soft_delete(working, event_ref, actor_role, now)
    if event.is_offer:
        offer_tracker.recompute_current_offer(working)
    timeline_auditor.record(
        working,
        TimelineEventKind.MESSAGE_DELETED,
        actor_role,
        f"{actor_role.value.capitalize()} deleted a {event.kind.value} message",
        DeletionPayload(event_ref=event.id, was_offer=event.is_offer),
        now,
    )
    return working


def edit_event(
    negotiation: Negotiation,
    event_ref: int,
    actor_role: ParticipantRole,
    content: str,
    now: datetime,
) -> Negotiation:
    working = _working_copy(negotiation)
    event_ledger.edit(working, event_ref, actor_role, content, now)
    return working


def add_reaction(
    negotiation: Negotiation,
    event_ref: int,
    actor_id: str,
    symbol: str,
    now: datetime,
) -> tuple[Negotiation, bool]:
    working = _working_copy(negotiation)
    added = event_ledger.add_reaction(working, event_ref, actor_id, symbol, now)
    return working, added


def mark_read(
    negotiation: Negotiation,
    reader_role: ParticipantRole,
    now: datetime,
) -> tuple[Negotiation, int]:
    working = _working_copy(negotiation)
    marked = event_ledger.mark_read(working, reader_role, now)
    return working, marked


def accept_offer(negotiation: Negotiation, actor_role: ParticipantRole, now: datetime) -> Negotiation:
    working = _working_copy(negotiation)
    state_machine.accept_offer(working, actor_role, now)
    return working


def reject_offer(
    negotiation: Negotiation,
    actor_role: ParticipantRole,
    now: datetime,
    reason: Optional[str] = None,
) -> Negotiation:
    working = _working_copy(negotiation)
    state_machine.reject_offer(working, actor_role, reason, now)
    return working


def cancel(
    negotiation: Negotiation,
    actor_role: ParticipantRole,
    actor_id: str,
    now: datetime,
    reason: Optional[str] = None,
) -> Negotiation:
    working = _working_copy(negotiation)
    state_machine.cancel(working, actor_role, actor_id, reason, now)
    return working


def enforce_expiry(negotiation: Negotiation, now: datetime) -> tuple[Negotiation, bool]:
    """Return (negotiation, expired_now); the input is returned untouched when nothing changed."""
    if not expiry_policy.is_elapsed(negotiation, now):
        return negotiation, False
    working = _working_copy(negotiation)
    expiry_policy.enforce(working, now)
    return working, True
