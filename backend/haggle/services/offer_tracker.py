"""
Offer tracker.

WHAT: Maintains rounds, current_offer and the offer history
WHY: Pricing fields must always agree with the offer events in the ledger
HOW: A capacity check before an offer append, bookkeeping after it, and a
     recompute from the ledger when an offer event is soft-deleted
"""

from typing import Optional

from ..models.negotiation import Event, Negotiation, OfferHistoryEntry
from ..utils.exceptions import RoundLimitExceededError
from . import analytics


def ensure_round_capacity(negotiation: Negotiation) -> None:
    """Raise before appending an offer that would exceed max_rounds."""
    if negotiation.rounds >= negotiation.max_rounds:
        raise RoundLimitExceededError(negotiation.id, negotiation.max_rounds)


def on_event_appended(negotiation: Negotiation, event: Event) -> None:
    """Count the round and move current_offer to the newly appended offer."""
    if not event.is_offer or event.offer is None:
        return

    negotiation.rounds += 1
    negotiation.pricing.current_offer = event.offer.amount
    negotiation.offer_history.append(
        OfferHistoryEntry(
            amount=event.offer.amount,
            offered_by=event.sender,
            timestamp=event.created_at,
            event_ref=event.id,
        )
    )
    analytics.on_price_changed(negotiation)


def recompute_current_offer(negotiation: Negotiation) -> Optional[float]:
    """
    Re-derive current_offer from the last non-deleted offer event.

    Ledger order decides "last"; timestamps are never consulted. Rounds and
    offer history count appended offers and are left untouched.
    """
    current = None
    for event in reversed(negotiation.events):
        if event.is_offer and not event.is_deleted and event.offer is not None:
            current = event.offer.amount
            break

    negotiation.pricing.current_offer = current
    analytics.on_price_changed(negotiation)
    return current
