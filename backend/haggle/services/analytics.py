"""
Analytics aggregator.

WHAT: Derived negotiation metrics (response times, price movement, counts, duration)
WHY: Dashboards and statistics need numbers that always agree with the ledger
HOW: Handlers invoked by the engine after each append or transition; averages
     are recomputed from the full sample list so results are reproducible
"""

from datetime import datetime
from typing import Optional

from ..models.negotiation import (
    Event,
    Negotiation,
    NegotiationStatus,
    PriceMovement,
    ResponseTimeSample,
)


def _previous_party_event(negotiation: Negotiation, event: Event) -> Optional[Event]:
    """Most recent non-system event before `event`, in ledger order."""
    for candidate in reversed(negotiation.events[:event.id]):
        if candidate.sender.side is not None:
            return candidate
    return None


def recompute_average(negotiation: Negotiation) -> float:
    """Arithmetic mean of every recorded response-time sample."""
    samples = negotiation.analytics.response_time_samples
    average = sum(s.seconds for s in samples) / len(samples) if samples else 0.0
    negotiation.analytics.average_response_time_seconds = average
    return average


def compute_price_movement(initial_offer: float, current_offer: Optional[float]) -> Optional[PriceMovement]:
    """Direction, magnitude and percentage of current vs. initial offer."""
    if current_offer is None:
        return None
    delta = current_offer - initial_offer
    if delta > 0:
        direction = "up"
    elif delta < 0:
        direction = "down"
    else:
        direction = "stable"
    magnitude = abs(delta)
    percentage = magnitude / initial_offer * 100 if initial_offer > 0 else 0.0
    return PriceMovement(direction=direction, magnitude=magnitude, percentage=percentage)


def on_event_appended(negotiation: Negotiation, event: Event) -> None:
    """
    Update counts and response-time samples for a freshly appended event.

    A sample is recorded only when the event answers the other side: the
    previous non-system event came from the opposite party. Timestamps that
    run backwards under clock skew count as a zero-second response.
    """
    analytics = negotiation.analytics
    analytics.total_message_count = len(negotiation.events)

    side = event.sender.side
    if side is None:
        return

    previous = _previous_party_event(negotiation, event)
    if previous is None or previous.sender.side == side:
        return

    seconds = max(0.0, (event.created_at - previous.created_at).total_seconds())
    analytics.response_time_samples.append(
        ResponseTimeSample(timestamp=event.created_at, seconds=seconds, sender=event.sender)
    )
    recompute_average(negotiation)


def on_price_changed(negotiation: Negotiation) -> None:
    """Refresh price movement after current_offer changed."""
    negotiation.analytics.price_movement = compute_price_movement(
        negotiation.pricing.initial_offer,
        negotiation.pricing.current_offer,
    )


def on_status_changed(
    negotiation: Negotiation,
    old: NegotiationStatus,
    new: NegotiationStatus,
    now: datetime,
) -> None:
    """Close the analytics window when the negotiation completes."""
    if new != NegotiationStatus.COMPLETED:
        return
    analytics = negotiation.analytics
    analytics.end_time = now
    analytics.duration_minutes = (now - analytics.start_time).total_seconds() / 60
