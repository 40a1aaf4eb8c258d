"""
Negotiation state machine.

WHAT: Owns `status`, validates every transition and applies its side effects
WHY: Status must move monotonically and terminal states must stay terminal
HOW: Explicit transition map; each trigger checks everything before it mutates
"""

from datetime import datetime
from typing import Optional

from ..models.negotiation import (
    AcceptancePayload,
    CancellationPayload,
    ExpiryPayload,
    Negotiation,
    NegotiationStatus,
    ParticipantRole,
    RejectionPayload,
    StatusPayload,
    TERMINAL_STATUSES,
    TimelineEventKind,
    TimelinePayload,
)
from ..utils.exceptions import InvalidTransitionError, NegotiationClosedError
from . import analytics, timeline_auditor


# Every allowed (from -> to) edge. Terminal states have no outgoing edges.
TRANSITIONS: dict[NegotiationStatus, frozenset[NegotiationStatus]] = {
    NegotiationStatus.INITIATED: frozenset({
        NegotiationStatus.IN_PROGRESS,
        NegotiationStatus.CANCELLED,
        NegotiationStatus.EXPIRED,
    }),
    NegotiationStatus.IN_PROGRESS: frozenset({
        NegotiationStatus.COMPLETED,
        NegotiationStatus.REJECTED,
        NegotiationStatus.CANCELLED,
        NegotiationStatus.EXPIRED,
    }),
    NegotiationStatus.COMPLETED: frozenset(),
    NegotiationStatus.CANCELLED: frozenset(),
    NegotiationStatus.EXPIRED: frozenset(),
    NegotiationStatus.REJECTED: frozenset(),
}


def can_transition(current: NegotiationStatus, target: NegotiationStatus) -> bool:
    return target in TRANSITIONS[current]


def deadline_elapsed(negotiation: Negotiation, now: datetime) -> bool:
    """True once `expires_at` lies strictly in the past."""
    return negotiation.expires_at < now


def can_continue(negotiation: Negotiation, now: datetime) -> bool:
    """Read-only predicate: in progress, rounds left, deadline not passed."""
    return negotiation.can_continue(now)


def _ensure_edge(negotiation: Negotiation, target: NegotiationStatus, reason: Optional[str] = None) -> None:
    if not can_transition(negotiation.status, target):
        raise InvalidTransitionError(
            negotiation.id,
            negotiation.status.value,
            target.value,
            reason,
        )


def transition(
    negotiation: Negotiation,
    target: NegotiationStatus,
    actor: ParticipantRole,
    kind: TimelineEventKind,
    details: str,
    payload: TimelinePayload,
    now: datetime,
) -> None:
    """Move along one edge of the map, recording the timeline entry and analytics."""
    _ensure_edge(negotiation, target)
    old = negotiation.status
    negotiation.status = target
    negotiation.updated_at = now
    timeline_auditor.record(negotiation, kind, actor, details, payload, now)
    analytics.on_status_changed(negotiation, old, target, now)


def _ensure_open(negotiation: Negotiation, now: datetime) -> None:
    """Accept/reject on an expired negotiation is a closed-negotiation error."""
    if negotiation.status == NegotiationStatus.EXPIRED or (
        negotiation.status not in TERMINAL_STATUSES and deadline_elapsed(negotiation, now)
    ):
        raise NegotiationClosedError(negotiation.id, NegotiationStatus.EXPIRED.value)


def start(negotiation: Negotiation, actor: ParticipantRole, now: datetime) -> None:
    """initiated -> in_progress, triggered by the first appended event."""
    transition(
        negotiation,
        NegotiationStatus.IN_PROGRESS,
        actor,
        TimelineEventKind.STATUS_CHANGED,
        "Negotiation is now in progress",
        StatusPayload(from_status=NegotiationStatus.INITIATED, to_status=NegotiationStatus.IN_PROGRESS),
        now,
    )


def accept_offer(negotiation: Negotiation, actor: ParticipantRole, now: datetime) -> None:
    """in_progress -> completed; finalizes the price at the current offer."""
    _ensure_open(negotiation, now)
    if negotiation.status != NegotiationStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            negotiation.id, negotiation.status.value, NegotiationStatus.COMPLETED.value,
            "negotiation is not in progress",
        )
    if negotiation.pricing.current_offer is None:
        raise InvalidTransitionError(
            negotiation.id, negotiation.status.value, NegotiationStatus.COMPLETED.value,
            "there is no current offer to accept",
        )

    final_price = negotiation.pricing.current_offer
    negotiation.pricing.final_price = final_price
    negotiation.completed_at = now
    transition(
        negotiation,
        NegotiationStatus.COMPLETED,
        actor,
        TimelineEventKind.OFFER_ACCEPTED,
        f"Offer accepted at {final_price:.2f} {negotiation.pricing.currency}",
        AcceptancePayload(final_price=final_price, rounds=negotiation.rounds),
        now,
    )


def reject_offer(
    negotiation: Negotiation,
    actor: ParticipantRole,
    reason: Optional[str],
    now: datetime,
) -> None:
    """in_progress -> rejected; no price is finalized."""
    _ensure_open(negotiation, now)
    if negotiation.status != NegotiationStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            negotiation.id, negotiation.status.value, NegotiationStatus.REJECTED.value,
            "negotiation is not in progress",
        )
    transition(
        negotiation,
        NegotiationStatus.REJECTED,
        actor,
        TimelineEventKind.OFFER_REJECTED,
        reason or "Offer rejected",
        RejectionPayload(reason=reason),
        now,
    )


def cancel(
    negotiation: Negotiation,
    actor: ParticipantRole,
    actor_id: str,
    reason: Optional[str],
    now: datetime,
) -> None:
    """Any non-terminal status -> cancelled."""
    if negotiation.status not in TERMINAL_STATUSES and deadline_elapsed(negotiation, now):
        raise InvalidTransitionError(
            negotiation.id, NegotiationStatus.EXPIRED.value, NegotiationStatus.CANCELLED.value,
            "negotiation has expired",
        )
    _ensure_edge(negotiation, NegotiationStatus.CANCELLED)

    negotiation.cancelled_at = now
    negotiation.cancelled_by = actor_id
    negotiation.cancellation_reason = reason
    transition(
        negotiation,
        NegotiationStatus.CANCELLED,
        actor,
        TimelineEventKind.CANCELLED,
        reason or "Negotiation cancelled",
        CancellationPayload(cancelled_by=actor_id, reason=reason),
        now,
    )


def expire(negotiation: Negotiation, now: datetime) -> None:
    """Non-terminal -> expired, once the deadline has passed."""
    _ensure_edge(negotiation, NegotiationStatus.EXPIRED)
    if not deadline_elapsed(negotiation, now):
        raise InvalidTransitionError(
            negotiation.id, negotiation.status.value, NegotiationStatus.EXPIRED.value,
            "deadline has not passed",
        )
    transition(
        negotiation,
        NegotiationStatus.EXPIRED,
        ParticipantRole.SYSTEM,
        TimelineEventKind.EXPIRED,
        f"Negotiation expired at {negotiation.expires_at.isoformat()}",
        ExpiryPayload(expires_at=negotiation.expires_at),
        now,
    )
