"""
Timeline auditor.

WHAT: Append human-readable lifecycle entries to a negotiation's timeline
WHY: Notification and audit consumers read the timeline, business rules never do
HOW: Purely additive writer; one entry per append, transition, creation or deletion
"""

from datetime import datetime

from ..models.negotiation import (
    Negotiation,
    ParticipantRole,
    TimelineEntry,
    TimelineEventKind,
    TimelinePayload,
)


def record(
    negotiation: Negotiation,
    kind: TimelineEventKind,
    actor: ParticipantRole,
    details: str,
    payload: TimelinePayload,
    now: datetime,
) -> TimelineEntry:
    """Append one timeline entry and return it."""
    entry = TimelineEntry(
        event=kind,
        actor=actor,
        timestamp=now,
        details=details,
        payload=payload,
    )
    negotiation.timeline.append(entry)
    return entry


def entries_since(negotiation: Negotiation, cursor: int | None = None) -> list[tuple[int, TimelineEntry]]:
    """Timeline entries after `cursor` (an index), paired with their index."""
    start = 0 if cursor is None else cursor + 1
    return [(i, negotiation.timeline[i]) for i in range(max(start, 0), len(negotiation.timeline))]
