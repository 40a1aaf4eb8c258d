"""
Conversation history truncation utilities.

WHAT: Truncate a negotiation's ledger before it goes into an agent prompt
WHY: LLM context windows are limited, need to stay within character limits
HOW: Keep the most recent visible events while respecting character limits
"""

from typing import List

from ..models.negotiation import Event
from ..utils.logger import get_logger

logger = get_logger(__name__)


def truncate_event_history(
    events: List[Event],
    max_messages: int = 5,
    max_chars: int = 4000
) -> List[Event]:
    """
    Most recent non-deleted events that fit the limits.

    Strategy:
    1. Drop deleted events
    2. Keep the most recent `max_messages`
    3. Remove the oldest while over `max_chars`, always keeping the newest one

    Args:
        events: Ledger in order
        max_messages: Maximum number of events to keep
        max_chars: Maximum total characters across all kept events

    Returns:
        Truncated list of events, still in ledger order
    """
    visible = [e for e in events if not e.is_deleted]
    if not visible or max_messages <= 0:
        return []

    truncated = visible[-max_messages:]
    total_chars = sum(len(e.content) for e in truncated)

    while total_chars > max_chars and len(truncated) > 1:
        removed = truncated.pop(0)
        total_chars -= len(removed.content)
        logger.debug(
            f"Truncated event {removed.id} from history "
            f"({len(removed.content)} chars, remaining: {total_chars}/{max_chars})"
        )

    if len(truncated) < len(visible):
        logger.debug(
            f"Truncated event history: {len(visible)} -> {len(truncated)} events "
            f"({total_chars}/{max_chars} chars)"
        )

    return truncated
