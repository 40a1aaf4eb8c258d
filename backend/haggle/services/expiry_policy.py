"""
Expiry policy.

WHAT: Decides when a negotiation's deadline has passed and expires it
WHY: Negotiations must close on their own even when nobody touches them
HOW: Lazy enforcement on every read or mutation, plus the manager's periodic sweep
"""

from datetime import datetime, timedelta
from typing import Optional

from ..core.config import settings
from ..models.negotiation import Negotiation, utcnow
from . import state_machine


def default_expiry(created_at: Optional[datetime] = None, days: Optional[int] = None) -> datetime:
    """Deadline for a new negotiation."""
    created_at = created_at or utcnow()
    days = settings.NEGOTIATION_EXPIRY_DAYS if days is None else days
    return created_at + timedelta(days=days)


def is_elapsed(negotiation: Negotiation, now: datetime) -> bool:
    """True when a non-terminal negotiation is past its deadline."""
    return not negotiation.is_terminal and state_machine.deadline_elapsed(negotiation, now)


def enforce(negotiation: Negotiation, now: datetime) -> bool:
    """
    Expire the negotiation in place if its deadline has passed.

    Returns True when a transition happened, so the caller knows to persist it.
    """
    if not is_elapsed(negotiation, now):
        return False
    state_machine.expire(negotiation, now)
    return True
