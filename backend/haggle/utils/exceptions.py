"""
Negotiation error taxonomy.

WHAT: Domain-specific exceptions that map to HTTP status codes
WHY: Every rejected action reports a stable kind plus a readable reason
HOW: Exception classes carrying an error code, message and optional details
"""

from typing import Optional, List, Dict, Any


class APIException(Exception):
    """Base class for negotiation errors surfaced to callers."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ValidationError(APIException):
    """Malformed input: bad amount, over-length content, bad bounds."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )


class InvalidEventKindError(ValidationError):
    """Raised when an event's kind and offer payload disagree."""

    def __init__(self, kind: str, reason: str):
        super().__init__(message=f"Invalid event of kind '{kind}': {reason}")
        self.code = "INVALID_EVENT_KIND"
        self.details = {"kind": kind}


class UnauthorizedError(APIException):
    """Raised when an actor is not a participant or not the author."""

    def __init__(self, actor_id: str, reason: str = "Actor is not a participant in this negotiation"):
        super().__init__(
            message=reason,
            code="UNAUTHORIZED",
            details={"actor_id": actor_id}
        )


class NegotiationNotFoundError(APIException):
    """Raised when a negotiation does not exist."""

    def __init__(self, negotiation_id: str):
        super().__init__(
            message=f"Negotiation not found: {negotiation_id}",
            code="NEGOTIATION_NOT_FOUND",
            details={"negotiation_id": negotiation_id}
        )


class ListingNotFoundError(APIException):
    """Raised when the listing collaborator does not know a listing."""

    def __init__(self, listing_id: str):
        super().__init__(
            message=f"Listing not found: {listing_id}",
            code="LISTING_NOT_FOUND",
            details={"listing_id": listing_id}
        )


class EventNotFoundError(APIException):
    """Raised when an event reference is outside the ledger."""

    def __init__(self, negotiation_id: str, event_ref: int):
        super().__init__(
            message=f"Event {event_ref} not found in negotiation {negotiation_id}",
            code="EVENT_NOT_FOUND",
            details={"negotiation_id": negotiation_id, "event_ref": event_ref}
        )


class NegotiationAlreadyActiveError(APIException):
    """Raised when the requester already negotiates on the listing."""

    def __init__(self, listing_id: str, negotiation_id: str):
        super().__init__(
            message=f"An active negotiation already exists for listing {listing_id}",
            code="NEGOTIATION_ALREADY_ACTIVE",
            details={"listing_id": listing_id, "negotiation_id": negotiation_id}
        )


class NegotiationClosedError(APIException):
    """Raised when mutating a terminal or expired negotiation."""

    def __init__(self, negotiation_id: str, current_status: str):
        super().__init__(
            message=f"Negotiation {negotiation_id} is closed. Current status: {current_status}",
            code="NEGOTIATION_CLOSED",
            details={"negotiation_id": negotiation_id, "current_status": current_status}
        )


class RoundLimitExceededError(APIException):
    """Raised when an offer would push rounds past max_rounds."""

    def __init__(self, negotiation_id: str, max_rounds: int):
        super().__init__(
            message=f"Negotiation {negotiation_id} reached its limit of {max_rounds} rounds",
            code="ROUND_LIMIT_EXCEEDED",
            details={"negotiation_id": negotiation_id, "max_rounds": max_rounds}
        )


class InvalidTransitionError(APIException):
    """Raised when a status transition is not allowed."""

    def __init__(self, negotiation_id: str, current_status: str, target_status: str, reason: Optional[str] = None):
        message = f"Cannot move negotiation {negotiation_id} from {current_status} to {target_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            details={
                "negotiation_id": negotiation_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class ConcurrencyConflictError(APIException):
    """Raised when the stored version moved under the caller; retry."""

    def __init__(self, negotiation_id: str, expected_version: int):
        super().__init__(
            message=f"Negotiation {negotiation_id} was modified concurrently, retry the action",
            code="CONCURRENCY_CONFLICT",
            details={"negotiation_id": negotiation_id, "expected_version": expected_version}
        )


class AgentTimeoutError(APIException):
    """Raised at the agent boundary; converted into a system event."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Agent failed to respond: {reason}",
            code="AGENT_TIMEOUT",
            details={"reason": reason}
        )


class InternalError(APIException):
    """Raised when persistence keeps failing; hides storage details."""

    def __init__(self, message: str = "Internal error while processing the negotiation"):
        super().__init__(message=message, code="INTERNAL_ERROR")
