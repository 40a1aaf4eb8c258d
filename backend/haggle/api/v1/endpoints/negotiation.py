"""
Negotiation endpoints.

WHAT: HTTP surface for starting, driving and inspecting negotiations
WHY: Requesters and responders act through the API; the agent runs behind it
HOW: FastAPI router delegating to the NegotiationManager; the acting user
     comes from the X-Actor-Id header, agent turns run as background tasks
"""

import math
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, status

from ....core.negotiation_manager import NegotiationManager, get_negotiation_manager
from ....models.api_schemas import (
    AnalyticsResponse,
    EditEventRequest,
    EventActionResponse,
    EventListResponse,
    MakeOfferRequest,
    NegotiationListResponse,
    NegotiationResponse,
    NegotiationSummary,
    Pagination,
    ReactionRequest,
    ReactionResponse,
    ReadResponse,
    ReasonRequest,
    SendMessageRequest,
    StartNegotiationRequest,
    StatisticsResponse,
    TimelineItem,
    TimelineResponse,
)
from ....models.negotiation import (
    EventKind,
    Negotiation,
    NegotiationStatus,
    ParticipantRole,
)
from ....utils.exceptions import UnauthorizedError
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/negotiations")


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> str:
    """Authenticated user id, injected by the gateway in front of this service."""
    if not x_actor_id or not x_actor_id.strip():
        raise UnauthorizedError("anonymous", reason="Missing X-Actor-Id header")
    return x_actor_id.strip()


def _view(manager: NegotiationManager, negotiation: Negotiation, actor_id: str) -> NegotiationResponse:
    role = negotiation.participant_role(actor_id)
    return NegotiationResponse.build(negotiation, role, manager.now())


def _schedule_agent(
    manager: NegotiationManager,
    negotiation: Negotiation,
    background_tasks: BackgroundTasks,
) -> None:
    if manager.should_run_agent(negotiation):
        logger.info(f"Scheduling agent turn for negotiation {negotiation.id}")
        background_tasks.add_task(manager.run_agent_turn, negotiation.id)


# ========== Collection ==========

@router.post("/start", response_model=NegotiationResponse, status_code=status.HTTP_201_CREATED)
async def start_negotiation(
    request: StartNegotiationRequest,
    background_tasks: BackgroundTasks,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """
    Start a negotiation.

    WHAT: Open a negotiation on a listing with an initial offer
    WHY: Entry point for the requester
    HOW: Validate against listing terms, persist, optionally wake the agent
    """
    negotiation = manager.create(
        requester_id=actor_id,
        listing_id=request.listing_id,
        initial_offer=request.initial_offer,
        message=request.message,
        max_rounds=request.max_rounds,
    )
    _schedule_agent(manager, negotiation, background_tasks)
    return _view(manager, negotiation, actor_id)


@router.get("", response_model=NegotiationListResponse)
async def list_negotiations(
    role: Optional[Literal["requester", "responder"]] = Query(default=None),
    status_filter: Optional[List[NegotiationStatus]] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """List the caller's negotiations, newest activity first."""
    participant_role = ParticipantRole(role) if role else None
    negotiations, total = manager.list_for_actor(
        actor_id, role=participant_role, statuses=status_filter, page=page, limit=limit
    )
    return NegotiationListResponse(
        items=[NegotiationSummary.from_negotiation(n) for n in negotiations],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.get("/statistics", response_model=StatisticsResponse)
async def negotiation_statistics(
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Aggregate figures over the caller's negotiations."""
    return StatisticsResponse(**manager.statistics(actor_id))


# ========== Single negotiation ==========

@router.get("/{negotiation_id}", response_model=NegotiationResponse)
async def get_negotiation(
    negotiation_id: str,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Fetch a negotiation; an overdue one is expired first."""
    negotiation, _ = manager.get(negotiation_id, actor_id)
    return _view(manager, negotiation, actor_id)


@router.get("/{negotiation_id}/events", response_model=EventListResponse)
async def list_events(
    negotiation_id: str,
    cursor: Optional[int] = Query(default=None, ge=-1),
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Events after `cursor` in ledger order."""
    events = manager.list_events(negotiation_id, actor_id, cursor)
    next_cursor = events[-1].id if events else cursor
    return EventListResponse(events=events, cursor=next_cursor)


@router.post("/{negotiation_id}/message", response_model=EventActionResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    negotiation_id: str,
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Append a text, acceptance or rejection event."""
    negotiation, event = manager.send_message(
        negotiation_id, actor_id, request.content, kind=EventKind(request.kind)
    )
    _schedule_agent(manager, negotiation, background_tasks)
    return EventActionResponse(event=event, negotiation=_view(manager, negotiation, actor_id))


@router.post("/{negotiation_id}/offer", response_model=EventActionResponse, status_code=status.HTTP_201_CREATED)
async def make_offer(
    negotiation_id: str,
    request: MakeOfferRequest,
    background_tasks: BackgroundTasks,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Append an offer or counter-offer event."""
    negotiation, event = manager.make_offer(
        negotiation_id,
        actor_id,
        request.amount,
        content=request.message,
        kind=EventKind(request.kind) if request.kind else None,
        currency=request.currency,
    )
    _schedule_agent(manager, negotiation, background_tasks)
    return EventActionResponse(event=event, negotiation=_view(manager, negotiation, actor_id))


@router.post("/{negotiation_id}/accept", response_model=NegotiationResponse)
async def accept_offer(
    negotiation_id: str,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Accept the current offer and complete the negotiation."""
    negotiation = manager.accept_offer(negotiation_id, actor_id)
    return _view(manager, negotiation, actor_id)


@router.post("/{negotiation_id}/reject", response_model=NegotiationResponse)
async def reject_offer(
    negotiation_id: str,
    request: Optional[ReasonRequest] = None,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Reject and close the negotiation."""
    reason = request.reason if request else None
    negotiation = manager.reject_offer(negotiation_id, actor_id, reason=reason)
    return _view(manager, negotiation, actor_id)


@router.post("/{negotiation_id}/cancel", response_model=NegotiationResponse)
async def cancel_negotiation(
    negotiation_id: str,
    request: Optional[ReasonRequest] = None,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Cancel a negotiation that is not yet closed."""
    reason = request.reason if request else None
    negotiation = manager.cancel(negotiation_id, actor_id, reason=reason)
    return _view(manager, negotiation, actor_id)


@router.post("/{negotiation_id}/read", response_model=ReadResponse)
async def mark_read(
    negotiation_id: str,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Mark every event from the other side as read."""
    negotiation, marked = manager.mark_read(negotiation_id, actor_id)
    role = negotiation.participant_role(actor_id)
    return ReadResponse(marked=marked, unread_count=negotiation.unread_count_for(role))


# ========== Events ==========

@router.patch("/{negotiation_id}/events/{event_ref}", response_model=EventActionResponse)
async def edit_event(
    negotiation_id: str,
    event_ref: int,
    request: EditEventRequest,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Edit one of the caller's own text events."""
    negotiation = manager.edit_event(negotiation_id, actor_id, event_ref, request.content)
    return EventActionResponse(
        event=negotiation.events[event_ref],
        negotiation=_view(manager, negotiation, actor_id),
    )


@router.delete("/{negotiation_id}/events/{event_ref}", response_model=EventActionResponse)
async def delete_event(
    negotiation_id: str,
    event_ref: int,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Soft-delete one of the caller's own events."""
    negotiation = manager.delete_event(negotiation_id, actor_id, event_ref)
    return EventActionResponse(
        event=negotiation.events[event_ref],
        negotiation=_view(manager, negotiation, actor_id),
    )


@router.post("/{negotiation_id}/events/{event_ref}/reactions", response_model=ReactionResponse)
async def add_reaction(
    negotiation_id: str,
    event_ref: int,
    request: ReactionRequest,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """React to an event; repeating the same reaction is a no-op."""
    negotiation, added = manager.add_reaction(negotiation_id, actor_id, event_ref, request.symbol)
    return ReactionResponse(added=added, event=negotiation.events[event_ref])


# ========== Timeline and analytics ==========

@router.get("/{negotiation_id}/timeline", response_model=TimelineResponse)
async def get_timeline(
    negotiation_id: str,
    cursor: Optional[int] = Query(default=None, ge=-1),
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Lifecycle entries after `cursor`."""
    entries = manager.timeline(negotiation_id, actor_id, cursor)
    return TimelineResponse(
        entries=[TimelineItem(index=i, entry=entry) for i, entry in entries],
        cursor=entries[-1][0] if entries else cursor,
    )


@router.get("/{negotiation_id}/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    negotiation_id: str,
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """Derived metrics for one negotiation."""
    negotiation, _ = manager.get(negotiation_id, actor_id)
    return AnalyticsResponse(
        negotiation_id=negotiation.id,
        rounds=negotiation.rounds,
        max_rounds=negotiation.max_rounds,
        analytics=negotiation.analytics,
    )
