"""
SSE timeline stream.

WHAT: Server-Sent Events feed of a negotiation's timeline
WHY: Notification consumers get lifecycle entries as they happen
HOW: EventSourceResponse over a generator that polls the timeline after a
     cursor and stops once the negotiation is terminal
"""

import asyncio
import json
from datetime import datetime
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sse_starlette.sse import EventSourceResponse

from ....core.config import settings
from ....core.negotiation_manager import NegotiationManager, get_negotiation_manager
from ....utils.exceptions import APIException
from ....utils.logger import get_logger
from .negotiation import get_actor_id

logger = get_logger(__name__)

router = APIRouter()


async def timeline_event_generator(
    manager: NegotiationManager,
    negotiation_id: str,
    actor_id: str,
    cursor: Optional[int],
    request: Optional[Request] = None,
) -> AsyncIterator[dict]:
    """
    Generate SSE events for one negotiation's timeline.

    Args:
        manager: Negotiation manager
        negotiation_id: Negotiation to follow
        actor_id: Participant reading the feed
        cursor: Last timeline index the client has seen

    Yields:
        SSE event dicts, one per timeline entry, then a closing event
    """
    logger.info(f"Starting timeline stream for {negotiation_id} (cursor={cursor})")

    yield {
        "event": "connected",
        "data": json.dumps({
            "type": "connected",
            "negotiation_id": negotiation_id,
            "timestamp": datetime.now().isoformat()
        })
    }

    try:
        while True:
            if request is not None and await request.is_disconnected():
                logger.info(f"Client left timeline stream for {negotiation_id}")
                break

            negotiation, _ = manager.get(negotiation_id, actor_id)
            for index, entry in manager.timeline(negotiation_id, actor_id, cursor):
                cursor = index
                yield {
                    "event": entry.event.value,
                    "id": str(index),
                    "data": entry.model_dump_json()
                }

            if negotiation.is_terminal:
                yield {
                    "event": "closed",
                    "data": json.dumps({
                        "type": "closed",
                        "negotiation_id": negotiation_id,
                        "status": negotiation.status.value,
                        "timestamp": datetime.now().isoformat()
                    })
                }
                break

            await asyncio.sleep(settings.SSE_POLL_INTERVAL)

    except APIException as e:
        logger.error(f"Error in timeline stream for {negotiation_id}: {e.message}")
        yield {
            "event": "error",
            "data": json.dumps({
                "type": "error",
                "error": e.code,
                "message": e.message,
                "timestamp": datetime.now().isoformat()
            })
        }
    finally:
        logger.info(f"Timeline stream ended for {negotiation_id}")


@router.get("/negotiations/{negotiation_id}/timeline/stream")
async def stream_timeline(
    negotiation_id: str,
    request: Request,
    cursor: Optional[int] = Query(default=None, ge=-1),
    last_event_id: Optional[str] = Header(default=None),
    actor_id: str = Depends(get_actor_id),
    manager: NegotiationManager = Depends(get_negotiation_manager),
):
    """
    Stream timeline entries via SSE.

    Resumes after `cursor`, or after the `Last-Event-ID` a reconnecting
    client sends back. Unknown negotiations and outsiders are rejected
    before the stream opens.
    """
    manager.get(negotiation_id, actor_id)

    if cursor is None and last_event_id is not None and last_event_id.isdigit():
        cursor = int(last_event_id)

    return EventSourceResponse(
        timeline_event_generator(manager, negotiation_id, actor_id, cursor, request),
        ping=settings.SSE_HEARTBEAT_INTERVAL,
        media_type="text/event-stream"
    )
