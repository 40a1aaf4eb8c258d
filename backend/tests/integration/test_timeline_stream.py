"""
Integration tests for the SSE timeline stream.

WHAT: Test the event generator behind /negotiations/{id}/timeline/stream
WHY: Notification consumers depend on entry order, resume cursors and closing
HOW: Drive the async generator directly against the test manager
"""

import json

import pytest

from haggle.api.v1.endpoints.streaming import timeline_event_generator
from tests.fixtures.negotiations import OUTSIDER, REQUESTER, RESPONDER


async def collect(manager, negotiation_id, actor_id, cursor=None):
    return [
        event async for event in timeline_event_generator(manager, negotiation_id, actor_id, cursor)
    ]


@pytest.fixture
def cancelled_negotiation(manager):
    negotiation = manager.create(REQUESTER, "listing-1", 100.0)
    manager.make_offer(negotiation.id, RESPONDER, 120.0)
    return manager.cancel(negotiation.id, REQUESTER, reason="Found another one")


@pytest.mark.integration
@pytest.mark.api
class TestTimelineStream:
    """Test timeline SSE generation."""

    @pytest.mark.asyncio
    async def test_streams_entries_then_closes(self, manager, cancelled_negotiation):
        events = await collect(manager, cancelled_negotiation.id, REQUESTER)

        assert [e["event"] for e in events] == [
            "connected", "initiated", "offer_made", "status_changed", "cancelled", "closed",
        ]
        assert [e.get("id") for e in events[1:-1]] == ["0", "1", "2", "3"]
        assert json.loads(events[2]["data"])["payload"]["amount"] == 120.0
        assert json.loads(events[-1]["data"])["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cursor_skips_seen_entries(self, manager, cancelled_negotiation):
        events = await collect(manager, cancelled_negotiation.id, RESPONDER, cursor=2)
        assert [e["event"] for e in events] == ["connected", "cancelled", "closed"]

    @pytest.mark.asyncio
    async def test_unknown_negotiation_yields_error(self, manager):
        events = await collect(manager, "missing", REQUESTER)

        assert [e["event"] for e in events] == ["connected", "error"]
        assert json.loads(events[-1]["data"])["error"] == "NEGOTIATION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_outsider_yields_error(self, manager, cancelled_negotiation):
        events = await collect(manager, cancelled_negotiation.id, OUTSIDER)
        assert json.loads(events[-1]["data"])["error"] == "UNAUTHORIZED"
