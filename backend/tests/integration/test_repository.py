"""
Integration tests for the negotiation repository.

WHAT: Test inserts, compare-and-set saves, queries, statistics and retries
WHY: Every unit of work must land as one atomic, version-checked write
HOW: Real SQLAlchemy session against in-memory SQLite
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from haggle.core.config import settings
from haggle.core.models import NegotiationRecord
from haggle.models.negotiation import NegotiationStatus, ParticipantRole
from haggle.services import negotiation_engine
from haggle.utils.exceptions import (
    ConcurrencyConflictError,
    InternalError,
    NegotiationNotFoundError,
)
from tests.fixtures.negotiations import (
    OUTSIDER,
    REQUESTER,
    RESPONDER,
    START,
    message,
    new_negotiation,
    offer,
)

R = ParticipantRole.REQUESTER
S = ParticipantRole.RESPONDER


def completed(final: float, minutes: float):
    negotiation = offer(new_negotiation(), S, final, START)
    return negotiation_engine.accept_offer(negotiation, R, START + timedelta(minutes=minutes))


@pytest.mark.integration
@pytest.mark.persistence
class TestWrites:
    """Test inserts and compare-and-set saves."""

    def test_add_and_get_round_trip(self, repository):
        negotiation = offer(message(new_negotiation(), R, "Hi", START), S, 120.0, START)
        repository.add(negotiation)

        loaded = repository.get(negotiation.id)

        assert loaded.model_dump() == negotiation.model_dump()
        assert loaded.expires_at.tzinfo is not None
        assert loaded.timeline[-1].payload.type == negotiation.timeline[-1].payload.type

    def test_get_missing(self, repository):
        with pytest.raises(NegotiationNotFoundError):
            repository.get("does-not-exist")

    def test_save_bumps_version(self, repository):
        negotiation = repository.add(new_negotiation())
        updated = message(negotiation, R, "Hi", START)

        stored = repository.save(updated, negotiation.version)

        assert stored.version == 1
        assert repository.get(negotiation.id).version == 1
        assert repository.get(negotiation.id).status == NegotiationStatus.IN_PROGRESS

    def test_stale_save_conflicts_and_changes_nothing(self, repository):
        negotiation = repository.add(new_negotiation())
        first = message(negotiation, R, "First", START)
        second = message(negotiation, R, "Second", START)

        repository.save(first, negotiation.version)
        with pytest.raises(ConcurrencyConflictError):
            repository.save(second, negotiation.version)

        loaded = repository.get(negotiation.id)
        assert [e.content for e in loaded.events] == ["First"]
        assert loaded.version == 1

    def test_save_missing_row(self, repository):
        with pytest.raises(NegotiationNotFoundError):
            repository.save(new_negotiation(), 0)

    def test_indexed_columns_follow_document(self, repository, session_factory):
        negotiation = repository.add(new_negotiation())
        cancelled = negotiation_engine.cancel(negotiation, R, REQUESTER, START)
        repository.save(cancelled, 0)

        session = session_factory()
        try:
            record = session.get(NegotiationRecord, negotiation.id)
            assert record.status == NegotiationStatus.CANCELLED
            assert record.version == 1
            assert record.expires_at.tzinfo is None
            assert record.document["status"] == "cancelled"
        finally:
            session.close()


@pytest.mark.integration
@pytest.mark.persistence
class TestQueries:
    """Test participant, listing, active and expiry queries."""

    def test_find_by_participant_filters(self, repository):
        open_one = repository.add(new_negotiation())
        closed = repository.add(negotiation_engine.cancel(new_negotiation(), R, REQUESTER, START))

        mine, total = repository.find_by_participant(REQUESTER)
        assert total == 2
        assert {n.id for n in mine} == {open_one.id, closed.id}

        as_responder, total = repository.find_by_participant(REQUESTER, role=S)
        assert total == 0 and as_responder == []

        seller_view, total = repository.find_by_participant(RESPONDER, role=S)
        assert total == 2

        cancelled, total = repository.find_by_participant(
            REQUESTER, statuses=[NegotiationStatus.CANCELLED]
        )
        assert total == 1
        assert cancelled[0].id == closed.id

        assert repository.find_by_participant(OUTSIDER) == ([], 0)

    def test_find_by_participant_paginates(self, repository):
        for _ in range(5):
            repository.add(new_negotiation())

        page_two, total = repository.find_by_participant(REQUESTER, page=2, limit=2)
        assert total == 5
        assert len(page_two) == 2

    def test_find_by_listing(self, repository):
        repository.add(new_negotiation())
        repository.add(new_negotiation(listing_id="listing-2"))

        assert len(repository.find_by_listing("listing-1")) == 1
        assert repository.find_by_listing("unknown") == []

    def test_find_active_ignores_terminal(self, repository):
        repository.add(negotiation_engine.cancel(new_negotiation(), R, REQUESTER, START))
        assert repository.find_active("listing-1", REQUESTER) is None

        active = repository.add(new_negotiation())
        assert repository.find_active("listing-1", REQUESTER).id == active.id
        assert repository.find_active("listing-1", OUTSIDER) is None

    def test_find_expiry_candidates(self, repository):
        overdue = repository.add(new_negotiation(now=START - timedelta(days=10)))
        repository.add(new_negotiation())
        repository.add(negotiation_engine.cancel(
            new_negotiation(now=START - timedelta(days=10)), R, REQUESTER, START - timedelta(days=10)
        ))

        assert repository.find_expiry_candidates(START) == [overdue.id]


@pytest.mark.integration
@pytest.mark.persistence
class TestStatistics:
    """Test aggregate statistics."""

    def test_statistics(self, repository):
        repository.add(completed(120.0, 30))
        repository.add(completed(110.0, 90))
        repository.add(negotiation_engine.cancel(new_negotiation(), R, REQUESTER, START))
        repository.add(new_negotiation())

        stats = repository.statistics(REQUESTER)

        assert stats["total"] == 4
        assert stats["completed"] == 2
        assert stats["cancelled"] == 1
        assert stats["by_status"]["initiated"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["average_rounds"] == 1.0
        assert stats["average_duration_minutes"] == 60.0
        assert stats["average_final_price"] == 115.0

    def test_statistics_counts_in_database(self, repository, monkeypatch):
        for i in range(15):
            repository.add(new_negotiation())
        for i in range(6):
            repository.add(completed(100.0 + i, 10))
        for i in range(4):
            repository.add(negotiation_engine.cancel(new_negotiation(), R, REQUESTER, START))

        def no_listing(*args, **kwargs):
            raise AssertionError("statistics must not page through negotiations")

        monkeypatch.setattr(repository, "find_by_participant", no_listing)
        stats = repository.statistics(REQUESTER)

        assert stats["total"] == 25
        assert sum(stats["by_status"].values()) == stats["total"]
        assert stats["by_status"]["initiated"] == 15
        assert stats["completed"] == 6
        assert stats["cancelled"] == 4
        assert stats["success_rate"] == 24.0
        assert stats["average_final_price"] == 102.5
        assert repository.statistics(RESPONDER)["total"] == 25

    def test_statistics_empty(self, repository):
        stats = repository.statistics(OUTSIDER)
        assert stats["total"] == 0
        assert stats["success_rate"] == 0.0
        assert stats["average_rounds"] is None


@pytest.mark.integration
@pytest.mark.persistence
class TestRetries:
    """Test transient error handling."""

    def test_transient_error_retried(self, repository, monkeypatch):
        monkeypatch.setattr(settings, "PERSISTENCE_RETRY_DELAY", 0)
        attempts = []

        def work(db):
            attempts.append(1)
            if len(attempts) < 3:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return "ok"

        assert repository._run("test", work) == "ok"
        assert len(attempts) == 3

    def test_persistent_error_becomes_internal_error(self, repository, monkeypatch):
        monkeypatch.setattr(settings, "PERSISTENCE_RETRY_DELAY", 0)
        monkeypatch.setattr(settings, "PERSISTENCE_MAX_RETRIES", 2)
        attempts = []

        def work(db):
            attempts.append(1)
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        with pytest.raises(InternalError) as exc_info:
            repository._run("test", work)
        assert len(attempts) == 3
        assert "disk" not in exc_info.value.message
