"""
Negotiation repository.

WHAT: Load, insert, compare-and-set and query stored negotiations
WHY: Each unit of work must land as one atomic single-row write
HOW: JSON document per row, `UPDATE ... WHERE version = expected` for saves,
     bounded retries with exponential backoff on transient database errors
"""

import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy import func, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session as DBSession

from .config import settings
from .database import get_db
from .models import NegotiationRecord
from ..models.negotiation import (
    Negotiation,
    NegotiationStatus,
    ParticipantRole,
    TERMINAL_STATUSES,
)
from ..utils.exceptions import (
    ConcurrencyConflictError,
    InternalError,
    NegotiationNotFoundError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = [s for s in NegotiationStatus if s not in TERMINAL_STATUSES]


def _naive_utc(value: datetime) -> datetime:
    """Indexed datetime columns hold naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_domain(record: NegotiationRecord) -> Negotiation:
    return Negotiation.model_validate(record.document)


def _columns(negotiation: Negotiation) -> dict:
    return {
        "listing_id": negotiation.listing_id,
        "requester_id": negotiation.requester_id,
        "responder_id": negotiation.responder_id,
        "status": negotiation.status,
        "expires_at": _naive_utc(negotiation.expires_at),
        "updated_at": _naive_utc(negotiation.updated_at),
        "version": negotiation.version,
        "document": negotiation.model_dump(mode="json"),
    }


class NegotiationRepository:
    """
    Storage for negotiation aggregates.

    WHAT: CRUD and queries over the negotiations table
    WHY: Keep SQLAlchemy out of the engine and the manager
    HOW: Each public method is one short session, retried on OperationalError
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _run(self, operation: str, work: Callable[[DBSession], T]) -> T:
        max_retries = settings.PERSISTENCE_MAX_RETRIES
        for attempt in range(max_retries + 1):
            try:
                with get_db(self._session_factory) as db:
                    return work(db)
            except OperationalError as e:
                if attempt >= max_retries:
                    logger.error(f"Persistence failed for {operation} after {attempt + 1} attempts: {e}")
                    raise InternalError() from e
                delay = settings.PERSISTENCE_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    f"Transient database error during {operation} "
                    f"(attempt {attempt + 1}/{max_retries + 1}), retrying in {delay}s: {e}"
                )
                time.sleep(delay)
        raise InternalError()

    # ========== Writes ==========

    def add(self, negotiation: Negotiation) -> Negotiation:
        """Insert a new negotiation."""
        def work(db: DBSession) -> Negotiation:
            record = NegotiationRecord(
                id=negotiation.id,
                created_at=_naive_utc(negotiation.created_at),
                **_columns(negotiation),
            )
            db.add(record)
            return negotiation

        return self._run("add", work)

    def save(self, negotiation: Negotiation, expected_version: int) -> Negotiation:
        """
        Replace the stored document if its version still equals `expected_version`.

        Returns the stored aggregate carrying the bumped version.

        Raises:
            ConcurrencyConflictError: someone else saved first
            NegotiationNotFoundError: the row does not exist
        """
        stored = negotiation.model_copy(update={"version": expected_version + 1})

        def work(db: DBSession) -> Negotiation:
            updated = db.query(NegotiationRecord).filter(
                NegotiationRecord.id == negotiation.id,
                NegotiationRecord.version == expected_version,
            ).update(_columns(stored), synchronize_session=False)

            if updated == 0:
                exists = db.query(NegotiationRecord.id).filter(
                    NegotiationRecord.id == negotiation.id
                ).first()
                if exists is None:
                    raise NegotiationNotFoundError(negotiation.id)
                raise ConcurrencyConflictError(negotiation.id, expected_version)
            return stored

        return self._run("save", work)

    # ========== Reads ==========

    def get(self, negotiation_id: str) -> Negotiation:
        def work(db: DBSession) -> Negotiation:
            record = db.query(NegotiationRecord).filter(
                NegotiationRecord.id == negotiation_id
            ).first()
            if record is None:
                raise NegotiationNotFoundError(negotiation_id)
            return _to_domain(record)

        return self._run("get", work)

    def find_by_participant(
        self,
        actor_id: str,
        role: Optional[ParticipantRole] = None,
        statuses: Optional[Iterable[NegotiationStatus]] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Negotiation], int]:
        """Negotiations where the actor takes part, newest activity first."""
        status_list = list(statuses or [])

        def work(db: DBSession) -> tuple[list[Negotiation], int]:
            query = db.query(NegotiationRecord)
            if role == ParticipantRole.REQUESTER:
                query = query.filter(NegotiationRecord.requester_id == actor_id)
            elif role == ParticipantRole.RESPONDER:
                query = query.filter(NegotiationRecord.responder_id == actor_id)
            else:
                query = query.filter(or_(
                    NegotiationRecord.requester_id == actor_id,
                    NegotiationRecord.responder_id == actor_id,
                ))
            if status_list:
                query = query.filter(NegotiationRecord.status.in_(status_list))

            total = query.count()
            records = query.order_by(NegotiationRecord.updated_at.desc()).offset(
                (page - 1) * limit
            ).limit(limit).all()
            return [_to_domain(r) for r in records], total

        return self._run("find_by_participant", work)

    def find_by_listing(self, listing_id: str) -> list[Negotiation]:
        def work(db: DBSession) -> list[Negotiation]:
            records = db.query(NegotiationRecord).filter(
                NegotiationRecord.listing_id == listing_id
            ).order_by(NegotiationRecord.created_at.asc()).all()
            return [_to_domain(r) for r in records]

        return self._run("find_by_listing", work)

    def find_active(self, listing_id: str, requester_id: str) -> Optional[Negotiation]:
        """The requester's non-terminal negotiation on a listing, if any."""
        def work(db: DBSession) -> Optional[Negotiation]:
            record = db.query(NegotiationRecord).filter(
                NegotiationRecord.listing_id == listing_id,
                NegotiationRecord.requester_id == requester_id,
                NegotiationRecord.status.in_(ACTIVE_STATUSES),
            ).first()
            return _to_domain(record) if record is not None else None

        return self._run("find_active", work)

    def find_expiry_candidates(self, now: datetime, limit: int = 500) -> list[str]:
        """Ids of non-terminal negotiations whose deadline has passed."""
        cutoff = _naive_utc(now)

        def work(db: DBSession) -> list[str]:
            rows = db.query(NegotiationRecord.id).filter(
                NegotiationRecord.status.in_(ACTIVE_STATUSES),
                NegotiationRecord.expires_at < cutoff,
            ).limit(limit).all()
            return [row.id for row in rows]

        return self._run("find_expiry_candidates", work)

    def statistics(self, actor_id: str) -> dict:
        """
        Aggregate figures over every negotiation the actor takes part in.

        Averages cover completed negotiations only; they are None when
        nothing has completed yet.
        """
        def work(db: DBSession) -> tuple[list, list[Negotiation]]:
            participant = or_(
                NegotiationRecord.requester_id == actor_id,
                NegotiationRecord.responder_id == actor_id,
            )
            counts = db.query(
                NegotiationRecord.status, func.count(NegotiationRecord.id)
            ).filter(participant).group_by(NegotiationRecord.status).all()
            completed_records = db.query(NegotiationRecord).filter(
                participant,
                NegotiationRecord.status == NegotiationStatus.COMPLETED,
            ).all()
            return counts, [_to_domain(r) for r in completed_records]

        counts, completed = self._run("statistics", work)

        by_status = {status.value: 0 for status in NegotiationStatus}
        for status, count in counts:
            by_status[NegotiationStatus(status).value] = count
        total = sum(by_status.values())

        def _average(values: list[float]) -> Optional[float]:
            return round(sum(values) / len(values), 2) if values else None

        return {
            "total": total,
            "by_status": by_status,
            "completed": len(completed),
            "cancelled": by_status[NegotiationStatus.CANCELLED.value],
            "success_rate": round(len(completed) / total * 100, 2) if total else 0.0,
            "average_rounds": _average([n.rounds for n in completed]),
            "average_duration_minutes": _average([
                n.analytics.duration_minutes for n in completed
                if n.analytics.duration_minutes is not None
            ]),
            "average_final_price": _average([
                n.pricing.final_price for n in completed
                if n.pricing.final_price is not None
            ]),
        }
