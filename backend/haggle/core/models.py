"""
ORM models for negotiation persistence.

WHAT: One table holding each negotiation as a JSON document
WHY: The aggregate is read and written as a unit; queries need a few columns
HOW: JSON document column plus indexed participant, status, deadline and
     version columns kept in sync with the document on every write
"""

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, CheckConstraint, Index, Enum as SQLEnum
)

from .database import Base
from ..models.negotiation import NegotiationStatus


class NegotiationRecord(Base):
    """
    Negotiations table.

    WHAT: Stored negotiation aggregate
    WHY: Single-row writes make each unit of work atomic
    HOW: `document` is the pydantic JSON dump; `version` drives compare-and-set
    """
    __tablename__ = "negotiations"

    id = Column(String(36), primary_key=True)
    listing_id = Column(String(100), nullable=False)
    requester_id = Column(String(100), nullable=False)
    responder_id = Column(String(100), nullable=False)
    status = Column(SQLEnum(NegotiationStatus), nullable=False, default=NegotiationStatus.INITIATED)
    # Naive UTC so SQLite compares consistently
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    version = Column(Integer, nullable=False, default=0)
    document = Column(JSON, nullable=False)

    __table_args__ = (
        CheckConstraint("version >= 0", name="check_version_non_negative"),
        Index("idx_negotiation_listing_requester", "listing_id", "requester_id"),
        Index("idx_negotiation_requester_status", "requester_id", "status"),
        Index("idx_negotiation_responder_status", "responder_id", "status"),
        Index("idx_negotiation_status_expires", "status", "expires_at"),
    )

    def __repr__(self):
        return f"<NegotiationRecord(id={self.id}, status={self.status}, version={self.version})>"
