"""
Dispute models.
"""
from sqlalchemy import Column, String, Numeric, DateTime, ForeignKey, Integer, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class DisputeReason(str, enum.Enum):
    NON_DELIVERY = "non_delivery"
    QUALITY_ISSUES = "quality_issues"
    COMMUNICATION_BREAKDOWN = "communication_breakdown"
    PAYMENT_ISSUES = "payment_issues"
    FRAUDULENT_ACTIVITY = "fraudulent_activity"
    OTHER = "other"


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    AWAITING_RESPONSE = "awaiting_response"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"
    RESOLVED_SPLIT = "resolved_split"
    CLOSED = "closed"


RESOLUTION_OUTCOMES = frozenset({
    DisputeStatus.RESOLVED_BUYER,
    DisputeStatus.RESOLVED_SELLER,
    DisputeStatus.RESOLVED_SPLIT,
})

TERMINAL_DISPUTE_STATUSES = RESOLUTION_OUTCOMES | {DisputeStatus.CLOSED}


class EvidenceType(str, enum.Enum):
    SCREENSHOT = "screenshot"
    DOCUMENT = "document"
    COMMUNICATION = "communication"
    OTHER = "other"


class Dispute(BaseModel):
    """A formal disagreement over a deal, optionally scoped to one milestone."""
    __tablename__ = "disputes"

    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True, index=True)
    initiator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reason = Column(SQLEnum(DisputeReason), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(SQLEnum(DisputeStatus), default=DisputeStatus.OPEN, nullable=False, index=True)

    # Resolution, written exactly once
    resolution = Column(Text, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    split_ratio = Column(Numeric(5, 2), nullable=True)  # Seller share in percent
    released_amount = Column(Numeric(15, 2), nullable=True)
    refunded_amount = Column(Numeric(15, 2), nullable=True)

    # Relationships
    deal = relationship("Deal")
    milestone = relationship("Milestone")
    evidence = relationship(
        "DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.id",
        cascade="all, delete-orphan"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DISPUTE_STATUSES


class DisputeEvidence(BaseModel):
    __tablename__ = "dispute_evidence"

    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=False, index=True)
    submitted_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(SQLEnum(EvidenceType), nullable=False, default=EvidenceType.OTHER)
    description = Column(Text, nullable=False)
    file_url = Column(String(500), nullable=True)

    dispute = relationship("Dispute", back_populates="evidence")
