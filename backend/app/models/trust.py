"""
Trust score audit model.
"""
from sqlalchemy import Column, Integer, ForeignKey, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class TrustEventKind(str, enum.Enum):
    """Reputation events that move a trust score."""
    KYC_APPROVED = "kyc_approved"
    DEAL_COMPLETED = "deal_completed"
    MILESTONE_APPROVED = "milestone_approved"
    DISPUTE_LOST = "dispute_lost"
    DISPUTE_ABUSE = "dispute_abuse"
    LATE_DELIVERY = "late_delivery"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class TrustScoreUpdate(BaseModel):
    """Immutable record of one trust score change."""
    __tablename__ = "trust_score_updates"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    previous_score = Column(Integer, nullable=False)
    new_score = Column(Integer, nullable=False)
    kind = Column(SQLEnum(TrustEventKind), nullable=False)
    reason = Column(Text, nullable=False)
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=True, index=True)
    adjusted_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Relationships
    user = relationship("User", foreign_keys=[user_id], back_populates="trust_updates")
