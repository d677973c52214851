"""
Deal aggregate: the deal, its milestones and its transition audit trail.
"""
from sqlalchemy import (
    Column, String, Numeric, Date, DateTime, ForeignKey, Integer, Text,
    Enum as SQLEnum, CheckConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class DealStatus(str, enum.Enum):
    """Deal status enumeration."""
    CREATED = "created"
    ACCEPTED = "accepted"
    FUNDED = "funded"
    IN_PROGRESS = "in_progress"
    MILESTONE_COMPLETED = "milestone_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


TERMINAL_DEAL_STATUSES = frozenset({
    DealStatus.COMPLETED,
    DealStatus.CANCELLED,
    DealStatus.REFUNDED,
})


class DealCategory(str, enum.Enum):
    DIGITAL_SERVICES = "digital_services"
    FREELANCING = "freelancing"
    GOODS = "goods"
    CONSULTING = "consulting"
    SOFTWARE = "software"
    DESIGN = "design"
    MARKETING = "marketing"
    WRITING = "writing"
    OTHER = "other"


class MilestoneStatus(str, enum.Enum):
    """Milestone status enumeration."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    DISPUTED = "disputed"


class Deal(BaseModel):
    """A two-party escrow agreement."""
    __tablename__ = "deals"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_deal_amount_positive"),
    )

    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # Set on accept if open
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(SQLEnum(DealCategory), default=DealCategory.OTHER, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    escrow_fee = Column(Numeric(15, 2), nullable=False)
    status = Column(SQLEnum(DealStatus), default=DealStatus.CREATED, nullable=False, index=True)

    # Escrow custody, written once on funding
    escrow_amount = Column(Numeric(15, 2), nullable=False, default=0)
    hold_reference = Column(String(100), nullable=True)
    funded_at = Column(DateTime, nullable=True)
    released_amount = Column(Numeric(15, 2), nullable=False, default=0)
    refunded_amount = Column(Numeric(15, 2), nullable=False, default=0)

    completed_at = Column(DateTime, nullable=True)
    version_id = Column(Integer, nullable=False)

    # Relationships
    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])
    milestones = relationship(
        "Milestone", back_populates="deal", order_by="Milestone.order",
        cascade="all, delete-orphan"
    )
    transitions = relationship(
        "DealTransition", back_populates="deal", order_by="DealTransition.id",
        cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def held_amount(self):
        """Escrowed funds neither released nor refunded yet."""
        return self.escrow_amount - self.released_amount - self.refunded_amount

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.buyer_id, self.seller_id)


class Milestone(BaseModel):
    """A sub-deliverable of a deal with its own approval lifecycle."""
    __tablename__ = "milestones"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_milestone_amount_positive"),
    )

    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    order = Column(Integer, nullable=False, default=1)
    due_date = Column(Date, nullable=True)
    status = Column(SQLEnum(MilestoneStatus), default=MilestoneStatus.PENDING, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)

    # Settlement of this milestone's share of the hold
    released_amount = Column(Numeric(15, 2), nullable=False, default=0)
    refunded_amount = Column(Numeric(15, 2), nullable=False, default=0)
    settled_at = Column(DateTime, nullable=True)

    # Relationships
    deal = relationship("Deal", back_populates="milestones")
    transitions = relationship(
        "MilestoneTransition", back_populates="milestone", order_by="MilestoneTransition.id",
        cascade="all, delete-orphan"
    )

    @property
    def held_amount(self):
        return self.amount - self.released_amount - self.refunded_amount


class DealTransition(BaseModel):
    """Append-only audit row for every committed deal status change."""
    __tablename__ = "deal_transitions"

    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    action = Column(String(40), nullable=False)
    from_status = Column(SQLEnum(DealStatus), nullable=False)
    to_status = Column(SQLEnum(DealStatus), nullable=False)
    reason = Column(Text, nullable=True)

    deal = relationship("Deal", back_populates="transitions")


class MilestoneTransition(BaseModel):
    """Append-only audit row for every committed milestone status change."""
    __tablename__ = "milestone_transitions"

    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=False, index=True)
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    action = Column(String(40), nullable=False)
    from_status = Column(SQLEnum(MilestoneStatus), nullable=False)
    to_status = Column(SQLEnum(MilestoneStatus), nullable=False)
    reason = Column(Text, nullable=True)

    milestone = relationship("Milestone", back_populates="transitions")
