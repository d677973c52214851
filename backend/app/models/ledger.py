"""
Ledger entry model: receipts of every escrow fund movement.
"""
from sqlalchemy import Column, String, Numeric, ForeignKey, Integer, Enum as SQLEnum
from app.db.base import BaseModel
import enum


class LedgerEntryKind(str, enum.Enum):
    HOLD = "escrow_deposit"
    RELEASE = "escrow_release"
    REFUND = "escrow_refund"


class LedgerEntry(BaseModel):
    """One acknowledged hold, release or refund."""
    __tablename__ = "ledger_entries"

    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=True)
    kind = Column(SQLEnum(LedgerEntryKind), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    to_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    reference = Column(String(100), nullable=False)
    idempotency_key = Column(String(128), nullable=False, unique=True)
