"""Models package - Import all models for SQLAlchemy registration."""
from app.models.user import User, UserRole, KYCStatus
from app.models.deal import (
    Deal, DealStatus, DealCategory, Milestone, MilestoneStatus, DealTransition,
    MilestoneTransition
)
from app.models.ledger import LedgerEntry, LedgerEntryKind
from app.models.dispute import (
    Dispute, DisputeEvidence, DisputeReason, DisputeStatus, EvidenceType
)
from app.models.trust import TrustScoreUpdate, TrustEventKind
from app.models.kyc import KYCSubmission, KYCDocumentType

__all__ = [
    "User",
    "UserRole",
    "KYCStatus",
    "Deal",
    "DealStatus",
    "DealCategory",
    "Milestone",
    "MilestoneStatus",
    "DealTransition",
    "MilestoneTransition",
    "LedgerEntry",
    "LedgerEntryKind",
    "Dispute",
    "DisputeEvidence",
    "DisputeReason",
    "DisputeStatus",
    "EvidenceType",
    "TrustScoreUpdate",
    "TrustEventKind",
    "KYCSubmission",
    "KYCDocumentType",
]
