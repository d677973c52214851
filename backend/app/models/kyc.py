"""
KYC submission model.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.models.user import KYCStatus
import enum


class KYCDocumentType(str, enum.Enum):
    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"
    NATIONAL_ID = "national_id"


class KYCSubmission(BaseModel):
    """Identity document submitted for admin review."""
    __tablename__ = "kyc_submissions"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    document_type = Column(SQLEnum(KYCDocumentType), nullable=False)
    document_number = Column(String(50), nullable=False)
    nationality = Column(String(2), nullable=False)
    status = Column(SQLEnum(KYCStatus), default=KYCStatus.PENDING, nullable=False, index=True)
    rejection_reason = Column(Text, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    user = relationship("User", foreign_keys=[user_id], back_populates="kyc_submissions")
