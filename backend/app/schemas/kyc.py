"""
Pydantic schemas for KYC submissions.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from app.models.kyc import KYCDocumentType
from app.models.user import KYCStatus


class KYCSubmit(BaseModel):
    document_type: KYCDocumentType
    document_number: str = Field(..., min_length=5, max_length=50)
    nationality: str = Field(..., min_length=2, max_length=2)


class KYCReview(BaseModel):
    approve: bool
    reason: Optional[str] = None  # Required when rejecting


class KYCSubmissionResponse(BaseModel):
    id: int
    user_id: int
    document_type: KYCDocumentType
    nationality: str
    status: KYCStatus
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
