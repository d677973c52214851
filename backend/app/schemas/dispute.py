"""
Pydantic schemas for Dispute entity.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from app.models.dispute import DisputeReason, DisputeStatus, EvidenceType


class DisputeCreate(BaseModel):
    """Schema for opening a dispute."""
    deal_id: int
    milestone_id: Optional[int] = None
    reason: DisputeReason
    description: str = Field(..., min_length=1, max_length=2000)


class DisputeStatusUpdate(BaseModel):
    status: DisputeStatus


class DisputeResolve(BaseModel):
    """Schema for an admin resolution."""
    outcome: DisputeStatus
    justification: str = Field(..., min_length=1)
    split_ratio: Optional[Decimal] = None  # Seller share in percent, split only


class EvidenceCreate(BaseModel):
    type: EvidenceType
    description: str = Field(..., min_length=1, max_length=2000)
    file_url: Optional[str] = None


class EvidenceResponse(BaseModel):
    id: int
    dispute_id: int
    submitted_by: int
    type: EvidenceType
    description: str
    file_url: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DisputeResponse(BaseModel):
    """Schema for dispute response."""
    id: int
    deal_id: int
    milestone_id: Optional[int] = None
    initiator_id: int
    reason: DisputeReason
    description: str
    status: DisputeStatus
    resolution: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    split_ratio: Optional[Decimal] = None
    released_amount: Optional[Decimal] = None
    refunded_amount: Optional[Decimal] = None
    evidence: List[EvidenceResponse] = []
    created_at: datetime

    class Config:
        from_attributes = True
