"""
Pydantic schemas for Deal and Milestone entities.
"""
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal

from app.models.deal import DealCategory, DealStatus, MilestoneStatus
from app.schemas.user import UserSummary


class MilestoneCreate(BaseModel):
    """Schema for a milestone in the deal plan."""
    title: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    amount: Decimal = Field(..., ge=1)
    due_date: Optional[date] = None


class DealCreate(BaseModel):
    """Schema for deal creation."""
    title: str = Field(..., min_length=5, max_length=100)
    description: str = Field(..., min_length=20, max_length=2000)
    category: DealCategory = DealCategory.OTHER
    amount: Decimal = Field(..., gt=0)
    currency: str = "USD"
    seller_id: Optional[int] = None  # Leave empty for an open offer
    milestones: List[MilestoneCreate] = Field(..., min_length=1, max_length=10)

    @model_validator(mode="after")
    def check_milestone_total(self):
        total = sum(m.amount for m in self.milestones)
        if total != self.amount:
            raise ValueError("Milestone amounts must equal total deal amount")
        return self


class DealTransitionRequest(BaseModel):
    """Schema for a requested deal action."""
    action: str
    reason: Optional[str] = None  # Required (10+ chars) when an admin acts


class MilestoneTransitionRequest(BaseModel):
    """Schema for a requested milestone action."""
    action: str
    reason: Optional[str] = None


class MilestoneResponse(BaseModel):
    """Schema for milestone response."""
    id: int
    deal_id: int
    title: str
    description: Optional[str] = None
    amount: Decimal
    order: int
    due_date: Optional[date] = None
    status: MilestoneStatus
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    released_amount: Decimal
    refunded_amount: Decimal
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DealResponse(BaseModel):
    """Schema for deal response."""
    id: int
    buyer_id: int
    seller_id: Optional[int] = None
    title: str
    description: str
    category: DealCategory
    amount: Decimal
    currency: str
    escrow_fee: Decimal
    status: DealStatus
    escrow_amount: Decimal
    released_amount: Decimal
    refunded_amount: Decimal
    hold_reference: Optional[str] = None
    funded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version_id: int
    buyer: Optional[UserSummary] = None
    seller: Optional[UserSummary] = None
    milestones: List[MilestoneResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DealTransitionResponse(BaseModel):
    """Schema for one row of the deal audit trail."""
    id: int
    deal_id: int
    actor_id: int
    action: str
    from_status: DealStatus
    to_status: DealStatus
    reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MilestoneTransitionResponse(BaseModel):
    """Schema for one row of the milestone audit trail."""
    id: int
    milestone_id: int
    deal_id: int
    actor_id: int
    action: str
    from_status: MilestoneStatus
    to_status: MilestoneStatus
    reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
