"""
Pydantic schemas for User entity.
"""
from pydantic import BaseModel, EmailStr
from datetime import datetime

from app.models.user import KYCStatus, UserRole


class UserBase(BaseModel):
    """Base user schema."""
    username: str
    email: EmailStr


class UserResponse(UserBase):
    """Schema for user response."""
    id: int
    role: UserRole
    is_active: bool
    kyc_status: KYCStatus
    trust_score: int
    created_at: datetime

    class Config:
        from_attributes = True


class UserSummary(BaseModel):
    """Public view of a deal counterparty."""
    id: int
    username: str
    trust_score: int
    kyc_status: KYCStatus

    class Config:
        from_attributes = True
