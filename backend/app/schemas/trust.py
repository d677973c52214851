"""
Pydantic schemas for trust scores.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from app.models.trust import TrustEventKind


class TrustAdjustment(BaseModel):
    """Schema for a manual admin adjustment."""
    user_id: int
    adjustment: int = Field(..., ge=-50, le=50)
    reason: str = Field(..., min_length=10, max_length=500)
    deal_id: Optional[int] = None


class TrustScoreUpdateResponse(BaseModel):
    id: int
    user_id: int
    previous_score: int
    new_score: int
    kind: TrustEventKind
    reason: str
    deal_id: Optional[int] = None
    adjusted_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TrustScoreResponse(BaseModel):
    """Current score with its history, newest first."""
    user_id: int
    username: str
    trust_score: int
    history: List[TrustScoreUpdateResponse] = []
