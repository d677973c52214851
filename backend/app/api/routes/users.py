"""
User routes.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.schemas.trust import TrustScoreResponse
from app.schemas.user import UserResponse
from app.models.user import User
from app.api.dependencies import get_current_user
from app.services.trust_service import get_trust_history

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """Get current user information."""
    return current_user


@router.get("/{user_id}/trust-score", response_model=TrustScoreResponse)
async def get_trust_score(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a user's trust score and history (self or admin)."""
    user, updates = get_trust_history(user_id, current_user, db)
    return TrustScoreResponse(
        user_id=user.id,
        username=user.username,
        trust_score=user.trust_score,
        history=updates,
    )
