"""
Trust score administration routes.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.models.user import User
from app.schemas.trust import TrustAdjustment, TrustScoreUpdateResponse
from app.api.dependencies import get_current_admin
from app.services.event_service import EventSink, get_event_sink
from app.services.trust_service import adjust_trust_score

router = APIRouter(prefix="/trust-score", tags=["trust"])


@router.post("/adjustments", response_model=TrustScoreUpdateResponse, status_code=status.HTTP_201_CREATED)
def create_adjustment(
    adjustment: TrustAdjustment,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink)
):
    """Manually adjust a user's trust score (admin only)."""
    return adjust_trust_score(
        adjustment.user_id, admin.id, adjustment.adjustment, adjustment.reason,
        db=db, events=events, deal_id=adjustment.deal_id,
    )
