"""
Milestone routes.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from app.db.session import get_db
from app.models.user import User
from app.schemas.deal import MilestoneResponse, MilestoneTransitionRequest, MilestoneTransitionResponse
from app.api.dependencies import get_current_user
from app.services import milestone_service
from app.services.event_service import EventSink, get_event_sink
from app.services.ledger_service import LedgerGateway, get_ledger_gateway

router = APIRouter(prefix="/milestones", tags=["milestones"])


@router.post("/{milestone_id}/transitions", response_model=MilestoneResponse)
def transition_milestone(
    milestone_id: int,
    request: MilestoneTransitionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger_gateway),
    events: EventSink = Depends(get_event_sink)
):
    """Apply an action (start, complete, approve, dispute) to a milestone."""
    return milestone_service.transition_milestone(
        milestone_id, current_user.id, request.action, reason=request.reason,
        db=db, ledger=ledger, events=events,
    )


@router.get("/{milestone_id}/history", response_model=List[MilestoneTransitionResponse])
async def get_milestone_history(
    milestone_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the status change audit trail of a milestone."""
    return milestone_service.get_milestone_history(milestone_id, current_user, db)
