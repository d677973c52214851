"""
Deal management routes.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional
from app.db.session import get_db
from app.models.deal import DealStatus
from app.models.user import User
from app.schemas.deal import (
    DealCreate, DealResponse, DealTransitionRequest, DealTransitionResponse,
    MilestoneCreate, MilestoneResponse
)
from app.api.dependencies import get_current_user
from app.services import deal_service
from app.services.event_service import EventSink, get_event_sink
from app.services.ledger_service import LedgerGateway, get_ledger_gateway

router = APIRouter(prefix="/deals", tags=["deals"])


@router.post("", response_model=DealResponse, status_code=status.HTTP_201_CREATED)
async def create_deal(
    deal_data: DealCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new deal as the buyer."""
    return deal_service.create_deal(
        buyer_id=current_user.id,
        title=deal_data.title,
        description=deal_data.description,
        category=deal_data.category,
        amount=deal_data.amount,
        currency=deal_data.currency,
        milestones=[m.model_dump() for m in deal_data.milestones],
        seller_id=deal_data.seller_id,
        db=db,
    )


@router.get("", response_model=List[DealResponse])
async def list_deals(
    status_filter: Optional[DealStatus] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List deals the current user takes part in."""
    return deal_service.list_deals(current_user, db, status=status_filter, skip=skip, limit=limit)


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(
    deal_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get deal by ID."""
    return deal_service.get_deal(deal_id, current_user, db)


@router.get("/{deal_id}/history", response_model=List[DealTransitionResponse])
async def get_deal_history(
    deal_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the status change audit trail of a deal."""
    return deal_service.get_deal_history(deal_id, current_user, db)


@router.post("/{deal_id}/transitions", response_model=DealResponse)
def transition_deal(
    deal_id: int,
    request: DealTransitionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger_gateway),
    events: EventSink = Depends(get_event_sink)
):
    """Apply an action (accept, reject, cancel, fund, start_work, complete, refund)."""
    return deal_service.transition_deal(
        deal_id, current_user.id, request.action, reason=request.reason,
        db=db, ledger=ledger, events=events,
    )


@router.post("/{deal_id}/milestones", response_model=MilestoneResponse, status_code=status.HTTP_201_CREATED)
def add_milestone(
    deal_id: int,
    milestone_data: MilestoneCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink)
):
    """Add a milestone to a deal that has not been accepted yet."""
    return deal_service.add_milestone(
        deal_id, current_user.id,
        title=milestone_data.title,
        amount=milestone_data.amount,
        description=milestone_data.description,
        due_date=milestone_data.due_date,
        db=db, events=events,
    )
