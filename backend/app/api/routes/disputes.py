"""
Dispute routes.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional
from app.db.session import get_db
from app.models.dispute import DisputeStatus
from app.models.user import User
from app.schemas.dispute import (
    DisputeCreate, DisputeResolve, DisputeResponse, DisputeStatusUpdate,
    EvidenceCreate, EvidenceResponse
)
from app.api.dependencies import get_current_user, get_current_admin
from app.services import dispute_service
from app.services.event_service import EventSink, get_event_sink
from app.services.ledger_service import LedgerGateway, get_ledger_gateway

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
def open_dispute(
    dispute_data: DisputeCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink)
):
    """Open a dispute on a deal or one of its milestones."""
    return dispute_service.open_dispute(
        dispute_data.deal_id, current_user.id, dispute_data.reason, dispute_data.description,
        milestone_id=dispute_data.milestone_id, db=db, events=events,
    )


@router.get("", response_model=List[DisputeResponse])
async def list_disputes(
    deal_id: Optional[int] = None,
    status_filter: Optional[DisputeStatus] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return dispute_service.list_disputes(current_user, db, deal_id=deal_id, status=status_filter)


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get dispute by ID."""
    return dispute_service.get_dispute(dispute_id, current_user, db)


@router.post("/{dispute_id}/evidence", response_model=EvidenceResponse, status_code=status.HTTP_201_CREATED)
async def add_evidence(
    dispute_id: int,
    evidence_data: EvidenceCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Attach evidence to an open dispute."""
    return dispute_service.add_evidence(
        dispute_id, current_user.id, evidence_data.type, evidence_data.description,
        file_url=evidence_data.file_url, db=db,
    )


@router.patch("/{dispute_id}/status", response_model=DisputeResponse)
async def update_dispute_status(
    dispute_id: int,
    update: DisputeStatusUpdate,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Move a dispute through investigation (admin only)."""
    return dispute_service.update_dispute_status(dispute_id, admin.id, update.status, db=db)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
def resolve_dispute(
    dispute_id: int,
    resolution: DisputeResolve,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger_gateway),
    events: EventSink = Depends(get_event_sink)
):
    """Resolve a dispute and settle the escrowed funds (admin only)."""
    return dispute_service.resolve_dispute(
        dispute_id, admin.id, resolution.outcome, resolution.justification,
        split_ratio=resolution.split_ratio, db=db, ledger=ledger, events=events,
    )
