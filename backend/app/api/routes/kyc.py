"""
KYC verification routes.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List
from app.db.session import get_db
from app.models.user import User
from app.schemas.kyc import KYCReview, KYCSubmissionResponse, KYCSubmit
from app.api.dependencies import get_current_user, get_current_admin
from app.services import kyc_service
from app.services.event_service import EventSink, get_event_sink

router = APIRouter(prefix="/kyc", tags=["kyc"])


@router.post("", response_model=KYCSubmissionResponse, status_code=status.HTTP_201_CREATED)
async def submit_kyc(
    submission: KYCSubmit,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Submit identity documents for verification."""
    return kyc_service.submit_kyc(
        current_user.id, submission.document_type, submission.document_number,
        submission.nationality, db=db,
    )


@router.get("/pending", response_model=List[KYCSubmissionResponse])
async def list_pending(
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    return kyc_service.list_pending_submissions(admin, db)


@router.post("/{submission_id}/review", response_model=KYCSubmissionResponse)
def review_kyc(
    submission_id: int,
    review: KYCReview,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink)
):
    """Approve or reject a pending submission (admin only)."""
    return kyc_service.review_kyc(
        submission_id, admin.id, review.approve, reason=review.reason, db=db, events=events,
    )
