import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InvalidTransition, NotFoundError, Unauthorized, ValidationError
)
from app.core.utils import utc_now
from app.models.kyc import KYCDocumentType, KYCSubmission
from app.models.trust import TrustEventKind
from app.models.user import KYCStatus, User
from app.services.event_service import EventSink
from app.services.state_machine import load_user
from app.services.trust_service import record_trust_event
from app.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def submit_kyc(
    user_id: int,
    document_type,
    document_number: str,
    nationality: str,
    db: Session = None,
) -> KYCSubmission:
    """Submit identity documents for review."""
    user = load_user(db, user_id)
    if user.kyc_status == KYCStatus.APPROVED:
        raise InvalidTransition("KYC is already approved")
    if user.kyc_status == KYCStatus.PENDING:
        raise InvalidTransition("A KYC submission is already under review")

    try:
        document_type = KYCDocumentType(document_type)
    except ValueError:
        raise ValidationError(f"Unknown document type: {document_type}")
    document_number = (document_number or "").strip()
    if len(document_number) < 5:
        raise ValidationError("Document number must be at least 5 characters")
    nationality = (nationality or "").strip().upper()
    if len(nationality) != 2:
        raise ValidationError("Nationality must be a 2-letter country code")

    rejected = db.query(KYCSubmission).filter(
        KYCSubmission.user_id == user.id,
        KYCSubmission.status == KYCStatus.REJECTED
    ).count()
    if rejected >= settings.KYC_RESUBMISSION_LIMIT:
        raise ValidationError("KYC resubmission limit reached; contact support")

    submission = KYCSubmission(
        user_id=user.id,
        document_type=document_type,
        document_number=document_number,
        nationality=nationality,
        status=KYCStatus.PENDING,
    )
    db.add(submission)
    user.kyc_status = KYCStatus.PENDING
    db.commit()
    db.refresh(submission)

    logger.info(f"KYC submission {submission.id} received from user {user.id}")
    return submission


def list_pending_submissions(admin: User, db: Session) -> List[KYCSubmission]:
    if not admin.is_admin:
        raise Unauthorized("Admin access required")
    return db.query(KYCSubmission).filter(
        KYCSubmission.status == KYCStatus.PENDING
    ).order_by(KYCSubmission.created_at.asc(), KYCSubmission.id.asc()).all()


def review_kyc(
    submission_id: int,
    admin_id: int,
    approve: bool,
    reason: Optional[str] = None,
    db: Session = None,
    events: EventSink = None,
) -> KYCSubmission:
    """Approve or reject a pending submission. Approval earns the user trust points."""
    admin = load_user(db, admin_id)
    if not admin.is_admin:
        raise Unauthorized("Admin access required")

    with UnitOfWork(db, events) as uow:
        submission = db.query(KYCSubmission).filter(
            KYCSubmission.id == submission_id
        ).with_for_update().first()
        if not submission:
            raise NotFoundError(f"KYC submission {submission_id} not found")
        if submission.status != KYCStatus.PENDING:
            raise InvalidTransition(f"Submission was already {submission.status.value}")

        submission.reviewed_by = admin.id
        submission.reviewed_at = utc_now()
        user = submission.user

        if approve:
            submission.status = KYCStatus.APPROVED
            user.kyc_status = KYCStatus.APPROVED
            record_trust_event(
                uow, user.id, TrustEventKind.KYC_APPROVED, "KYC verification approved",
                adjusted_by=admin.id,
            )
        else:
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("A rejection reason is required")
            submission.status = KYCStatus.REJECTED
            submission.rejection_reason = reason
            user.kyc_status = KYCStatus.REJECTED

        uow.commit()

    db.refresh(submission)
    logger.info(f"KYC submission {submission_id} {submission.status.value} by admin {admin_id}")
    return submission
