"""
Tests for KYC submission and review.
"""
import pytest
from app.core.exceptions import InvalidTransition, Unauthorized, ValidationError
from app.models.user import KYCStatus
from app.services.kyc_service import list_pending_submissions, review_kyc, submit_kyc


def test_approval_verifies_user_and_adds_trust(db, events, admin, seller):
    submission = submit_kyc(seller.id, "passport", "X1234567", "gb", db=db)
    assert submission.status == KYCStatus.PENDING
    assert submission.nationality == "GB"
    assert [s.id for s in list_pending_submissions(admin, db)] == [submission.id]

    review_kyc(submission.id, admin.id, approve=True, db=db, events=events)

    db.refresh(seller)
    assert seller.kyc_status == KYCStatus.APPROVED
    assert seller.trust_score == 60
    assert submission.reviewed_by == admin.id
    assert events.of_kind("trust_score_changed")[0].new_score == 60

    with pytest.raises(InvalidTransition):
        review_kyc(submission.id, admin.id, approve=False, reason="Second look", db=db, events=events)
    with pytest.raises(InvalidTransition):
        submit_kyc(seller.id, "passport", "X1234567", "GB", db=db)


def test_rejection_requires_reason(db, events, admin, buyer):
    submission = submit_kyc(buyer.id, "national_id", "ID-998877", "US", db=db)

    with pytest.raises(ValidationError):
        review_kyc(submission.id, admin.id, approve=False, db=db, events=events)

    review_kyc(submission.id, admin.id, approve=False, reason="Document is expired", db=db, events=events)
    db.refresh(buyer)
    assert buyer.kyc_status == KYCStatus.REJECTED
    assert buyer.trust_score == 50
    assert submission.rejection_reason == "Document is expired"


def test_only_one_pending_submission(db, buyer):
    submit_kyc(buyer.id, "passport", "P7654321", "CA", db=db)
    with pytest.raises(InvalidTransition):
        submit_kyc(buyer.id, "passport", "P7654321", "CA", db=db)


def test_review_requires_admin(db, events, buyer, seller):
    submission = submit_kyc(seller.id, "drivers_license", "DL-55555", "US", db=db)
    with pytest.raises(Unauthorized):
        review_kyc(submission.id, buyer.id, approve=True, db=db, events=events)
