"""
Tests for trust score calculation and adjustments.
"""
import pytest
from app.core.exceptions import ConcurrencyConflict, Unauthorized, ValidationError
from app.db.session import SessionLocal
from app.models.trust import TrustEventKind, TrustScoreUpdate
from app.models.user import User
from app.services.trust_service import adjust_trust_score, calculate_trust_score, get_trust_history
from app.services.unit_of_work import UnitOfWork


def test_default_deltas():
    assert calculate_trust_score(50, TrustEventKind.KYC_APPROVED) == 60
    assert calculate_trust_score(50, TrustEventKind.DEAL_COMPLETED) == 52
    assert calculate_trust_score(50, TrustEventKind.MILESTONE_APPROVED) == 51
    assert calculate_trust_score(50, TrustEventKind.DISPUTE_LOST) == 45
    assert calculate_trust_score(50, TrustEventKind.LATE_DELIVERY) == 49


def test_score_is_clamped():
    assert calculate_trust_score(95, TrustEventKind.KYC_APPROVED) == 100
    assert calculate_trust_score(100, TrustEventKind.DEAL_COMPLETED) == 100
    assert calculate_trust_score(3, TrustEventKind.DISPUTE_LOST) == 0
    assert calculate_trust_score(10, TrustEventKind.ADMIN_ADJUSTMENT, -50) == 0


def test_penalty_magnitude_is_always_negative():
    assert calculate_trust_score(50, TrustEventKind.DISPUTE_ABUSE, 5) == 45
    assert calculate_trust_score(50, TrustEventKind.DISPUTE_ABUSE, -5) == 45


def test_admin_adjustment_bounds():
    assert calculate_trust_score(50, TrustEventKind.ADMIN_ADJUSTMENT, 50) == 100
    with pytest.raises(ValidationError):
        calculate_trust_score(50, TrustEventKind.ADMIN_ADJUSTMENT, 51)
    with pytest.raises(ValidationError):
        calculate_trust_score(50, TrustEventKind.ADMIN_ADJUSTMENT)


def test_adjust_trust_score_records_history(db, events, admin, seller):
    update = adjust_trust_score(seller.id, admin.id, 15, "Verified long-standing member", db=db, events=events)

    assert update.previous_score == 50
    assert update.new_score == 65
    assert update.adjusted_by == admin.id
    db.refresh(seller)
    assert seller.trust_score == 65

    changed = events.of_kind("trust_score_changed")
    assert len(changed) == 1
    assert changed[0].new_score == 65


def test_adjust_trust_score_requires_admin_and_reason(db, events, admin, buyer, seller):
    with pytest.raises(Unauthorized):
        adjust_trust_score(seller.id, buyer.id, 5, "Friendly bump for a friend", db=db, events=events)
    with pytest.raises(ValidationError):
        adjust_trust_score(seller.id, admin.id, 5, "short", db=db, events=events)
    with pytest.raises(ValidationError):
        adjust_trust_score(seller.id, admin.id, 0, "Nothing to change here", db=db, events=events)

    assert db.query(TrustScoreUpdate).count() == 0


def test_trust_history_visibility(db, events, admin, buyer, seller):
    adjust_trust_score(seller.id, admin.id, -10, "Repeated late deliveries", db=db, events=events)
    adjust_trust_score(seller.id, admin.id, 5, "Partial reinstatement", db=db, events=events)

    user, updates = get_trust_history(seller.id, seller, db)
    assert user.trust_score == 45
    assert [u.new_score for u in updates] == [45, 40]

    get_trust_history(seller.id, admin, db)
    with pytest.raises(Unauthorized):
        get_trust_history(seller.id, buyer, db)


def test_concurrent_adjustments_both_land(db, events, admin, seller):
    other = SessionLocal()
    try:
        # Loaded before the first adjustment commits
        stale = other.get(User, seller.id)
        assert stale.trust_score == 50

        adjust_trust_score(seller.id, admin.id, 10, "Completed identity interview", db=db, events=events)
        second = adjust_trust_score(seller.id, admin.id, -5, "Late reply to support tickets", db=other, events=events)

        assert second.previous_score == 60
        assert second.new_score == 55
    finally:
        other.close()

    db.refresh(seller)
    assert seller.trust_score == 55
    assert [e.new_score for e in events.of_kind("trust_score_changed")] == [60, 55]


def test_stale_score_write_is_a_concurrency_conflict(db, events, admin, seller):
    other = SessionLocal()
    try:
        stale = other.get(User, seller.id)
        adjust_trust_score(seller.id, admin.id, 10, "Completed identity interview", db=db, events=events)

        stale.trust_score = stale.trust_score + 20
        with pytest.raises(ConcurrencyConflict):
            with UnitOfWork(other, events) as uow:
                uow.commit()
    finally:
        other.close()

    db.refresh(seller)
    assert seller.trust_score == 60
