"""
Tests for the dispute workflow and resolutions.
"""
from decimal import Decimal

import pytest
from app.core.exceptions import InvalidTransition, Unauthorized, ValidationError
from app.models.deal import DealStatus, MilestoneStatus
from app.models.dispute import Dispute, DisputeStatus
from app.models.trust import TrustEventKind, TrustScoreUpdate
from app.services.dispute_service import (
    RollingWindowAbusePolicy, add_evidence, open_dispute, resolve_dispute,
    split_amount, update_dispute_status
)


@pytest.fixture
def open_deal_dispute(db, events):
    def _open(deal, user, description="Work was never delivered", **kwargs):
        return open_dispute(deal.id, user.id, "non_delivery", description, db=db, events=events, **kwargs)

    return _open


@pytest.fixture
def resolve(db, ledger, events):
    def _resolve(dispute, admin, outcome, justification="Reviewed both parties' evidence", split_ratio=None):
        return resolve_dispute(
            dispute.id, admin.id, outcome, justification, split_ratio=split_ratio,
            db=db, ledger=ledger, events=events,
        )

    return _resolve


def _milestone_dispute(db, milestone):
    return db.query(Dispute).filter(Dispute.milestone_id == milestone.id).one()


def test_split_amount_rounds_to_cents():
    assert split_amount(Decimal("500"), Decimal("60")) == (Decimal("300.00"), Decimal("200.00"))
    assert split_amount(Decimal("100.01"), Decimal("50")) == (Decimal("50.01"), Decimal("50.00"))


def test_milestone_split(db, funded_deal, deal_action, milestone_action, resolve,
                         admin, buyer, seller, ledger):
    deal = funded_deal((500, 500))
    first, second = deal.milestones
    milestone_action(first.id, seller, "complete")
    milestone_action(first.id, buyer, "dispute", reason="Only half of the pages were delivered")
    dispute = _milestone_dispute(db, first)

    resolve(dispute, admin, "resolved_split", split_ratio=60)

    assert dispute.status == DisputeStatus.RESOLVED_SPLIT
    assert dispute.released_amount == Decimal("300")
    assert dispute.refunded_amount == Decimal("200")
    assert first.status == MilestoneStatus.APPROVED
    assert first.settled_at is not None
    assert deal.status == DealStatus.IN_PROGRESS
    assert ledger.calls_of("release")[-1][2] == Decimal("300")
    assert ledger.calls_of("refund")[-1][2] == Decimal("200")

    milestone_action(second.id, seller, "complete")
    milestone_action(second.id, buyer, "approve")
    assert deal.status == DealStatus.MILESTONE_COMPLETED
    deal_action(deal.id, buyer, "complete")
    assert deal.status == DealStatus.COMPLETED
    assert ledger.balance(deal.hold_reference) == Decimal("0")

    # A split penalises nobody
    assert db.query(TrustScoreUpdate).filter(
        TrustScoreUpdate.kind == TrustEventKind.DISPUTE_LOST
    ).count() == 0


def test_last_milestone_resolution_completes_deal(db, funded_deal, milestone_action, resolve,
                                                 admin, buyer, seller):
    deal = funded_deal((1000,))
    milestone = deal.milestones[0]
    milestone_action(milestone.id, seller, "complete")
    milestone_action(milestone.id, buyer, "dispute", reason="Final delivery is incomplete")

    resolve(_milestone_dispute(db, milestone), admin, "resolved_seller")

    assert deal.status == DealStatus.COMPLETED
    assert deal.completed_at is not None
    assert deal.released_amount == Decimal("1000")
    db.refresh(buyer)
    assert buyer.trust_score == 45


def test_deal_split(db, funded_deal, deal_action, open_deal_dispute, resolve, admin, buyer, seller, ledger):
    deal = funded_deal()
    deal_action(deal.id, seller, "start_work")
    dispute = open_deal_dispute(deal, buyer)
    assert deal.status == DealStatus.DISPUTED

    resolve(dispute, admin, "resolved_split", split_ratio=70)

    assert deal.status == DealStatus.COMPLETED
    assert deal.completed_at is not None
    assert deal.released_amount == Decimal("700")
    assert deal.refunded_amount == Decimal("300")
    assert ledger.balance(deal.hold_reference) == Decimal("0")

    db.refresh(buyer)
    db.refresh(seller)
    assert buyer.trust_score == 50
    assert seller.trust_score == 50


def test_buyer_wins_deal_dispute(db, funded_deal, open_deal_dispute, resolve, admin, buyer, seller, ledger, events):
    deal = funded_deal()
    dispute = open_deal_dispute(deal, buyer)

    resolve(dispute, admin, "resolved_buyer")

    assert deal.status == DealStatus.REFUNDED
    assert ledger.calls_of("refund") == [("refund", deal.hold_reference, Decimal("1000"), buyer.id)]
    db.refresh(seller)
    assert seller.trust_score == 45

    resolved = events.of_kind("dispute_resolved")
    assert len(resolved) == 1
    assert resolved[0].refunded_amount == Decimal("1000")


def test_buyer_wins_milestone_dispute_refunds_remaining_hold(db, funded_deal, milestone_action, resolve,
                                                            admin, buyer, seller, ledger):
    deal = funded_deal((600, 400))
    first, second = deal.milestones
    milestone_action(first.id, seller, "complete")
    milestone_action(first.id, buyer, "approve")
    milestone_action(second.id, seller, "complete")
    milestone_action(second.id, buyer, "dispute", reason="Second delivery is missing content")

    resolve(_milestone_dispute(db, second), admin, "resolved_buyer")

    assert deal.status == DealStatus.REFUNDED
    assert ledger.calls_of("refund")[-1][2] == Decimal("400")
    assert deal.released_amount == Decimal("600")
    assert deal.refunded_amount == Decimal("400")


def test_unfunded_dispute_resolves_to_cancelled(db, create_deal, deal_action, open_deal_dispute, resolve,
                                               admin, seller, ledger):
    deal = create_deal()
    deal_action(deal.id, seller, "accept")
    dispute = open_deal_dispute(deal, seller, description="Buyer stopped responding")

    resolve(dispute, admin, "resolved_split", split_ratio=50)

    assert deal.status == DealStatus.CANCELLED
    assert ledger.calls == []


def test_milestone_dispute_waits_for_deal_dispute(db, funded_deal, deal_action, milestone_action,
                                                  open_deal_dispute, resolve, admin, buyer, seller):
    deal = funded_deal()
    milestone = deal.milestones[0]
    milestone_action(milestone.id, seller, "complete")
    milestone_action(milestone.id, buyer, "dispute", reason="Files do not open")
    milestone_dispute = _milestone_dispute(db, milestone)
    deal_dispute = open_deal_dispute(deal, seller, description="Buyer refuses to approve work")

    with pytest.raises(InvalidTransition):
        resolve(milestone_dispute, admin, "resolved_seller")

    resolve(deal_dispute, admin, "resolved_seller")
    assert deal.status == DealStatus.COMPLETED
    db.refresh(milestone_dispute)
    assert milestone_dispute.status == DisputeStatus.CLOSED


def test_resolution_is_final(funded_deal, open_deal_dispute, resolve, admin, buyer):
    deal = funded_deal()
    dispute = open_deal_dispute(deal, buyer)
    resolve(dispute, admin, "resolved_seller")

    with pytest.raises(InvalidTransition):
        resolve(dispute, admin, "resolved_buyer")


def test_resolution_validation(funded_deal, open_deal_dispute, resolve, admin, buyer):
    deal = funded_deal()
    dispute = open_deal_dispute(deal, buyer)

    with pytest.raises(Unauthorized):
        resolve(dispute, buyer, "resolved_buyer")
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "investigating")
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_split", split_ratio=100)
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_split", split_ratio="NaN")
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_split", split_ratio="Infinity")
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_split", split_ratio="99.999")
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_split")
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_seller", split_ratio=40)
    with pytest.raises(ValidationError):
        resolve(dispute, admin, "resolved_seller", justification="  ")

    assert dispute.status == DisputeStatus.OPEN
    assert deal.status == DealStatus.DISPUTED


def test_outsider_cannot_open_dispute(funded_deal, open_deal_dispute, outsider):
    deal = funded_deal()
    with pytest.raises(Unauthorized):
        open_deal_dispute(deal, outsider)


def test_dispute_not_allowed_before_acceptance(create_deal, open_deal_dispute, buyer):
    deal = create_deal()
    with pytest.raises(InvalidTransition):
        open_deal_dispute(deal, buyer)


def test_investigation_and_evidence(db, funded_deal, open_deal_dispute, admin, buyer, seller, outsider):
    deal = funded_deal()
    dispute = open_deal_dispute(deal, buyer)

    update_dispute_status(dispute.id, admin.id, "investigating", db=db)
    update_dispute_status(dispute.id, admin.id, "awaiting_response", db=db)
    assert dispute.status == DisputeStatus.AWAITING_RESPONSE

    with pytest.raises(Unauthorized):
        update_dispute_status(dispute.id, buyer.id, "investigating", db=db)
    with pytest.raises(ValidationError):
        update_dispute_status(dispute.id, admin.id, "resolved_buyer", db=db)

    evidence = add_evidence(dispute.id, seller.id, "communication", "Chat log showing delivery", db=db)
    assert evidence.submitted_by == seller.id
    with pytest.raises(Unauthorized):
        add_evidence(dispute.id, outsider.id, "other", "I saw everything", db=db)
    db.refresh(dispute)
    assert len(dispute.evidence) == 1


def test_abuse_policy_penalises_serial_disputes(db, create_deal, deal_action, open_deal_dispute, buyer, seller):
    policy = RollingWindowAbusePolicy(threshold=1, window_days=30, penalty=5)
    first = create_deal()
    second = create_deal()
    deal_action(first.id, seller, "accept")
    deal_action(second.id, seller, "accept")

    open_deal_dispute(first, buyer, abuse_policy=policy)
    db.refresh(buyer)
    assert buyer.trust_score == 50

    open_deal_dispute(second, buyer, abuse_policy=policy)
    db.refresh(buyer)
    assert buyer.trust_score == 45
    penalty = db.query(TrustScoreUpdate).filter(TrustScoreUpdate.user_id == buyer.id).one()
    assert penalty.kind == TrustEventKind.DISPUTE_ABUSE


def test_split_uses_stored_ratio_precision(db, funded_deal, open_deal_dispute, resolve, admin, buyer):
    deal = funded_deal()
    dispute = open_deal_dispute(deal, buyer)

    resolve(dispute, admin, "resolved_split", split_ratio="33.333")

    db.refresh(dispute)
    assert dispute.split_ratio == Decimal("33.33")
    assert dispute.released_amount == Decimal("333.30")
    assert dispute.refunded_amount == Decimal("666.70")
    assert deal.released_amount == split_amount(Decimal("1000"), dispute.split_ratio)[0]
