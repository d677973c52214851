"""
Tests for milestone transitions.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest
from app.core.exceptions import AlreadySettled, InvalidTransition, Unauthorized, ValidationError
from app.models.deal import DealStatus, MilestoneStatus, MilestoneTransition
from app.models.dispute import Dispute, DisputeReason
from app.services.milestone_service import get_milestone_history


def test_approve_twice_is_already_settled(funded_deal, milestone_action, buyer, seller, ledger):
    deal = funded_deal()
    milestone = deal.milestones[0]
    milestone_action(milestone.id, seller, "complete")
    milestone_action(milestone.id, buyer, "approve")

    with pytest.raises(AlreadySettled):
        milestone_action(milestone.id, buyer, "approve")
    assert len(ledger.calls_of("release")) == 1
    assert milestone.released_amount == Decimal("600")


def test_only_buyer_approves_and_only_seller_delivers(funded_deal, milestone_action, buyer, seller, outsider):
    deal = funded_deal()
    milestone = deal.milestones[0]

    with pytest.raises(Unauthorized):
        milestone_action(milestone.id, buyer, "complete")
    milestone_action(milestone.id, seller, "complete")
    with pytest.raises(Unauthorized):
        milestone_action(milestone.id, seller, "approve")
    with pytest.raises(Unauthorized):
        milestone_action(milestone.id, outsider, "approve")


def test_illegal_milestone_transition(funded_deal, milestone_action, buyer, seller):
    deal = funded_deal()
    milestone = deal.milestones[0]

    with pytest.raises(InvalidTransition):
        milestone_action(milestone.id, buyer, "approve")
    with pytest.raises(InvalidTransition):
        milestone_action(milestone.id, buyer, "dispute", reason="Nothing delivered yet")
    assert milestone.status == MilestoneStatus.PENDING


def test_milestones_frozen_until_funded(create_deal, deal_action, milestone_action, seller):
    deal = create_deal()
    deal_action(deal.id, seller, "accept")

    with pytest.raises(InvalidTransition):
        milestone_action(deal.milestones[0].id, seller, "start")


def test_resolve_cannot_be_requested(funded_deal, milestone_action, buyer):
    deal = funded_deal()
    with pytest.raises(ValidationError):
        milestone_action(deal.milestones[0].id, buyer, "resolve")


def test_late_delivery_costs_seller_a_point(db, funded_deal, milestone_action, seller):
    overdue = date.today() - timedelta(days=3)
    deal = funded_deal((600, 400), due_dates=[overdue, None])

    milestone_action(deal.milestones[0].id, seller, "complete")
    db.refresh(seller)
    assert seller.trust_score == 49

    milestone_action(deal.milestones[1].id, seller, "complete")
    db.refresh(seller)
    assert seller.trust_score == 49


def test_dispute_requires_reason_and_opens_dispute(db, funded_deal, milestone_action, buyer, seller, events):
    deal = funded_deal()
    milestone = deal.milestones[0]
    milestone_action(milestone.id, seller, "complete")

    with pytest.raises(ValidationError):
        milestone_action(milestone.id, buyer, "dispute")

    milestone_action(milestone.id, buyer, "dispute", reason="Delivered files are corrupted")
    assert milestone.status == MilestoneStatus.DISPUTED
    assert deal.status == DealStatus.IN_PROGRESS

    dispute = db.query(Dispute).filter(Dispute.milestone_id == milestone.id).one()
    assert dispute.reason == DisputeReason.OTHER
    assert dispute.description == "Delivered files are corrupted"
    assert len(events.of_kind("dispute_opened")) == 1

    with pytest.raises(InvalidTransition):
        milestone_action(milestone.id, buyer, "approve")


def test_admin_override_records_reason(db, funded_deal, milestone_action, admin, buyer, seller, events):
    deal = funded_deal()
    milestone = deal.milestones[0]

    with pytest.raises(ValidationError):
        milestone_action(milestone.id, admin, "complete")
    assert db.query(MilestoneTransition).count() == 0

    milestone_action(milestone.id, admin, "complete", reason="Seller unreachable, admin forcing delivery")
    assert milestone.status == MilestoneStatus.COMPLETED

    audit = db.query(MilestoneTransition).filter(MilestoneTransition.milestone_id == milestone.id).one()
    assert audit.actor_id == admin.id
    assert audit.action == "complete"
    assert audit.from_status == MilestoneStatus.PENDING
    assert audit.to_status == MilestoneStatus.COMPLETED
    assert audit.reason == "Seller unreachable, admin forcing delivery"

    changed = events.of_kind("milestone_status_changed")
    assert changed[-1].reason == "Seller unreachable, admin forcing delivery"


def test_milestone_history(funded_deal, milestone_action, db, buyer, seller, outsider):
    deal = funded_deal()
    milestone = deal.milestones[0]
    milestone_action(milestone.id, seller, "complete")
    milestone_action(milestone.id, buyer, "approve")

    history = get_milestone_history(milestone.id, buyer, db)
    assert [row.action for row in history] == ["complete", "approve"]
    assert history[-1].to_status == MilestoneStatus.APPROVED

    with pytest.raises(Unauthorized):
        get_milestone_history(milestone.id, outsider, db)
