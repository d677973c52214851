"""
Dispute lifecycle: opening, investigation, evidence and binding resolution.

A dispute covers the whole deal or a single milestone. Resolution is an admin
decision that moves funds out of the hold, updates reputation and is final.
"""
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InvalidTransition, NotFoundError, Unauthorized, ValidationError
)
from app.core.utils import to_money, utc_now
from app.models.deal import Deal, DealStatus
from app.models.dispute import (
    Dispute, DisputeEvidence, DisputeReason, DisputeStatus, EvidenceType, RESOLUTION_OUTCOMES
)
from app.models.trust import TrustEventKind
from app.models.user import User
from app.services.event_service import DisputeOpened, DisputeResolved, EventSink
from app.services.ledger_service import LedgerGateway, get_ledger_gateway
from app.services.state_machine import (
    ActorRole, DealAction, MILESTONE_ACTION_ROLES, MILESTONE_ACTIVE_DEAL_STATUSES,
    MilestoneAction, apply_deal_transition, apply_milestone_transition, close_open_disputes,
    freeze_unsettled_milestones, load_deal_for_update, load_milestone, load_user,
    refund_funds, release_funds, resolve_role, sync_deal_with_milestones,
)
from app.services.trust_service import record_trust_event
from app.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

# Investigation moves between non-terminal statuses
DISPUTE_STATUS_TRANSITIONS = {
    DisputeStatus.OPEN: {DisputeStatus.INVESTIGATING, DisputeStatus.AWAITING_RESPONSE},
    DisputeStatus.INVESTIGATING: {DisputeStatus.AWAITING_RESPONSE},
    DisputeStatus.AWAITING_RESPONSE: {DisputeStatus.INVESTIGATING},
}

MIN_JUSTIFICATION_LENGTH = 10


class DisputeAbusePolicy(ABC):
    """Decides whether opening a dispute should cost the initiator reputation."""

    @abstractmethod
    def penalty_for(self, db: Session, user_id: int) -> int:
        """Points to deduct, 0 for none."""


class RollingWindowAbusePolicy(DisputeAbusePolicy):
    """Penalise users opening more than ``threshold`` disputes within ``window_days``."""

    def __init__(self, threshold: int = None, window_days: int = None, penalty: int = None):
        self.threshold = settings.DISPUTE_ABUSE_THRESHOLD if threshold is None else threshold
        self.window_days = settings.DISPUTE_ABUSE_WINDOW_DAYS if window_days is None else window_days
        self.penalty = settings.DISPUTE_ABUSE_PENALTY if penalty is None else penalty

    def penalty_for(self, db: Session, user_id: int) -> int:
        since = utc_now() - timedelta(days=self.window_days)
        opened = db.query(func.count(Dispute.id)).filter(
            Dispute.initiator_id == user_id,
            Dispute.created_at >= since
        ).scalar()
        return self.penalty if opened > self.threshold else 0


default_abuse_policy = RollingWindowAbusePolicy()


def split_amount(amount: Decimal, seller_percent: Decimal) -> Tuple[Decimal, Decimal]:
    """Split a held amount into (release to seller, refund to buyer)."""
    release = to_money(amount * seller_percent / Decimal("100"))
    return release, amount - release


def open_dispute(
    deal_id: int,
    initiator_id: int,
    reason,
    description: str,
    milestone_id: Optional[int] = None,
    db: Session = None,
    events: EventSink = None,
    abuse_policy: DisputeAbusePolicy = None,
) -> Dispute:
    """Open a dispute on a deal, or on one of its milestones when ``milestone_id`` is given."""
    try:
        reason = DisputeReason(reason)
    except ValueError:
        raise ValidationError(f"Unknown dispute reason: {reason}")
    description = (description or "").strip()
    if not description:
        raise ValidationError("Dispute description is required")

    policy = abuse_policy or default_abuse_policy

    with UnitOfWork(db, events) as uow:
        deal = load_deal_for_update(db, deal_id)
        initiator = load_user(db, initiator_id)

        if milestone_id is None:
            resolve_role(deal, initiator, frozenset({ActorRole.BUYER, ActorRole.SELLER}))
            apply_deal_transition(uow, deal, DealAction.OPEN_DISPUTE, initiator.id, reason=description)
        else:
            milestone = load_milestone(db, deal, milestone_id)
            resolve_role(deal, initiator, MILESTONE_ACTION_ROLES[MilestoneAction.DISPUTE])
            if deal.status not in MILESTONE_ACTIVE_DEAL_STATUSES:
                raise InvalidTransition(f"Milestones cannot be disputed while the deal is {deal.status.value}")
            apply_milestone_transition(
                uow, deal, milestone, MilestoneAction.DISPUTE, initiator.id, reason=description
            )

        dispute = Dispute(
            deal_id=deal.id,
            milestone_id=milestone_id,
            initiator_id=initiator.id,
            reason=reason,
            description=description,
            status=DisputeStatus.OPEN,
        )
        db.add(dispute)
        uow.flush()

        uow.emit(DisputeOpened(
            dispute_id=dispute.id,
            deal_id=deal.id,
            milestone_id=milestone_id,
            initiator_id=initiator.id,
            reason=reason,
        ))

        if not initiator.is_admin:
            penalty = policy.penalty_for(db, initiator.id)
            if penalty:
                logger.warning(f"User {initiator.id} exceeded the dispute limit; applying abuse penalty")
                record_trust_event(
                    uow, initiator.id, TrustEventKind.DISPUTE_ABUSE,
                    "Too many disputes opened in a short period",
                    deal_id=deal.id, magnitude=penalty,
                )

        uow.commit()

    db.refresh(dispute)
    logger.info(f"Dispute {dispute.id} opened on deal {deal_id} by user {initiator_id}")
    return dispute


def get_dispute(dispute_id: int, viewer: User, db: Session) -> Dispute:
    dispute = db.query(Dispute).filter(Dispute.id == dispute_id).first()
    if not dispute:
        raise NotFoundError(f"Dispute {dispute_id} not found")
    if not dispute.deal.is_party(viewer.id) and not viewer.is_admin:
        raise Unauthorized("You don't have access to this dispute")
    return dispute


def list_disputes(viewer: User, db: Session, deal_id: Optional[int] = None,
                  status: Optional[DisputeStatus] = None) -> List[Dispute]:
    query = db.query(Dispute).join(Deal, Dispute.deal_id == Deal.id)
    if not viewer.is_admin:
        query = query.filter((Deal.buyer_id == viewer.id) | (Deal.seller_id == viewer.id))
    if deal_id is not None:
        query = query.filter(Dispute.deal_id == deal_id)
    if status is not None:
        query = query.filter(Dispute.status == status)
    return query.order_by(Dispute.id.desc()).all()


def update_dispute_status(dispute_id: int, admin_id: int, status, db: Session = None) -> Dispute:
    """Move a dispute through investigation. Admin only."""
    admin = load_user(db, admin_id)
    if not admin.is_admin:
        raise Unauthorized("Admin access required")
    try:
        status = DisputeStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown dispute status: {status}")

    dispute = db.query(Dispute).filter(Dispute.id == dispute_id).first()
    if not dispute:
        raise NotFoundError(f"Dispute {dispute_id} not found")
    if dispute.is_terminal:
        raise InvalidTransition(f"Dispute {dispute.id} is already {dispute.status.value}")
    if status in RESOLUTION_OUTCOMES or status == DisputeStatus.CLOSED:
        raise ValidationError("Use the resolve endpoint to close a dispute")
    if status not in DISPUTE_STATUS_TRANSITIONS[dispute.status]:
        raise InvalidTransition(f"Cannot move dispute from {dispute.status.value} to {status.value}")

    dispute.status = status
    db.commit()
    db.refresh(dispute)

    logger.info(f"Dispute {dispute.id} moved to {status.value} by admin {admin_id}")
    return dispute


def add_evidence(
    dispute_id: int,
    submitter_id: int,
    evidence_type,
    description: str,
    file_url: Optional[str] = None,
    db: Session = None,
) -> DisputeEvidence:
    submitter = load_user(db, submitter_id)
    dispute = get_dispute(dispute_id, submitter, db)
    if dispute.is_terminal:
        raise InvalidTransition("Evidence cannot be added to a closed dispute")
    try:
        evidence_type = EvidenceType(evidence_type)
    except ValueError:
        raise ValidationError(f"Unknown evidence type: {evidence_type}")
    if not (description or "").strip():
        raise ValidationError("Evidence description is required")

    evidence = DisputeEvidence(
        dispute_id=dispute.id,
        submitted_by=submitter.id,
        type=evidence_type,
        description=description.strip(),
        file_url=file_url,
    )
    db.add(evidence)
    db.commit()
    db.refresh(evidence)
    return evidence


def _parse_split_ratio(outcome: DisputeStatus, split_ratio) -> Optional[Decimal]:
    if outcome != DisputeStatus.RESOLVED_SPLIT:
        if split_ratio is not None:
            raise ValidationError("split_ratio only applies to a split resolution")
        return None
    if split_ratio is None:
        raise ValidationError("A split resolution requires split_ratio")
    try:
        ratio = Decimal(str(split_ratio))
    except InvalidOperation:
        raise ValidationError("split_ratio must be a number")
    if not ratio.is_finite():
        raise ValidationError("split_ratio must be a finite number")
    # Settle with the same precision the dispute row stores
    ratio = to_money(ratio)
    if not Decimal("0") < ratio < Decimal("100"):
        raise ValidationError("split_ratio must be between 0 and 100 exclusive")
    return ratio


def _settle_deal_scope(uow, deal, dispute, outcome, ratio, admin, justification, ledger):
    if not deal.hold_reference:
        # Nothing was ever escrowed
        apply_deal_transition(uow, deal, DealAction.RESOLVE_CANCEL, admin.id, justification)
        return Decimal("0"), Decimal("0")

    held = deal.held_amount
    if outcome == DisputeStatus.RESOLVED_BUYER:
        release, refund = Decimal("0"), held
        action = DealAction.RESOLVE_REFUND
    elif outcome == DisputeStatus.RESOLVED_SELLER:
        release, refund = held, Decimal("0")
        action = DealAction.RESOLVE_COMPLETE
    else:
        release, refund = split_amount(held, ratio)
        action = DealAction.RESOLVE_COMPLETE

    apply_deal_transition(uow, deal, action, admin.id, justification)
    release_funds(uow, deal, ledger, release, f"dispute:{dispute.id}:release", dispute_id=dispute.id)
    refund_funds(uow, deal, ledger, refund, f"dispute:{dispute.id}:refund", dispute_id=dispute.id)
    freeze_unsettled_milestones(deal)
    close_open_disputes(uow, deal, f"Closed by resolution of dispute #{dispute.id}", exclude_id=dispute.id)
    return release, refund


def _settle_milestone_scope(uow, deal, dispute, outcome, ratio, admin, justification, ledger):
    if deal.status == DealStatus.DISPUTED:
        raise InvalidTransition("Resolve the deal-level dispute first")
    if deal.status not in MILESTONE_ACTIVE_DEAL_STATUSES:
        raise InvalidTransition(f"Deal is {deal.status.value}; the milestone can no longer be settled")

    if outcome == DisputeStatus.RESOLVED_BUYER:
        # Buyer wins: the whole remaining hold goes back and the deal ends
        refund = deal.held_amount
        apply_deal_transition(uow, deal, DealAction.REFUND, admin.id, justification)
        refund_funds(uow, deal, ledger, refund, f"dispute:{dispute.id}:refund", dispute_id=dispute.id)
        freeze_unsettled_milestones(deal)
        close_open_disputes(uow, deal, f"Closed by resolution of dispute #{dispute.id}", exclude_id=dispute.id)
        return Decimal("0"), refund

    milestone = load_milestone(uow.db, deal, dispute.milestone_id)
    held = milestone.held_amount
    if outcome == DisputeStatus.RESOLVED_SELLER:
        release, refund = held, Decimal("0")
    else:
        release, refund = split_amount(held, ratio)

    apply_milestone_transition(uow, deal, milestone, MilestoneAction.RESOLVE, admin.id, justification)
    release_funds(uow, deal, ledger, release, f"dispute:{dispute.id}:release",
                  milestone=milestone, dispute_id=dispute.id)
    refund_funds(uow, deal, ledger, refund, f"dispute:{dispute.id}:refund",
                 milestone=milestone, dispute_id=dispute.id)
    milestone.settled_at = utc_now()

    sync_deal_with_milestones(uow, deal, admin.id)
    if deal.status == DealStatus.MILESTONE_COMPLETED:
        apply_deal_transition(uow, deal, DealAction.RESOLVE_COMPLETE, admin.id, justification)
    return release, refund


def resolve_dispute(
    dispute_id: int,
    admin_id: int,
    outcome,
    justification: str,
    split_ratio=None,
    db: Session = None,
    ledger: LedgerGateway = None,
    events: EventSink = None,
) -> Dispute:
    """
    Bind a dispute to an outcome and move the funds accordingly.

    ``split_ratio`` is the seller's share in percent. The losing party of a
    one-sided outcome takes a trust penalty; a split penalises nobody.
    Resolutions are final.
    """
    try:
        outcome = DisputeStatus(outcome)
    except ValueError:
        raise ValidationError(f"Unknown dispute outcome: {outcome}")
    if outcome not in RESOLUTION_OUTCOMES:
        raise ValidationError(
            "Outcome must be one of: " + ", ".join(sorted(o.value for o in RESOLUTION_OUTCOMES))
        )
    justification = (justification or "").strip()
    if not justification:
        raise ValidationError("A resolution justification is required")
    if len(justification) < MIN_JUSTIFICATION_LENGTH:
        logger.warning(f"Dispute {dispute_id} resolved with a short justification: {justification!r}")
    ratio = _parse_split_ratio(outcome, split_ratio)
    if ledger is None:
        ledger = get_ledger_gateway()

    deal_id = db.query(Dispute.deal_id).filter(Dispute.id == dispute_id).scalar()
    if deal_id is None:
        raise NotFoundError(f"Dispute {dispute_id} not found")

    with UnitOfWork(db, events) as uow:
        deal = load_deal_for_update(db, deal_id)
        dispute = db.query(Dispute).filter(Dispute.id == dispute_id).populate_existing().one()
        admin = load_user(db, admin_id)
        if not admin.is_admin:
            raise Unauthorized("Admin access required to resolve disputes")
        if dispute.is_terminal:
            raise InvalidTransition(f"Dispute {dispute.id} is already {dispute.status.value}")

        if dispute.milestone_id is None:
            released, refunded = _settle_deal_scope(
                uow, deal, dispute, outcome, ratio, admin, justification, ledger
            )
        else:
            released, refunded = _settle_milestone_scope(
                uow, deal, dispute, outcome, ratio, admin, justification, ledger
            )

        dispute.status = outcome
        dispute.resolution = justification
        dispute.resolved_by = admin.id
        dispute.resolved_at = utc_now()
        dispute.split_ratio = ratio
        dispute.released_amount = released
        dispute.refunded_amount = refunded

        losing_party = {
            DisputeStatus.RESOLVED_BUYER: deal.seller_id,
            DisputeStatus.RESOLVED_SELLER: deal.buyer_id,
        }.get(outcome)
        if losing_party is not None:
            record_trust_event(
                uow, losing_party, TrustEventKind.DISPUTE_LOST,
                f"Dispute #{dispute.id} resolved against user", deal_id=deal.id,
            )

        uow.emit(DisputeResolved(
            dispute_id=dispute.id,
            deal_id=deal.id,
            outcome=outcome,
            resolver_id=admin.id,
            released_amount=released,
            refunded_amount=refunded,
        ))
        uow.commit()

    db.refresh(dispute)
    logger.info(f"Dispute {dispute_id} resolved as {outcome.value} by admin {admin_id}")
    return dispute
