"""
Deal and milestone state machines.

Both machines are explicit transition tables keyed by (current status, action).
Anything missing from a table is an ``InvalidTransition``; nothing is remapped
silently. The helpers here are shared by the deal, milestone and dispute
services and always run inside a ``UnitOfWork`` holding the deal row.
"""
import enum
import logging
from decimal import Decimal
from typing import Dict, FrozenSet, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InvalidTransition, NotFoundError, Unauthorized, ValidationError
)
from app.core.utils import utc_now
from app.models.deal import (
    Deal, DealStatus, DealTransition, Milestone, MilestoneStatus, MilestoneTransition,
    TERMINAL_DEAL_STATUSES,
)
from app.models.dispute import Dispute, DisputeStatus, TERMINAL_DISPUTE_STATUSES
from app.models.ledger import LedgerEntry, LedgerEntryKind
from app.models.user import User
from app.services.event_service import (
    DealStatusChanged, FundsHeld, FundsRefunded, FundsReleased, MilestoneStatusChanged
)
from app.services.ledger_service import HoldReceipt, LedgerGateway, call_ledger
from app.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ActorRole(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class DealAction(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    FUND = "fund"
    START_WORK = "start_work"
    COMPLETE = "complete"
    REFUND = "refund"
    # Triggered by the engine or the dispute resolver only
    ALL_MILESTONES_APPROVED = "all_milestones_approved"
    OPEN_DISPUTE = "open_dispute"
    RESOLVE_COMPLETE = "resolve_complete"
    RESOLVE_REFUND = "resolve_refund"
    RESOLVE_CANCEL = "resolve_cancel"


class MilestoneAction(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    APPROVE = "approve"
    DISPUTE = "dispute"
    # Dispute resolution settling the milestone
    RESOLVE = "resolve"


DEAL_TRANSITIONS: Dict[Tuple[DealStatus, DealAction], DealStatus] = {
    (DealStatus.CREATED, DealAction.ACCEPT): DealStatus.ACCEPTED,
    (DealStatus.CREATED, DealAction.REJECT): DealStatus.CANCELLED,
    (DealStatus.CREATED, DealAction.CANCEL): DealStatus.CANCELLED,
    (DealStatus.ACCEPTED, DealAction.CANCEL): DealStatus.CANCELLED,
    (DealStatus.ACCEPTED, DealAction.FUND): DealStatus.FUNDED,
    (DealStatus.FUNDED, DealAction.START_WORK): DealStatus.IN_PROGRESS,
    (DealStatus.IN_PROGRESS, DealAction.ALL_MILESTONES_APPROVED): DealStatus.MILESTONE_COMPLETED,
    (DealStatus.MILESTONE_COMPLETED, DealAction.COMPLETE): DealStatus.COMPLETED,
    (DealStatus.FUNDED, DealAction.REFUND): DealStatus.REFUNDED,
    (DealStatus.IN_PROGRESS, DealAction.REFUND): DealStatus.REFUNDED,
    (DealStatus.MILESTONE_COMPLETED, DealAction.REFUND): DealStatus.REFUNDED,
    (DealStatus.ACCEPTED, DealAction.OPEN_DISPUTE): DealStatus.DISPUTED,
    (DealStatus.FUNDED, DealAction.OPEN_DISPUTE): DealStatus.DISPUTED,
    (DealStatus.IN_PROGRESS, DealAction.OPEN_DISPUTE): DealStatus.DISPUTED,
    (DealStatus.MILESTONE_COMPLETED, DealAction.OPEN_DISPUTE): DealStatus.DISPUTED,
    (DealStatus.DISPUTED, DealAction.RESOLVE_COMPLETE): DealStatus.COMPLETED,
    (DealStatus.DISPUTED, DealAction.RESOLVE_REFUND): DealStatus.REFUNDED,
    (DealStatus.DISPUTED, DealAction.RESOLVE_CANCEL): DealStatus.CANCELLED,
    # A milestone-scope resolution that settles the last open milestone
    (DealStatus.MILESTONE_COMPLETED, DealAction.RESOLVE_COMPLETE): DealStatus.COMPLETED,
}

# Actions callers may request through transition_deal, with the parties allowed
DEAL_ACTION_ROLES: Dict[DealAction, FrozenSet[ActorRole]] = {
    DealAction.ACCEPT: frozenset({ActorRole.SELLER}),
    DealAction.REJECT: frozenset({ActorRole.SELLER, ActorRole.BUYER}),
    DealAction.CANCEL: frozenset({ActorRole.SELLER, ActorRole.BUYER}),
    DealAction.FUND: frozenset({ActorRole.BUYER}),
    DealAction.START_WORK: frozenset({ActorRole.SELLER}),
    DealAction.COMPLETE: frozenset({ActorRole.SELLER, ActorRole.BUYER}),
    DealAction.REFUND: frozenset({ActorRole.ADMIN}),
}

MILESTONE_TRANSITIONS: Dict[Tuple[MilestoneStatus, MilestoneAction], MilestoneStatus] = {
    (MilestoneStatus.PENDING, MilestoneAction.START): MilestoneStatus.IN_PROGRESS,
    (MilestoneStatus.PENDING, MilestoneAction.COMPLETE): MilestoneStatus.COMPLETED,
    (MilestoneStatus.IN_PROGRESS, MilestoneAction.COMPLETE): MilestoneStatus.COMPLETED,
    (MilestoneStatus.COMPLETED, MilestoneAction.APPROVE): MilestoneStatus.APPROVED,
    (MilestoneStatus.IN_PROGRESS, MilestoneAction.DISPUTE): MilestoneStatus.DISPUTED,
    (MilestoneStatus.COMPLETED, MilestoneAction.DISPUTE): MilestoneStatus.DISPUTED,
    (MilestoneStatus.DISPUTED, MilestoneAction.RESOLVE): MilestoneStatus.APPROVED,
}

MILESTONE_ACTION_ROLES: Dict[MilestoneAction, FrozenSet[ActorRole]] = {
    MilestoneAction.START: frozenset({ActorRole.SELLER}),
    MilestoneAction.COMPLETE: frozenset({ActorRole.SELLER}),
    MilestoneAction.APPROVE: frozenset({ActorRole.BUYER}),
    MilestoneAction.DISPUTE: frozenset({ActorRole.BUYER}),
}

# Deal statuses in which milestone work may move
MILESTONE_ACTIVE_DEAL_STATUSES = frozenset({DealStatus.FUNDED, DealStatus.IN_PROGRESS})


# ---------------------------------------------------------------------------
# Loading and authorization
# ---------------------------------------------------------------------------

def load_deal_for_update(db: Session, deal_id: int) -> Deal:
    """Load the deal aggregate fresh from the database, row-locked where supported."""
    deal = db.query(Deal).filter(Deal.id == deal_id).with_for_update().populate_existing().first()
    if not deal:
        raise NotFoundError(f"Deal {deal_id} not found")
    return deal


def load_milestone(db: Session, deal: Deal, milestone_id: int) -> Milestone:
    milestone = db.query(Milestone).filter(
        Milestone.id == milestone_id,
        Milestone.deal_id == deal.id
    ).populate_existing().first()
    if not milestone:
        raise NotFoundError(f"Milestone {milestone_id} not found on deal {deal.id}")
    return milestone


def load_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    if not user.is_active:
        raise Unauthorized("User account is inactive")
    return user


def resolve_role(deal: Deal, actor: User, allowed: FrozenSet[ActorRole],
                 open_offer: bool = False) -> ActorRole:
    """
    Work out in which capacity ``actor`` acts on ``deal``.

    Parties act as buyer or seller; an admin may act in place of any party.
    ``open_offer`` lets a non-buyer claim the seller seat of an unassigned deal.
    """
    if actor.id == deal.buyer_id:
        role = ActorRole.BUYER
    elif deal.seller_id is not None and actor.id == deal.seller_id:
        role = ActorRole.SELLER
    elif actor.is_admin:
        return ActorRole.ADMIN
    elif open_offer and deal.seller_id is None:
        role = ActorRole.SELLER
    else:
        raise Unauthorized("User is not a party to this deal")

    if role in allowed:
        return role
    if actor.is_admin:
        return ActorRole.ADMIN
    names = " or ".join(sorted(r.value for r in allowed))
    raise Unauthorized(f"Only the {names} may perform this action")


def require_admin_reason(reason: Optional[str]) -> str:
    """Admin overrides are audited and must carry a meaningful reason."""
    reason = (reason or "").strip()
    if len(reason) < settings.ADMIN_REASON_MIN_LENGTH:
        raise ValidationError(
            f"Admin actions require a reason of at least {settings.ADMIN_REASON_MIN_LENGTH} characters"
        )
    return reason


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def next_deal_status(deal: Deal, action: DealAction) -> DealStatus:
    if deal.status in TERMINAL_DEAL_STATUSES:
        raise InvalidTransition(f"Deal {deal.id} is {deal.status.value}; no further transitions")
    target = DEAL_TRANSITIONS.get((deal.status, action))
    if target is None:
        raise InvalidTransition(f"Cannot {action.value} a deal in status '{deal.status.value}'")
    return target


def apply_deal_transition(uow: UnitOfWork, deal: Deal, action: DealAction,
                          actor_id: int, reason: Optional[str] = None) -> DealStatus:
    """Move the deal one step, writing the audit row and queueing the event."""
    target = next_deal_status(deal, action)
    previous = deal.status
    now = utc_now()

    deal.status = target
    deal.updated_at = now
    if target == DealStatus.COMPLETED and deal.completed_at is None:
        deal.completed_at = now

    uow.db.add(DealTransition(
        deal_id=deal.id,
        actor_id=actor_id,
        action=action.value,
        from_status=previous,
        to_status=target,
        reason=reason,
    ))
    uow.emit(DealStatusChanged(
        deal_id=deal.id,
        from_status=previous,
        to_status=target,
        actor_id=actor_id,
        action=action.value,
        timestamp=now,
    ))
    logger.info(f"Deal {deal.id}: {previous.value} -> {target.value} ({action.value} by user {actor_id})")
    return target


def apply_milestone_transition(uow: UnitOfWork, deal: Deal, milestone: Milestone,
                               action: MilestoneAction, actor_id: int,
                               reason: Optional[str] = None) -> MilestoneStatus:
    target = MILESTONE_TRANSITIONS.get((milestone.status, action))
    if target is None:
        raise InvalidTransition(
            f"Cannot {action.value} a milestone in status '{milestone.status.value}'"
        )
    previous = milestone.status
    now = utc_now()

    milestone.status = target
    if target == MilestoneStatus.COMPLETED and milestone.completed_at is None:
        milestone.completed_at = now
    if target == MilestoneStatus.APPROVED and milestone.approved_at is None:
        milestone.approved_at = now
    # Touch the aggregate root so its version guards milestone changes too
    deal.updated_at = now

    uow.db.add(MilestoneTransition(
        milestone_id=milestone.id,
        deal_id=deal.id,
        actor_id=actor_id,
        action=action.value,
        from_status=previous,
        to_status=target,
        reason=reason,
    ))
    uow.emit(MilestoneStatusChanged(
        deal_id=deal.id,
        milestone_id=milestone.id,
        from_status=previous,
        to_status=target,
        actor_id=actor_id,
        reason=reason,
        timestamp=now,
    ))
    logger.info(f"Milestone {milestone.id} of deal {deal.id}: {previous.value} -> {target.value}")
    return target


def sync_deal_with_milestones(uow: UnitOfWork, deal: Deal, actor_id: int) -> None:
    """Deal-level consequences of milestone progress, run after every milestone transition."""
    if deal.status == DealStatus.FUNDED and any(
        m.status != MilestoneStatus.PENDING for m in deal.milestones
    ):
        apply_deal_transition(uow, deal, DealAction.START_WORK, actor_id)

    if deal.status == DealStatus.IN_PROGRESS and deal.milestones and all(
        m.status == MilestoneStatus.APPROVED for m in deal.milestones
    ):
        apply_deal_transition(uow, deal, DealAction.ALL_MILESTONES_APPROVED, actor_id)


def close_open_disputes(uow: UnitOfWork, deal: Deal, resolution: str,
                        exclude_id: Optional[int] = None) -> None:
    """Close disputes made moot by a deal-level settlement."""
    query = uow.db.query(Dispute).filter(
        Dispute.deal_id == deal.id,
        Dispute.status.notin_(list(TERMINAL_DISPUTE_STATUSES))
    )
    if exclude_id is not None:
        query = query.filter(Dispute.id != exclude_id)
    for dispute in query.all():
        dispute.status = DisputeStatus.CLOSED
        dispute.resolution = resolution
        dispute.resolved_at = utc_now()
        logger.info(f"Dispute {dispute.id} closed: {resolution}")


def freeze_unsettled_milestones(deal: Deal) -> None:
    """Mark every milestone still holding funds as settled by a deal-level payout."""
    now = utc_now()
    for milestone in deal.milestones:
        if milestone.settled_at is None:
            milestone.settled_at = now


# ---------------------------------------------------------------------------
# Escrow movements
# ---------------------------------------------------------------------------

def hold_receipt(deal: Deal) -> HoldReceipt:
    if not deal.hold_reference:
        raise InvalidTransition(f"Deal {deal.id} has no escrow hold")
    return HoldReceipt(reference=deal.hold_reference, deal_id=deal.id, amount=deal.escrow_amount)


def _record_entry(uow, deal, kind, amount, reference, key, to_user_id=None,
                  milestone=None, dispute_id=None):
    uow.db.add(LedgerEntry(
        deal_id=deal.id,
        milestone_id=milestone.id if milestone is not None else None,
        dispute_id=dispute_id,
        kind=kind,
        amount=amount,
        to_user_id=to_user_id,
        reference=reference,
        idempotency_key=key,
    ))


def hold_funds(uow: UnitOfWork, deal: Deal, ledger: LedgerGateway) -> HoldReceipt:
    """Commit the deal amount to escrow. Only ``fund`` calls this."""
    uow.flush()
    key = f"deal:{deal.id}:hold"
    receipt = call_ledger(ledger.hold, deal.id, deal.amount, idempotency_key=key)
    deal.hold_reference = receipt.reference
    _record_entry(uow, deal, LedgerEntryKind.HOLD, deal.amount, receipt.reference, key)
    uow.emit(FundsHeld(deal_id=deal.id, amount=deal.amount, reference=receipt.reference))
    return receipt


def release_funds(uow: UnitOfWork, deal: Deal, ledger: LedgerGateway, amount: Decimal,
                  idempotency_key: str, milestone: Optional[Milestone] = None,
                  dispute_id: Optional[int] = None) -> None:
    """Pay ``amount`` out of the hold to the seller."""
    if amount <= 0:
        return
    uow.flush()
    receipt = call_ledger(
        ledger.release, hold_receipt(deal), amount, deal.seller_id, idempotency_key=idempotency_key
    )
    deal.released_amount = deal.released_amount + amount
    if milestone is not None:
        milestone.released_amount = milestone.released_amount + amount
    _record_entry(uow, deal, LedgerEntryKind.RELEASE, amount, receipt.reference, idempotency_key,
                  to_user_id=deal.seller_id, milestone=milestone, dispute_id=dispute_id)
    uow.emit(FundsReleased(
        deal_id=deal.id,
        milestone_id=milestone.id if milestone is not None else None,
        amount=amount,
        to_user_id=deal.seller_id,
        reference=receipt.reference,
    ))


def refund_funds(uow: UnitOfWork, deal: Deal, ledger: LedgerGateway, amount: Decimal,
                 idempotency_key: str, milestone: Optional[Milestone] = None,
                 dispute_id: Optional[int] = None) -> None:
    """Return ``amount`` out of the hold to the buyer."""
    if amount <= 0:
        return
    uow.flush()
    receipt = call_ledger(
        ledger.refund, hold_receipt(deal), amount, deal.buyer_id, idempotency_key=idempotency_key
    )
    deal.refunded_amount = deal.refunded_amount + amount
    if milestone is not None:
        milestone.refunded_amount = milestone.refunded_amount + amount
    _record_entry(uow, deal, LedgerEntryKind.REFUND, amount, receipt.reference, idempotency_key,
                  to_user_id=deal.buyer_id, milestone=milestone, dispute_id=dispute_id)
    uow.emit(FundsRefunded(
        deal_id=deal.id,
        milestone_id=milestone.id if milestone is not None else None,
        amount=amount,
        to_user_id=deal.buyer_id,
        reference=receipt.reference,
    ))
