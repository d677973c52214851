import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InvalidTransition, NotFoundError, Unauthorized, ValidationError
)
from app.core.utils import to_money, utc_now
from app.models.deal import (
    Deal, DealCategory, DealStatus, DealTransition, Milestone, MilestoneStatus
)
from app.models.trust import TrustEventKind
from app.models.user import User
from app.services.event_service import EventSink
from app.services.ledger_service import LedgerGateway, get_ledger_gateway
from app.services.state_machine import (
    ActorRole, DEAL_ACTION_ROLES, DealAction, MilestoneAction,
    apply_deal_transition, apply_milestone_transition, close_open_disputes,
    freeze_unsettled_milestones, hold_funds, load_deal_for_update, load_user,
    next_deal_status, refund_funds, release_funds, require_admin_reason, resolve_role,
)
from app.services.trust_service import record_trust_event
from app.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def compute_escrow_fee(amount: Decimal) -> Decimal:
    """Platform fee on a deal amount."""
    percentage = Decimal(str(settings.ESCROW_FEE_PERCENTAGE))
    return to_money(amount * percentage / Decimal("100"))


def _parse_amount(value, label: str) -> Decimal:
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{label} must be a number")
    if amount <= 0:
        raise ValidationError(f"{label} must be positive")
    return amount


def _check_deal_amount(amount: Decimal) -> None:
    if amount < Decimal(str(settings.DEAL_MIN_AMOUNT)):
        raise ValidationError(f"Minimum deal amount is {settings.DEAL_MIN_AMOUNT}")
    if amount > Decimal(str(settings.DEAL_MAX_AMOUNT)):
        raise ValidationError(f"Maximum deal amount is {settings.DEAL_MAX_AMOUNT}")


def check_milestone_sum(deal: Deal) -> None:
    total = sum((m.amount for m in deal.milestones), Decimal("0"))
    if total != deal.amount:
        raise ValidationError(
            f"Milestone amounts must equal total deal amount (deal {deal.amount}, milestones {total})"
        )


def create_deal(
    buyer_id: int,
    title: str,
    description: str,
    category,
    amount,
    currency: str,
    milestones: List[dict],
    seller_id: Optional[int] = None,
    db: Session = None,
) -> Deal:
    """
    Create a deal in ``created`` with its milestone plan.

    ``milestones`` is a list of dicts with ``title``, ``amount`` and optional
    ``description`` / ``due_date``. Their amounts must add up to ``amount``.
    Without a ``seller_id`` the deal is an open offer that the first accepting
    user takes.
    """
    buyer = load_user(db, buyer_id)

    amount = _parse_amount(amount, "Deal amount")
    _check_deal_amount(amount)

    currency = (currency or "").upper()
    if currency not in settings.SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency}")

    try:
        category = DealCategory(category)
    except ValueError:
        raise ValidationError(f"Unknown deal category: {category}")

    if not milestones:
        raise ValidationError("At least one milestone is required")
    if len(milestones) > settings.DEAL_MAX_MILESTONES:
        raise ValidationError(f"Maximum {settings.DEAL_MAX_MILESTONES} milestones allowed")

    if seller_id is not None:
        if seller_id == buyer.id:
            raise ValidationError("Buyer and seller must be different users")
        load_user(db, seller_id)

    deal = Deal(
        buyer_id=buyer.id,
        seller_id=seller_id,
        title=title,
        description=description,
        category=category,
        amount=amount,
        currency=currency,
        escrow_fee=compute_escrow_fee(amount),
        status=DealStatus.CREATED,
        escrow_amount=Decimal("0"),
        released_amount=Decimal("0"),
        refunded_amount=Decimal("0"),
    )
    for order, item in enumerate(milestones, start=1):
        deal.milestones.append(Milestone(
            title=item["title"],
            description=item.get("description"),
            amount=_parse_amount(item["amount"], "Milestone amount"),
            order=order,
            due_date=item.get("due_date"),
            status=MilestoneStatus.PENDING,
            released_amount=Decimal("0"),
            refunded_amount=Decimal("0"),
        ))
    check_milestone_sum(deal)

    db.add(deal)
    db.commit()
    db.refresh(deal)

    logger.info(f"Deal {deal.id} created by user {buyer.id}: {deal.amount} {deal.currency}")
    return deal


def add_milestone(
    deal_id: int,
    actor_id: int,
    title: str,
    amount,
    description: Optional[str] = None,
    due_date: Optional[date] = None,
    db: Session = None,
    events: EventSink = None,
) -> Milestone:
    """Append a milestone while the deal is still being negotiated; the deal amount grows with it."""
    amount = _parse_amount(amount, "Milestone amount")

    with UnitOfWork(db, events) as uow:
        deal = load_deal_for_update(db, deal_id)
        if deal.buyer_id != actor_id:
            raise Unauthorized("Only the buyer can add milestones")
        if deal.status != DealStatus.CREATED:
            raise InvalidTransition("Milestones can only be added before the deal is accepted")
        if len(deal.milestones) >= settings.DEAL_MAX_MILESTONES:
            raise ValidationError(f"Maximum {settings.DEAL_MAX_MILESTONES} milestones allowed")

        new_amount = deal.amount + amount
        _check_deal_amount(new_amount)

        milestone = Milestone(
            title=title,
            description=description,
            amount=amount,
            order=max((m.order for m in deal.milestones), default=0) + 1,
            due_date=due_date,
            status=MilestoneStatus.PENDING,
            released_amount=Decimal("0"),
            refunded_amount=Decimal("0"),
        )
        deal.milestones.append(milestone)
        deal.amount = new_amount
        deal.escrow_fee = compute_escrow_fee(new_amount)
        deal.updated_at = utc_now()
        uow.commit()

    db.refresh(milestone)
    logger.info(f"Milestone {milestone.id} added to deal {deal_id}; deal amount now {new_amount}")
    return milestone


def get_deal(deal_id: int, viewer: User, db: Session) -> Deal:
    deal = db.query(Deal).filter(Deal.id == deal_id).first()
    if not deal:
        raise NotFoundError(f"Deal {deal_id} not found")
    if not deal.is_party(viewer.id) and not viewer.is_admin:
        raise Unauthorized("You don't have access to this deal")
    return deal


def list_deals(viewer: User, db: Session, status: Optional[DealStatus] = None,
               skip: int = 0, limit: int = 50) -> List[Deal]:
    """Deals the viewer takes part in; admins see every deal."""
    query = db.query(Deal)
    if not viewer.is_admin:
        query = query.filter(or_(Deal.buyer_id == viewer.id, Deal.seller_id == viewer.id))
    if status is not None:
        query = query.filter(Deal.status == status)
    return query.order_by(Deal.created_at.desc(), Deal.id.desc()).offset(skip).limit(limit).all()


def get_deal_history(deal_id: int, viewer: User, db: Session) -> List[DealTransition]:
    """Audit trail of status changes, oldest first."""
    deal = get_deal(deal_id, viewer, db)
    return db.query(DealTransition).filter(
        DealTransition.deal_id == deal.id
    ).order_by(DealTransition.id.asc()).all()


# ---------------------------------------------------------------------------
# Requested transitions
# ---------------------------------------------------------------------------

def _accept(uow, deal, actor, role, reason, ledger):
    if deal.seller_id is None:
        if role != ActorRole.SELLER:
            raise ValidationError("An open deal must be accepted by the prospective seller")
        deal.seller_id = actor.id
    check_milestone_sum(deal)
    apply_deal_transition(uow, deal, DealAction.ACCEPT, actor.id, reason)


def _cancel(uow, deal, actor, role, reason, ledger, action=DealAction.CANCEL):
    apply_deal_transition(uow, deal, action, actor.id, reason)


def _reject(uow, deal, actor, role, reason, ledger):
    _cancel(uow, deal, actor, role, reason, ledger, action=DealAction.REJECT)


def _fund(uow, deal, actor, role, reason, ledger):
    deal.escrow_amount = deal.amount
    deal.funded_at = utc_now()
    apply_deal_transition(uow, deal, DealAction.FUND, actor.id, reason)
    hold_funds(uow, deal, ledger)


def _start_work(uow, deal, actor, role, reason, ledger):
    apply_deal_transition(uow, deal, DealAction.START_WORK, actor.id, reason)
    first_pending = next(
        (m for m in deal.milestones if m.status == MilestoneStatus.PENDING), None
    )
    if first_pending is not None:
        apply_milestone_transition(uow, deal, first_pending, MilestoneAction.START, actor.id)


def _complete(uow, deal, actor, role, reason, ledger):
    apply_deal_transition(uow, deal, DealAction.COMPLETE, actor.id, reason)
    release_funds(uow, deal, ledger, deal.held_amount, f"deal:{deal.id}:release-remaining")
    freeze_unsettled_milestones(deal)
    for user_id in (deal.buyer_id, deal.seller_id):
        record_trust_event(
            uow, user_id, TrustEventKind.DEAL_COMPLETED,
            f"Deal #{deal.id} completed", deal_id=deal.id,
        )


def _refund(uow, deal, actor, role, reason, ledger):
    apply_deal_transition(uow, deal, DealAction.REFUND, actor.id, reason)
    refund_funds(uow, deal, ledger, deal.held_amount, f"deal:{deal.id}:refund")
    freeze_unsettled_milestones(deal)
    close_open_disputes(uow, deal, f"Closed by refund of deal #{deal.id}")


_HANDLERS = {
    DealAction.ACCEPT: _accept,
    DealAction.REJECT: _reject,
    DealAction.CANCEL: _cancel,
    DealAction.FUND: _fund,
    DealAction.START_WORK: _start_work,
    DealAction.COMPLETE: _complete,
    DealAction.REFUND: _refund,
}


def _parse_action(action) -> DealAction:
    try:
        action = DealAction(action)
    except ValueError:
        raise ValidationError(f"Unknown deal action: {action}")
    if action in (DealAction.OPEN_DISPUTE, DealAction.RESOLVE_COMPLETE,
                  DealAction.RESOLVE_REFUND, DealAction.RESOLVE_CANCEL):
        raise ValidationError("Disputes are opened and resolved through the dispute endpoints")
    if action not in DEAL_ACTION_ROLES:
        raise ValidationError(f"Action '{action.value}' is performed by the system")
    return action


def transition_deal(
    deal_id: int,
    actor_id: int,
    action,
    reason: Optional[str] = None,
    db: Session = None,
    ledger: LedgerGateway = None,
    events: EventSink = None,
) -> Deal:
    """
    Apply a party- or admin-requested action to a deal.

    Checks run in order: the actor must be a party (or admin), must hold the
    role the action needs, and the action must be legal in the current
    status. Ledger calls happen after the state change is flushed and before
    the commit, so a ledger failure leaves the deal untouched.
    """
    action = _parse_action(action)
    if ledger is None:
        ledger = get_ledger_gateway()

    with UnitOfWork(db, events) as uow:
        deal = load_deal_for_update(db, deal_id)
        actor = load_user(db, actor_id)

        open_offer = action == DealAction.ACCEPT and deal.status == DealStatus.CREATED
        role = resolve_role(deal, actor, DEAL_ACTION_ROLES[action], open_offer=open_offer)
        if role == ActorRole.ADMIN:
            reason = require_admin_reason(reason)
        next_deal_status(deal, action)

        _HANDLERS[action](uow, deal, actor, role, reason, ledger)
        uow.commit()

    return deal
