import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import (
    AlreadySettled, InvalidTransition, NotFoundError, ValidationError
)
from app.core.utils import utc_now
from app.models.deal import Milestone, MilestoneTransition
from app.models.dispute import DisputeReason
from app.models.trust import TrustEventKind
from app.models.user import User
from app.services import deal_service, dispute_service
from app.services.event_service import EventSink
from app.services.ledger_service import LedgerGateway, get_ledger_gateway
from app.services.state_machine import (
    ActorRole, MILESTONE_ACTION_ROLES, MILESTONE_ACTIVE_DEAL_STATUSES, MilestoneAction,
    apply_milestone_transition, load_deal_for_update, load_milestone, load_user,
    release_funds, require_admin_reason, resolve_role, sync_deal_with_milestones,
)
from app.services.trust_service import record_trust_event
from app.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def _parse_action(action) -> MilestoneAction:
    try:
        action = MilestoneAction(action)
    except ValueError:
        raise ValidationError(f"Unknown milestone action: {action}")
    if action not in MILESTONE_ACTION_ROLES:
        raise ValidationError("Milestones are resolved through the dispute endpoints")
    return action


def _deal_id_of(db: Session, milestone_id: int) -> int:
    deal_id = db.query(Milestone.deal_id).filter(Milestone.id == milestone_id).scalar()
    if deal_id is None:
        raise NotFoundError(f"Milestone {milestone_id} not found")
    return deal_id


def transition_milestone(
    milestone_id: int,
    actor_id: int,
    action,
    reason: Optional[str] = None,
    db: Session = None,
    ledger: LedgerGateway = None,
    events: EventSink = None,
) -> Milestone:
    """
    Apply a party action to a milestone.

    Approving releases the milestone's share of the hold to the seller. After
    every transition the deal is re-evaluated: work on a funded deal moves it
    to ``in_progress`` and the last approval moves it to ``milestone_completed``.
    Disputing opens a milestone-scope dispute and needs a ``reason``.
    """
    action = _parse_action(action)

    if action == MilestoneAction.DISPUTE:
        if not (reason or "").strip():
            raise ValidationError("A reason is required to dispute a milestone")
        deal_id = _deal_id_of(db, milestone_id)
        dispute_service.open_dispute(
            deal_id, actor_id, DisputeReason.OTHER, reason,
            milestone_id=milestone_id, db=db, events=events,
        )
        return db.query(Milestone).filter(Milestone.id == milestone_id).one()

    deal_id = _deal_id_of(db, milestone_id)
    if ledger is None:
        ledger = get_ledger_gateway()

    with UnitOfWork(db, events) as uow:
        deal = load_deal_for_update(db, deal_id)
        milestone = load_milestone(db, deal, milestone_id)
        actor = load_user(db, actor_id)

        role = resolve_role(deal, actor, MILESTONE_ACTION_ROLES[action])
        if role == ActorRole.ADMIN:
            reason = require_admin_reason(reason)

        if action == MilestoneAction.APPROVE and milestone.settled_at is not None:
            raise AlreadySettled(f"Milestone {milestone.id} has already been paid out")
        if deal.status not in MILESTONE_ACTIVE_DEAL_STATUSES:
            raise InvalidTransition(f"Milestones cannot change while the deal is {deal.status.value}")

        apply_milestone_transition(uow, deal, milestone, action, actor.id, reason)

        if action == MilestoneAction.COMPLETE and milestone.due_date is not None \
                and milestone.completed_at.date() > milestone.due_date:
            record_trust_event(
                uow, deal.seller_id, TrustEventKind.LATE_DELIVERY,
                f"Milestone '{milestone.title}' delivered after {milestone.due_date}",
                deal_id=deal.id,
            )

        if action == MilestoneAction.APPROVE:
            release_funds(
                uow, deal, ledger, milestone.held_amount,
                f"milestone:{milestone.id}:release", milestone=milestone,
            )
            milestone.settled_at = utc_now()
            record_trust_event(
                uow, deal.seller_id, TrustEventKind.MILESTONE_APPROVED,
                f"Milestone '{milestone.title}' approved", deal_id=deal.id,
            )

        sync_deal_with_milestones(uow, deal, actor.id)
        uow.commit()

    return milestone


def get_milestone_history(milestone_id: int, viewer: User, db: Session) -> List[MilestoneTransition]:
    """Audit trail of a milestone, oldest first; visible to the deal parties and admins."""
    deal_id = _deal_id_of(db, milestone_id)
    deal_service.get_deal(deal_id, viewer, db)
    return db.query(MilestoneTransition).filter(
        MilestoneTransition.milestone_id == milestone_id
    ).order_by(MilestoneTransition.id.asc()).all()
