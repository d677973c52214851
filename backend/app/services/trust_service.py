"""
Trust score calculation and recording.

``calculate_trust_score`` is a pure function. Every applied change is stored
as an immutable ``TrustScoreUpdate``; ``User.trust_score`` caches the latest
``new_score``.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFoundError, Unauthorized, ValidationError
from app.models.trust import TrustEventKind, TrustScoreUpdate
from app.models.user import User
from app.services.event_service import EventSink, TrustScoreChanged
from app.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100
MAX_ADMIN_ADJUSTMENT = 50

# Default point change per event
TRUST_EVENT_DELTAS = {
    TrustEventKind.KYC_APPROVED: 10,
    TrustEventKind.DEAL_COMPLETED: 2,
    TrustEventKind.MILESTONE_APPROVED: 1,
    TrustEventKind.DISPUTE_LOST: -5,
    TrustEventKind.LATE_DELIVERY: -1,
}

PENALTY_EVENTS = frozenset({
    TrustEventKind.DISPUTE_LOST,
    TrustEventKind.DISPUTE_ABUSE,
    TrustEventKind.LATE_DELIVERY,
})


def event_delta(event_kind: TrustEventKind, magnitude: Optional[int] = None) -> int:
    """Signed point change for an event; ``magnitude`` overrides the default size."""
    if event_kind == TrustEventKind.ADMIN_ADJUSTMENT:
        if magnitude is None:
            raise ValidationError("Admin adjustment requires a magnitude")
        if abs(magnitude) > MAX_ADMIN_ADJUSTMENT:
            raise ValidationError(f"Trust score adjustment cannot exceed ±{MAX_ADMIN_ADJUSTMENT} points")
        return magnitude

    if magnitude is None:
        if event_kind not in TRUST_EVENT_DELTAS:
            raise ValidationError(f"Event {event_kind.value} requires a magnitude")
        return TRUST_EVENT_DELTAS[event_kind]

    size = abs(magnitude)
    return -size if event_kind in PENALTY_EVENTS else size


def calculate_trust_score(current_score: int, event_kind: TrustEventKind,
                          magnitude: Optional[int] = None) -> int:
    """Apply one reputation event to a score, clamped to [0, 100]."""
    new_score = current_score + event_delta(event_kind, magnitude)
    return max(MIN_SCORE, min(MAX_SCORE, new_score))


def record_trust_event(
    uow: UnitOfWork,
    user_id: int,
    event_kind: TrustEventKind,
    reason: str,
    deal_id: Optional[int] = None,
    magnitude: Optional[int] = None,
    adjusted_by: Optional[int] = None,
) -> TrustScoreUpdate:
    """
    Apply an event against the latest committed score of the user.

    The user row is re-read under lock and written back through its version
    column, so concurrent updates serialize instead of overwriting each other.
    """
    # populate_existing would discard unflushed changes to the same user
    uow.flush()
    user = uow.db.query(User).filter(User.id == user_id).with_for_update().populate_existing().first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    previous_score = user.trust_score
    new_score = calculate_trust_score(previous_score, event_kind, magnitude)
    user.trust_score = new_score

    update = TrustScoreUpdate(
        user_id=user_id,
        previous_score=previous_score,
        new_score=new_score,
        kind=event_kind,
        reason=reason,
        deal_id=deal_id,
        adjusted_by=adjusted_by,
    )
    uow.db.add(update)
    uow.flush()

    logger.info(f"Trust score of user {user_id}: {previous_score} -> {new_score} ({event_kind.value})")
    uow.emit(TrustScoreChanged(
        user_id=user_id,
        previous_score=previous_score,
        new_score=new_score,
        event_kind=event_kind,
        deal_id=deal_id,
    ))
    return update


def adjust_trust_score(
    user_id: int,
    admin_id: int,
    delta: int,
    reason: str,
    db: Session = None,
    events: EventSink = None,
    deal_id: Optional[int] = None,
) -> TrustScoreUpdate:
    """Manual admin adjustment (±50 max, audited with a reason)."""
    admin = db.query(User).filter(User.id == admin_id).first()
    if not admin or not admin.is_admin:
        raise Unauthorized("Admin access required to adjust trust scores")

    reason = (reason or "").strip()
    if len(reason) < settings.ADMIN_REASON_MIN_LENGTH:
        raise ValidationError(
            f"Reason is required and must be at least {settings.ADMIN_REASON_MIN_LENGTH} characters"
        )
    if delta == 0:
        raise ValidationError("Adjustment must be non-zero")

    with UnitOfWork(db, events) as uow:
        update = record_trust_event(
            uow, user_id, TrustEventKind.ADMIN_ADJUSTMENT, reason,
            deal_id=deal_id, magnitude=delta, adjusted_by=admin_id,
        )
        uow.commit()
    db.refresh(update)
    return update


def get_trust_history(user_id: int, viewer: User, db: Session) -> Tuple[User, List[TrustScoreUpdate]]:
    """Score and history of a user, visible to the user and to admins."""
    if viewer.id != user_id and not viewer.is_admin:
        raise Unauthorized("Admin access required to view other users' trust scores")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    updates = db.query(TrustScoreUpdate).filter(
        TrustScoreUpdate.user_id == user_id
    ).order_by(TrustScoreUpdate.id.desc()).all()
    return user, updates
