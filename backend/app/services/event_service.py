"""
Lifecycle events emitted after every committed transition.

Notification and UI layers subscribe through an ``EventSink``. The set of
event types is closed; consumers switch on ``kind``.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from app.core.utils import utc_now
from app.models.deal import DealStatus, MilestoneStatus
from app.models.dispute import DisputeReason, DisputeStatus
from app.models.trust import TrustEventKind

logger = logging.getLogger(__name__)


class _LifecycleEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True


class DealStatusChanged(_LifecycleEvent):
    kind: Literal["deal_status_changed"] = "deal_status_changed"
    deal_id: int
    from_status: DealStatus
    to_status: DealStatus
    actor_id: int
    action: str


class MilestoneStatusChanged(_LifecycleEvent):
    kind: Literal["milestone_status_changed"] = "milestone_status_changed"
    deal_id: int
    milestone_id: int
    from_status: MilestoneStatus
    to_status: MilestoneStatus
    actor_id: int
    reason: Optional[str] = None


class FundsHeld(_LifecycleEvent):
    kind: Literal["funds_held"] = "funds_held"
    deal_id: int
    amount: Decimal
    reference: str


class FundsReleased(_LifecycleEvent):
    kind: Literal["funds_released"] = "funds_released"
    deal_id: int
    milestone_id: Optional[int] = None
    amount: Decimal
    to_user_id: int
    reference: str


class FundsRefunded(_LifecycleEvent):
    kind: Literal["funds_refunded"] = "funds_refunded"
    deal_id: int
    milestone_id: Optional[int] = None
    amount: Decimal
    to_user_id: int
    reference: str


class DisputeOpened(_LifecycleEvent):
    kind: Literal["dispute_opened"] = "dispute_opened"
    dispute_id: int
    deal_id: int
    milestone_id: Optional[int] = None
    initiator_id: int
    reason: DisputeReason


class DisputeResolved(_LifecycleEvent):
    kind: Literal["dispute_resolved"] = "dispute_resolved"
    dispute_id: int
    deal_id: int
    outcome: DisputeStatus
    resolver_id: int
    released_amount: Decimal
    refunded_amount: Decimal


class TrustScoreChanged(_LifecycleEvent):
    kind: Literal["trust_score_changed"] = "trust_score_changed"
    user_id: int
    previous_score: int
    new_score: int
    event_kind: TrustEventKind
    deal_id: Optional[int] = None


LifecycleEvent = Annotated[
    Union[
        DealStatusChanged,
        MilestoneStatusChanged,
        FundsHeld,
        FundsReleased,
        FundsRefunded,
        DisputeOpened,
        DisputeResolved,
        TrustScoreChanged,
    ],
    Field(discriminator="kind"),
]


class EventSink(ABC):
    """Receives lifecycle events once the transition is committed."""

    @abstractmethod
    def publish(self, event: _LifecycleEvent) -> None:
        ...


class LoggingEventSink(EventSink):
    """Default sink: writes every event to the application log."""

    def publish(self, event: _LifecycleEvent) -> None:
        logger.info(f"Lifecycle event {event.kind}: {event.model_dump_json()}")


class InMemoryEventSink(EventSink):
    """Keeps events in memory, used as a read-through feed and in tests."""

    def __init__(self):
        self.events: List[_LifecycleEvent] = []

    def publish(self, event: _LifecycleEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> List[_LifecycleEvent]:
        return [event for event in self.events if event.kind == kind]


def publish_all(sink: EventSink, events: Iterable[_LifecycleEvent]) -> None:
    """Deliver committed events. A failing sink cannot undo the commit."""
    for event in events:
        try:
            sink.publish(event)
        except Exception as e:
            logger.error(f"Event sink failed for {event.kind}: {e}", exc_info=True)


_default_sink = LoggingEventSink()


def get_event_sink() -> EventSink:
    """Dependency returning the configured event sink."""
    return _default_sink
