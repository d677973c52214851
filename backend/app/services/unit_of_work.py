"""
Transaction scope shared by the lifecycle services.

A transition runs inside one ``UnitOfWork``: state changes are flushed (taking
the aggregate's version check) before any ledger call, committed after it, and
the collected events are published only once the commit went through. Any
error rolls the session back.
"""
import logging
from typing import List

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConcurrencyConflict
from app.services.event_service import EventSink, get_event_sink, publish_all

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db: Session, events: EventSink):
        self.db = db
        self.sink = events if events is not None else get_event_sink()
        self.pending_events: List = []
        self._committed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None or not self._committed:
            self.db.rollback()
            self.pending_events.clear()
        return False

    def emit(self, event) -> None:
        self.pending_events.append(event)

    def flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as e:
            raise ConcurrencyConflict("Record was modified concurrently; re-read and retry") from e

    def commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            raise ConcurrencyConflict("Record was modified concurrently; re-read and retry") from e
        self._committed = True
        events, self.pending_events = self.pending_events, []
        publish_all(self.sink, events)
