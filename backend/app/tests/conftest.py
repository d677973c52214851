"""
Shared fixtures: a throwaway SQLite database and in-memory collaborators.
"""
import os
import tempfile

_db_dir = tempfile.mkdtemp(prefix="safeswap-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["LEDGER_BACKEND"] = "memory"

import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import SessionLocal, engine, init_db
from app.main import app
from app.models.user import User, UserRole
from app.services.deal_service import create_deal as create_deal_service
from app.services.deal_service import transition_deal
from app.services.event_service import InMemoryEventSink, get_event_sink
from app.services.ledger_service import InMemoryLedgerGateway, get_ledger_gateway
from app.services.milestone_service import transition_milestone


@pytest.fixture(autouse=True)
def tables():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def no_ledger_backoff(monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_RETRY_BACKOFF_SECONDS", 0)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def ledger():
    return InMemoryLedgerGateway()


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def make_user(db):
    created = []

    def _make(role=UserRole.USER, **kwargs):
        n = len(created) + 1
        user = User(username=f"user{n}", email=f"user{n}@example.com", role=role, **kwargs)
        db.add(user)
        db.commit()
        db.refresh(user)
        created.append(user)
        return user

    return _make


@pytest.fixture
def buyer(make_user):
    return make_user()


@pytest.fixture
def seller(make_user):
    return make_user()


@pytest.fixture
def outsider(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role=UserRole.ADMIN)


@pytest.fixture
def create_deal(db, buyer, seller):
    """Create a deal whose milestones carry ``amounts``."""
    def _create(amounts=(600, 400), with_seller=True, due_dates=None):
        milestones = []
        for index, amount in enumerate(amounts):
            milestones.append({
                "title": f"Milestone {index + 1}",
                "amount": amount,
                "due_date": due_dates[index] if due_dates else None,
            })
        return create_deal_service(
            buyer_id=buyer.id,
            title="Marketplace redesign",
            description="Full redesign of the storefront, delivered in stages.",
            category="software",
            amount=sum(amounts),
            currency="USD",
            milestones=milestones,
            seller_id=seller.id if with_seller else None,
            db=db,
        )

    return _create


@pytest.fixture
def deal_action(db, ledger, events):
    def _act(deal_id, user, action, reason=None):
        return transition_deal(deal_id, user.id, action, reason=reason, db=db, ledger=ledger, events=events)

    return _act


@pytest.fixture
def milestone_action(db, ledger, events):
    def _act(milestone_id, user, action, reason=None):
        return transition_milestone(
            milestone_id, user.id, action, reason=reason, db=db, ledger=ledger, events=events
        )

    return _act


@pytest.fixture
def funded_deal(create_deal, deal_action, buyer, seller):
    """Factory for a deal that was accepted and funded."""
    def _funded(amounts=(600, 400), **kwargs):
        deal = create_deal(amounts, **kwargs)
        deal_action(deal.id, seller, "accept")
        deal_action(deal.id, buyer, "fund")
        return deal

    return _funded


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_access_token({"user_id": user.id})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def client(ledger, events):
    app.dependency_overrides[get_ledger_gateway] = lambda: ledger
    app.dependency_overrides[get_event_sink] = lambda: events
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
