# tests/conftest.py
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app import models
from app.config import EngineConfig
from app.db import Base, make_engine, get_db
from app.main import app
from app.services import get_engine
from app.settlement import SettlementEngine

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_engine(tmp_path):
    # file-backed so separate sessions really are separate connections
    engine = make_engine(f"sqlite:///{tmp_path / 'marketplace-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def settlement(clock):
    return SettlementEngine(EngineConfig(max_attempts=3, backoff_seconds=0), clock=clock)


@pytest.fixture
def make_profile(db):
    def _make(external_id, username=None, suspended=False):
        obj = models.Profile(external_id=external_id, username=username, is_suspended=suspended)
        db.add(obj)
        db.commit()
        return obj.id
    return _make


@pytest.fixture
def make_listing(db, clock):
    def _make(seller_id, price=20, expires_in=timedelta(days=30), accepts_offers=False, min_offer_amount=None):
        obj = models.Listing(
            seller_id=seller_id, title="Amazing Spider-Man #300 CGC 9.8", price=Decimal(str(price)),
            shipping_cost=Decimal("5"), status=models.AVAILABLE, expires_at=clock() + expires_in,
            accepts_offers=accepts_offers,
            min_offer_amount=Decimal(str(min_offer_amount)) if min_offer_amount is not None else None,
        )
        db.add(obj)
        db.commit()
        return obj.id
    return _make


@pytest.fixture
def make_auction(db, clock):
    def _make(seller_id, starting_price=10, buy_it_now_price=None, ends_in=timedelta(days=7)):
        obj = models.Auction(
            seller_id=seller_id, title="Fantastic Four #48 CGC 6.0",
            starting_price=Decimal(str(starting_price)),
            buy_it_now_price=Decimal(str(buy_it_now_price)) if buy_it_now_price is not None else None,
            shipping_cost=Decimal("0"), start_time=clock(), end_time=clock() + ends_in,
            status=models.OPEN, bid_count=0,
        )
        db.add(obj)
        db.commit()
        return obj.id
    return _make


@pytest.fixture
def db_calls():
    return {"count": 0}


@pytest.fixture
def client(session_factory, settlement, db_calls):
    def override_get_db():
        db_calls["count"] += 1
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: settlement
    yield TestClient(app)
    app.dependency_overrides.clear()
