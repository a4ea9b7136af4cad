"""
Pytest configuration and shared test fixtures.

The environment is pinned before any application module is imported so the
settings object points at an in-memory SQLite database with polling off and
no throttling delays.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SYNC_POLL_ENABLED"] = "false"
os.environ["SHOPIFY_STORE_URL"] = "test-store.myshopify.com"
os.environ["SHOPIFY_ACCESS_TOKEN"] = "shpat_" + "a" * 32
os.environ["SHOPIFY_REQUEST_DELAY_SECONDS"] = "0"
os.environ["SHOPIFY_RETRY_BASE_DELAY"] = "0"
os.environ["SHOPIFY_MAX_RETRIES"] = "2"
os.environ["IMAGE_INDIVIDUAL_DELAY_SECONDS"] = "0"
os.environ["RESYNC_DELAY_SECONDS"] = "0"

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from database import Base, SessionLocal, engine
from services.order_sync_runner import OrderSyncRunner
from services.sync_tracker import DedupeStore, SyncTracker

from factories import FakeShopify, make_order, make_product


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """
    Fresh schema per test on the shared in-memory engine.

    Yields:
        Session: SQLAlchemy session bound to the test database
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_shopify() -> FakeShopify:
    """Shopify stand-in preloaded with one two-item order and its products."""
    return FakeShopify(
        orders=[make_order()],
        products=[
            make_product(111, "https://cdn.shopify.com/s/files/shirt.jpg", variants=[211]),
            make_product(112, "https://cdn.shopify.com/s/files/pants.jpg", variants=[212]),
        ],
    )


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def runner(db_session, fake_shopify, sleeps) -> OrderSyncRunner:
    """Runner wired to the test database and the fake Shopify client."""
    return OrderSyncRunner(
        db_factory=SessionLocal,
        service_factory=lambda: fake_shopify,
        tracker=SyncTracker(),
        dedupe=DedupeStore(capacity=10),
        sleep=sleeps.append,
    )


@pytest.fixture
def client(runner) -> Generator[TestClient, None, None]:
    """
    TestClient without lifespan events (no scheduler, tables come from
    db_session) and the test runner installed on app state.
    """
    from main import app

    previous = app.state.sync_runner
    app.state.sync_runner = runner
    try:
        yield TestClient(app)
    finally:
        app.state.sync_runner = previous


@pytest.fixture
def courier_factory(db_session):
    def create(name: str = "Ahmed") -> models.Courier:
        courier = models.Courier(name=name, phone="+20100")
        db_session.add(courier)
        db_session.commit()
        return courier
    return create
