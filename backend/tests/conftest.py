# backend/tests/conftest.py
"""
Pytest configuration for the booking core.

Settings are pinned through the environment BEFORE any app import: the Redis
group mutex is off (row-level compare-and-swap still guards every write),
payment retries never sleep and .env files are ignored. Each test gets its
own in-memory SQLite database.
"""

import os

os.environ["CI"] = "true"
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BOOKING_LOCK_ENABLED"] = "false"
os.environ["PAYMENT_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["PAYMENT_RETRY_BACKOFF_MAX_SECONDS"] = "0"

from typing import Dict, Generator

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401  (registers every table on Base.metadata)
from app.api.dependencies import get_db, get_payment_processor
from app.database import Base, configure_sqlite_engine
from app.main import app
from app.services.authorization_expiry_service import AuthorizationExpiryService
from app.services.booking_ledger_service import BookingLedgerService
from app.services.cancellation_policy_service import CancellationPolicyService
from app.services.overstay_penalty_service import OverstayPenaltyService
from app.services.payment_authorization_service import PaymentAuthorizationService
from app.services.storage_checkout_service import StorageCheckoutService
from app.services.storage_extension_service import StorageExtensionService
from tests.factories.listing_builders import (
    ADMIN_ID,
    CHEF_ID,
    MANAGER_ID,
    Marketplace,
    create_marketplace,
)
from tests.helpers.fake_processor import FakePaymentProcessor
from tests.helpers.headers import auth_headers


@pytest.fixture
def db() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    configure_sqlite_engine(engine)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def marketplace(db: Session) -> Marketplace:
    return create_marketplace(db)


# Services wired the way the API dependencies wire them: one shared session


@pytest.fixture
def payment_service(db: Session, processor: FakePaymentProcessor) -> PaymentAuthorizationService:
    return PaymentAuthorizationService(db, processor, sleep=lambda _seconds: None)


@pytest.fixture
def ledger(db: Session, payment_service: PaymentAuthorizationService) -> BookingLedgerService:
    return BookingLedgerService(db, payment_service)


@pytest.fixture
def cancellation_service(
    db: Session, ledger: BookingLedgerService, payment_service: PaymentAuthorizationService
) -> CancellationPolicyService:
    return CancellationPolicyService(db, ledger, payment_service)


@pytest.fixture
def checkout_service(db: Session, ledger: BookingLedgerService) -> StorageCheckoutService:
    return StorageCheckoutService(db, ledger)


@pytest.fixture
def overstay_service(
    db: Session, ledger: BookingLedgerService, payment_service: PaymentAuthorizationService
) -> OverstayPenaltyService:
    return OverstayPenaltyService(db, ledger, payment_service)


@pytest.fixture
def extension_service(
    db: Session, ledger: BookingLedgerService, payment_service: PaymentAuthorizationService
) -> StorageExtensionService:
    return StorageExtensionService(db, ledger, payment_service)


@pytest.fixture
def expiry_service(db: Session, ledger: BookingLedgerService) -> AuthorizationExpiryService:
    return AuthorizationExpiryService(db, ledger)


# API


@pytest.fixture
def client(db: Session, processor: FakePaymentProcessor) -> Generator[TestClient, None, None]:
    """TestClient bound to the test session and the fake processor."""

    def _override_get_db() -> Generator[Session, None, None]:
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def chef_headers() -> Dict[str, str]:
    return auth_headers(CHEF_ID, "chef")


@pytest.fixture
def manager_headers() -> Dict[str, str]:
    return auth_headers(MANAGER_ID, "manager")


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return auth_headers(ADMIN_ID, "admin")
