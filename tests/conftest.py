import itertools
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_escrow.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from escrow import models  # noqa: F401  registers the tables
from escrow.database import Base
from escrow.models import PaymentIntent
from escrow.payments import OrderContext, confirm_gateway_payment, initiate_payment

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


def intent_id_for(db, reference):
    return db.query(PaymentIntent).filter_by(reference=reference).one().id


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway(mocker):
    """Stripe PaymentIntent creation, one fake intent per call."""
    counter = itertools.count(1)

    def fake_create(amount, currency, idempotency_key, metadata=None):
        n = next(counter)
        intent = mocker.Mock()
        intent.id = f"pi_test_{n}"
        intent.client_secret = f"secret_test_{n}"
        return intent

    return mocker.patch("escrow.payments.create_payment", side_effect=fake_create)


@pytest.fixture
def open_order(db, gateway):
    """Open an order with a first payment initiated; returns the initiation."""

    def _open(price=10_000, percentage=40, payment_type="full", charges=None, **fields):
        context = OrderContext(
            product_id=fields.get("product_id", "prod-1"),
            organization_id=fields.get("organization_id", "org-1"),
            customer_id=fields.get("customer_id", "cust-1"),
            product_price=price,
            upfront_payment_percentage=percentage,
            product_name=fields.get("product_name", "Tailored Suit"),
            organization_name=fields.get("organization_name", "Ade Couture"),
            customer_name=fields.get("customer_name", "Amaka Obi"),
            customer_email=fields.get("customer_email", "amaka@example.com"),
        )
        return initiate_payment(db, context, payment_type, charges)

    return _open


@pytest.fixture
def confirm(db):
    """Play the gateway webhook for an initiated payment."""

    def _confirm(initiation):
        return confirm_gateway_payment(db, intent_id_for(db, initiation.payment_reference))

    return _confirm


@pytest.fixture
def paid_order(open_order, confirm):
    """A fully paid order (single full payment confirmed by the gateway)."""

    def _paid(price=10_000, **fields):
        return confirm(open_order(price=price, payment_type="full", **fields))

    return _paid


OPERATOR_CLAIMS = {"sub": "op-1", "role": "super_admin"}


@pytest.fixture
def claims():
    """Token claims the API sees; tests may narrow them in place."""
    return dict(OPERATOR_CLAIMS)


@pytest.fixture
def client(monkeypatch, claims):
    from fastapi.testclient import TestClient

    import escrow.auth
    from escrow.main import app as fastapi_app

    # Mock SessionLocal everywhere in the application to use the test database
    monkeypatch.setattr("escrow.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("escrow.main.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("escrow.events.SessionLocal", TestingSessionLocal)

    fastapi_app.dependency_overrides[escrow.auth.verify_token] = lambda: claims

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
