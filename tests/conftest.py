import os

os.environ["DATABASE_URL"] = "sqlite:///./test_payments.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payments.database import Base
from payments.gateway import (
    GatewayCreateOrderResult,
    GatewayRefundResult,
    PaymentGateway,
)
from payments.models import (
    Coupon,
    DiscountType,
    DurationPrice,
    GatewayType,
    Program,
    ProgramDuration,
    User,
)
from payments.notifier import Notifier
from payments.paypal_gateway import parse_paypal_event
from payments.stripe_gateway import parse_stripe_event

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_integration.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway(PaymentGateway):
    """Records every call; results are set per test."""

    def __init__(self):
        self.verify_result = True
        self.create_error = None
        self.refund_result = GatewayRefundResult(success=True, gateway_refund_id="gw_refund_1")
        self.capture_result = "CAPTURE-1"
        self.created = []
        self.captured = []
        self.refunded = []
        self.verified = []

    def create_order(self, request):
        self.created.append(request)
        if self.create_error:
            raise self.create_error
        if self.gateway_type == GatewayType.STRIPE:
            return GatewayCreateOrderResult(
                gateway_order_id=f"pi_{len(self.created)}", payment_session_id=f"pi_{len(self.created)}_secret"
            )
        return GatewayCreateOrderResult(
            gateway_order_id=f"PP-{len(self.created)}",
            approval_url=f"https://paypal.test/checkoutnow?token=PP-{len(self.created)}",
        )

    def verify_webhook_signature(self, raw_payload, headers):
        self.verified.append((raw_payload, dict(headers)))
        return self.verify_result

    def capture_order(self, gateway_order_id):
        self.captured.append(gateway_order_id)
        return self.capture_result

    def refund(self, request):
        self.refunded.append(request)
        return self.refund_result


class FakeStripeGateway(FakeGateway):
    gateway_type = GatewayType.STRIPE
    parse_event = staticmethod(parse_stripe_event)


class FakePayPalGateway(FakeGateway):
    gateway_type = GatewayType.PAYPAL
    parse_event = staticmethod(parse_paypal_event)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.paid = []
        self.failed = []

    def order_paid(self, signal):
        self.paid.append(signal)

    def order_failed(self, signal):
        self.failed.append(signal)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateways():
    return {
        GatewayType.STRIPE: FakeStripeGateway(),
        GatewayType.PAYPAL: FakePayPalGateway(),
    }


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog(db):
    """Buyers in GB and IN, an admin, one program duration priced for GB and IN, and coupons."""
    buyer = User(id="user-gb", email="ada@example.com", first_name="Ada", last_name="Lovelace", country_code="GB")
    buyer_in = User(id="user-in", email="ravi@example.com", first_name="Ravi", last_name="Shah", country_code="IN")
    buyer_us = User(id="user-us", email="sam@example.com", first_name="Sam", last_name="Lee", country_code="US")
    admin = User(id="admin-1", email="admin@example.com", role="admin", country_code="GB")
    program = Program(id="program-1", name="Cycle Sync", expert_id="expert-1")
    duration = ProgramDuration(id="duration-1", program_id="program-1", label="8 weeks")
    price_gb = DurationPrice(
        id="price-gb", duration_id="duration-1", location_code="GB",
        amount=Decimal("320.00"), currency_code="GBP", currency_symbol="£",
    )
    price_in = DurationPrice(
        id="price-in", duration_id="duration-1", location_code="IN",
        amount=Decimal("15000.00"), currency_code="INR", currency_symbol="₹",
    )
    save20 = Coupon(id="coupon-save20", code="SAVE20", discount_type=DiscountType.PERCENTAGE,
                    discount_value=Decimal("20"))
    db.add_all([buyer, buyer_in, buyer_us, admin, program, duration, price_gb, price_in, save20])
    db.commit()
    return SimpleNamespace(
        buyer_id="user-gb",
        buyer_in_id="user-in",
        buyer_us_id="user-us",
        admin_id="admin-1",
        duration_id="duration-1",
        program_id="program-1",
        expert_id="expert-1",
    )


def token_for(user_id, role="user"):
    return jwt.encode({"sub": user_id, "role": role}, os.environ["JWT_SECRET"], algorithm="HS256")


def auth_header(user_id, role="user"):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


@pytest.fixture
def client(monkeypatch, gateways):
    from payments.main import app as fastapi_app

    # Point every request-scoped session at the test database
    monkeypatch.setattr("payments.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("payments.main.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("payments.routes.gateways", gateways)

    with TestClient(fastapi_app) as c:
        yield c
