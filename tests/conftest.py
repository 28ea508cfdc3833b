import json
import os
from datetime import datetime, time, timezone
from types import SimpleNamespace

# main.py creates tables at import time; keep that away from any real database.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RABBITMQ_HOST"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_service.database import Base
from order_service.errors import TransientProviderError
from order_service.models import (
    Item,
    Merchant,
    OptionChoice,
    OptionGroup,
    ServicePoint,
    Store,
    StoreHours,
)
from order_service.orders import OrderService
from order_service.payment_service import PaymentService
from order_service.payments.base import (
    CaptureResult,
    PaymentGateway,
    PaymentSession,
    ProviderPaymentStatus,
    RefundResult,
)
from order_service.payments.registry import GatewayRegistry
from order_service.refunds import RefundService
from order_service.schemas import CartItem, OrderRequest


class FakeGateway(PaymentGateway):
    """Scripted provider: tests set ``status`` and the ``*_error`` attributes."""

    def __init__(self, name="paypal"):
        self.name = name
        self.status = ProviderPaymentStatus(status="CREATED")
        self.status_error = None
        self.capture_error = None
        self.refund_error = None
        self.refund_status = "COMPLETED"
        self.calls = []

    def create_payment(self, order_id, amount, description, return_url, cancel_url, merchant=None):
        self.calls.append(("create", order_id, amount, description, return_url, cancel_url))
        return PaymentSession(payment_id=f"PAY-{order_id}", approval_url=f"https://pay.example/approve/{order_id}")

    def get_payment_status(self, payment_id, merchant=None):
        self.calls.append(("status", payment_id))
        if self.status_error:
            raise self.status_error
        return self.status

    def capture_payment(self, payment_id, merchant=None):
        self.calls.append(("capture", payment_id))
        if self.capture_error:
            raise self.capture_error
        self.status = ProviderPaymentStatus(status="COMPLETED", is_paid=True, capture_id="CAP-1")
        return CaptureResult(capture_id="CAP-1", status="COMPLETED")

    def create_refund(self, payment_id, amount, description, merchant=None):
        self.calls.append(("refund", payment_id, amount, description))
        if self.refund_error:
            raise self.refund_error
        return RefundResult(refund_id="REF-1", status=self.refund_status)

    def parse_webhook(self, body, headers):
        return json.loads(body).get("payment_id")

    def approve(self):
        self.status = ProviderPaymentStatus(status="APPROVED", is_approved=True)

    def fail(self):
        self.status = ProviderPaymentStatus(status="VOIDED", is_failed=True)

    def go_offline(self):
        self.status_error = TransientProviderError("provider down", provider=self.name)

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))

    @property
    def keys(self):
        return [key for key, _ in self.events]


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeded(db):
    """Two merchants: "m-1" takes PayPal payments, "m-2" has no online payments."""
    merchant = Merchant(id="m-1", name="Cafe Owner", api_key="key-1", payment_provider="paypal",
                        paypal_merchant_id="SELLER1")
    other = Merchant(id="m-2", name="Kiosk Owner", api_key="key-2")
    store = Store(id="s-1", merchant_id="m-1", name="Café Central", slug="cafe-central",
                  currency="eur", timezone="UTC")
    other_store = Store(id="s-2", merchant_id="m-2", name="Kiosk", slug="kiosk", currency="EUR", timezone="UTC")
    db.add_all([merchant, other, store, other_store])
    db.flush()

    # Open around the clock every day.
    for day in range(7):
        db.add(StoreHours(store_id="s-1", day_of_week=day, opens_at=time(0, 0), closes_at=time(0, 0)))
        db.add(StoreHours(store_id="s-2", day_of_week=day, opens_at=time(0, 0), closes_at=time(0, 0)))

    db.add_all([
        Item(id="burger", store_id="s-1", price=1000, kitchen_name="BRG",
             translations={"de": {"name": "Burger"}, "en": {"name": "Hamburger"}}),
        Item(id="fries", store_id="s-1", price=350, translations={"de": {"name": "Pommes"}}),
        Item(id="retired", store_id="s-1", price=500, is_active=False, translations={"de": {"name": "Alt"}}),
        Item(id="kiosk-coffee", store_id="s-2", price=250, translations={"de": {"name": "Kaffee"}}),
        OptionGroup(id="size", store_id="s-1", translations={"de": {"name": "Größe"}}),
        OptionGroup(id="kiosk-extras", store_id="s-2", translations={"de": {"name": "Extras"}}),
        OptionChoice(id="large", option_group_id="size", price_modifier=150, translations={"de": {"name": "Groß"}}),
        OptionChoice(id="small", option_group_id="size", price_modifier=-50, translations={"de": {"name": "Klein"}}),
        OptionChoice(id="sold-out", option_group_id="size", price_modifier=0, is_available=False),
        OptionChoice(id="oat-milk", option_group_id="kiosk-extras", price_modifier=40),
        ServicePoint(id="table-1", store_id="s-1", name="Table 1", code="T1"),
        ServicePoint(id="table-old", store_id="s-1", name="Old table", code="T0", is_active=False),
    ])
    db.commit()
    return SimpleNamespace(merchant=merchant, other_merchant=other, store=store, other_store=other_store)


@pytest.fixture
def gateway():
    return FakeGateway("paypal")


@pytest.fixture
def registry(gateway):
    return GatewayRegistry([gateway])


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def order_service(publisher):
    return OrderService(publisher=publisher)


@pytest.fixture
def payment_service(registry, publisher):
    return PaymentService(registry, publisher=publisher)


@pytest.fixture
def refund_service(registry, publisher):
    return RefundService(registry, publisher=publisher)


def order_request(store_id="s-1", order_type="dine_in", items=None, **fields):
    if items is None:
        items = [CartItem(item_id="burger", quantity=1)]
    return OrderRequest(store_id=store_id, order_type=order_type, items=items, **fields)


@pytest.fixture
def place_order(db, seeded, order_service):
    def place(**kwargs):
        return order_service.create_order(db, order_request(**kwargs))
    return place


@pytest.fixture
def paid_order(db, place_order):
    """A paid PayPal order for store s-1 (total 1000)."""
    order = place_order()
    order.payment_provider = "paypal"
    order.provider_order_id = "PAY-X"
    order.provider_capture_id = "CAP-X"
    order.payment_status = "paid"
    order.status = "confirmed"
    order.confirmed_at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    db.commit()
    return order


@pytest.fixture
def client(session_factory, seeded, registry, publisher):
    from fastapi.testclient import TestClient

    from order_service import main

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_gateways] = lambda: registry
    main.app.dependency_overrides[main.get_publisher] = lambda: publisher
    main.app.dependency_overrides[main.get_order_service] = lambda: OrderService(publisher=publisher)
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


