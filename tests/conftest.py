"""Pytest fixtures for the order service tests."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from database import MemoryStore
from orders import USERS, OrderService
from payments import PaymentResult
from reservations import PRODUCTS, ReservationEngine
from schemas import Product, Stock, User


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeGateway:
    def __init__(self, succeed=True, error=None):
        self.succeed = succeed
        self.error = error
        self.during_charge = None
        self.charges = []
        self.refunds = []

    def charge(self, amount, currency, customer_ref, metadata, payment_method_id=None):
        self.charges.append({
            "amount": amount,
            "currency": currency,
            "customer_ref": customer_ref,
            "metadata": metadata,
            "payment_method_id": payment_method_id,
        })
        if self.during_charge is not None:
            self.during_charge(self.charges[-1])
        if self.error is not None:
            raise self.error
        if not self.succeed:
            return PaymentResult(False, None, "failed", amount, currency, "Your card was declined.")
        return PaymentResult(True, f"pi_{len(self.charges)}", "completed", amount, currency)

    def refund(self, payment_ref, amount=None):
        self.refunds.append((payment_ref, amount))
        return f"re_{len(self.refunds)}"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, order, new_status, previous_status):
        self.sent.append((order["order_number"], new_status, previous_status))


ADDRESS = {
    "first_name": "Ada",
    "last_name": "Moon",
    "address": "1 Crater Row",
    "city": "London",
    "postcode": "E1 6AN",
    "country": "GB",
}


@pytest.fixture
def address():
    return dict(ADDRESS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_product(store):
    """Insert a product and return its id."""

    def _make(
        quantity=5,
        price=10.0,
        name="Lunar Phase Tee",
        sku="TRK-LUNAR",
        track_quantity=True,
        low_stock_threshold=2,
        variants=None,
    ):
        product = Product(
            name=name,
            sku=sku,
            price=price,
            stock=Stock(
                quantity=quantity,
                track_quantity=track_quantity,
                low_stock_threshold=low_stock_threshold,
            ),
            variants=variants or [],
        )
        return store.insert(PRODUCTS, product.model_dump())

    return _make


@pytest.fixture
def stock(store):
    """Read the stored stock sub-document of a product."""

    def _read(product_id):
        return store.find_by_id(PRODUCTS, product_id)["stock"]

    return _read


@pytest.fixture
def user_id(store):
    user = User(email="ada@example.com", first_name="Ada", last_name="Moon", stripe_customer_id="cus_123")
    return store.insert(USERS, user.model_dump())


@pytest.fixture
def engine(store, clock):
    return ReservationEngine(store, clock=clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, engine, gateway, notifier, clock):
    return OrderService(store, engine, gateway, notifier, clock=clock)


@pytest.fixture
def api_client(store, gateway, notifier):
    """Test client wired to the in-process store and fake collaborators."""
    from main import app, get_notifier, get_payment_gateway, get_store

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()
