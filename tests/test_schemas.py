"""Tests for the stock ledger and order models."""

from datetime import datetime, timezone

from schemas import Order, OrderStatus, PaymentInfo, ShippingInfo, StatusEntry, Stock, Variant


class TestStockLedger:
    def test_available_quantity(self):
        stock = Stock(quantity=10, reserved=3)
        assert stock.available_quantity == 7

    def test_out_of_stock_when_everything_reserved(self):
        assert Stock(quantity=4, reserved=4).status_label == "out-of-stock"

    def test_low_stock_at_threshold(self):
        stock = Stock(quantity=10, reserved=8, low_stock_threshold=2)
        assert stock.status_label == "low-stock"

    def test_in_stock_above_threshold(self):
        stock = Stock(quantity=10, reserved=2, low_stock_threshold=2)
        assert stock.status_label == "in-stock"

    def test_untracked_is_always_in_stock(self):
        stock = Stock(quantity=0, track_quantity=False)
        assert stock.status_label == "in-stock"

    def test_variant_available(self):
        variant = Variant(id="v1", name="Size", value="M", stock=3, reserved=1)
        assert variant.available_quantity == 2


class TestOrderModel:
    def test_status_dumps_as_plain_string(self, address):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        order = Order(
            order_number="ORD2610180001",
            user_id="u1",
            items=[],
            subtotal=0,
            tax=0,
            shipping_cost=0,
            total=0,
            shipping_address=address,
            status_history=[StatusEntry(status=OrderStatus.PENDING, timestamp=now)],
            payment=PaymentInfo(method="pm_card_visa", amount=0),
            shipping=ShippingInfo(),
            created_at=now,
            updated_at=now,
        )
        dumped = order.model_dump()
        assert dumped["status"] == "pending"
        assert dumped["status_history"][0]["status"] == "pending"
        assert dumped["metadata"] == {"stock_reservation_id": None, "source": "web"}
