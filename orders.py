"""
Order processing: totals, creation, and the status state machine.

create_order runs strictly in sequence:
    validate user -> price items -> reserve stock -> persist pending order
    -> charge -> confirm order + confirm stock  |  payment_failed + release stock
Any failure after the reservation releases it before the error propagates.
A paid order is never left without stock behind it: expired reservations are
claimed from available stock, and if that fails the order is cancelled and
refunded. A charge that lands on an order cancelled meanwhile is refunded.

_transition is the only place that writes order.status / status_history.
"""

import logging
import random
import string
from datetime import timedelta
from typing import Callable, List, Optional

import config
from database import DocumentStore, utcnow
from errors import (
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentFailedError,
    PaymentGatewayError,
    ProductNotFoundError,
    ShopError,
    StockConfirmationFailedError,
    UserNotFoundError,
)
from notifications import NotificationSink
from payments import PaymentGateway, PaymentResult
from reservations import PRODUCTS, ReservationEngine, find_variant, stock_of
from schemas import (
    Order,
    OrderItem,
    OrderMetadata,
    OrderStatus,
    PaymentInfo,
    ShippingInfo,
    StatusEntry,
)

logger = logging.getLogger(__name__)

ORDERS = "order"
USERS = "user"
COUNTERS = "counter"

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: {OrderStatus.REFUNDED},
    OrderStatus.PAYMENT_FAILED: set(),
    OrderStatus.REFUNDED: set(),
}

CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
SHIPPING_STATUSES = {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}

_BASE36 = string.digits + string.ascii_uppercase


def calculate_shipping(subtotal: float, shipping_method: str) -> float:
    if subtotal >= config.FREE_SHIPPING_THRESHOLD:
        return 0.0
    return config.SHIPPING_RATES.get(shipping_method, config.SHIPPING_RATES["standard"])


class OrderService:
    def __init__(
        self,
        store: DocumentStore,
        engine: ReservationEngine,
        gateway: PaymentGateway,
        notifier: NotificationSink,
        clock: Callable = utcnow,
        currency: str = config.ORDER_CURRENCY,
    ):
        self.store = store
        self.engine = engine
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.currency = currency

    # -------------------- lookups --------------------

    def get_order(self, order_id: str) -> dict:
        order = self.store.find_by_id(ORDERS, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # -------------------- pricing --------------------

    def calculate_order_totals(self, items: List[dict], shipping_method: str) -> dict:
        """Price the items against current catalog data.

        Fails with ProductNotFoundError / InsufficientStockError before any
        write happens. Line prices and names are snapshotted here.
        """
        subtotal = 0.0
        processed = []

        for item in items:
            product_id = item["product_id"]
            quantity = item["quantity"]
            variant_id = item.get("variant_id")

            product = self.store.find_by_id(PRODUCTS, product_id)
            if product is None:
                raise ProductNotFoundError(product_id)

            stock = stock_of(product)
            if stock.track_quantity:
                available = stock.available_quantity
                if variant_id is not None:
                    available = min(available, find_variant(product, variant_id).available_quantity)
                if available < quantity:
                    raise InsufficientStockError(product_id, available, quantity, name=product.get("name"))

            price = float(product["price"])
            item_total = round(price * quantity, 2)
            subtotal += item_total
            processed.append(OrderItem(
                product_id=product_id,
                name=product["name"],
                sku=product.get("sku", ""),
                price=price,
                quantity=quantity,
                total=item_total,
                variant_id=variant_id,
            ))

        subtotal = round(subtotal, 2)
        tax = round(subtotal * config.TAX_RATE, 2)
        shipping = calculate_shipping(subtotal, shipping_method)
        total = round(subtotal + tax + shipping, 2)

        return {
            "items": processed,
            "subtotal": subtotal,
            "tax": tax,
            "shipping": shipping,
            "total": total,
        }

    def calculate_estimated_delivery(self, shipping_method: str):
        days = config.DELIVERY_DAYS.get(shipping_method, config.DELIVERY_DAYS["standard"])
        return self.clock() + timedelta(days=days)

    # -------------------- identifiers --------------------

    def generate_order_number(self) -> str:
        """ORD + YYMMDD + 4-digit daily sequence from an atomic per-day counter."""
        day = self.clock().strftime("%y%m%d")
        sequence = self.store.increment(COUNTERS, f"order-{day}")
        return f"ORD{day}{sequence:04d}"

    def generate_tracking_number(self) -> str:
        timestamp = str(int(self.clock().timestamp() * 1000))
        suffix = "".join(random.choices(_BASE36, k=6))
        return f"TRK{timestamp[-8:]}{suffix}"

    # -------------------- creation --------------------

    def create_order(
        self,
        items: List[dict],
        shipping_address: dict,
        payment_method_id: str,
        user_id: str,
        shipping_method: str = "standard",
        notes: str = "",
        billing_address: Optional[dict] = None,
    ) -> dict:
        user = self.store.find_by_id(USERS, user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        totals = self.calculate_order_totals(items, shipping_method)

        now = self.clock()
        session_id = f"order_{int(now.timestamp() * 1000)}"
        stock_reservation = self.engine.reserve_stock(items, user_id, session_id)
        reservation_id = stock_reservation["reservation_id"]

        try:
            order_number = self.generate_order_number()
            order = Order(
                order_number=order_number,
                user_id=user_id,
                items=totals["items"],
                subtotal=totals["subtotal"],
                tax=totals["tax"],
                shipping_cost=totals["shipping"],
                total=totals["total"],
                shipping_address=shipping_address,
                billing_address=billing_address or shipping_address,
                status=OrderStatus.PENDING,
                status_history=[StatusEntry(
                    status=OrderStatus.PENDING,
                    timestamp=now,
                    notes="Order created and awaiting payment",
                )],
                payment=PaymentInfo(
                    method=payment_method_id,
                    amount=totals["total"],
                    currency=self.currency,
                ),
                shipping=ShippingInfo(
                    method=shipping_method,
                    estimated_delivery=self.calculate_estimated_delivery(shipping_method),
                ),
                notes=notes,
                metadata=OrderMetadata(stock_reservation_id=reservation_id),
                created_at=now,
                updated_at=now,
            )
            order_id = self.store.insert(ORDERS, order.model_dump())
        except Exception:
            self.engine.release_reservations(stock_reservation["reservations"], "order_creation_failed")
            raise

        try:
            payment = self.gateway.charge(
                totals["total"],
                self.currency,
                user.get("stripe_customer_id"),
                {"order_id": order_id, "order_number": order_number, "user_id": user_id},
                payment_method_id=payment_method_id,
            )
        except Exception as exc:
            logger.error(f"Payment processing failed for {order_number}: {exc}")
            self._fail_payment(order_id, stock_reservation, f"Payment failed: {exc}", user_id)
            raise PaymentFailedError(order_id, order_number, str(exc)) from exc

        if not payment.success:
            self._fail_payment(order_id, stock_reservation, "Payment processing failed", user_id)
            raise PaymentFailedError(order_id, order_number, payment.error)

        try:
            order = self.update_order_status(
                order_id,
                OrderStatus.CONFIRMED,
                "Payment processed successfully",
                user_id,
                payment_reference=payment.reference,
            )
        except InvalidTransitionError as exc:
            # Cancelled while the charge was in flight; its reservation is already released.
            refunded = self._refund_orphaned_charge(order_id, order_number, payment)
            reason = f"Order was {exc.from_status} during payment; charge " + ("refunded" if refunded else "not refunded")
            raise PaymentFailedError(order_id, order_number, reason) from exc

        self._secure_stock(order, items, user_id, reservation_id)

        logger.info(f"Order {order_number} created for user {user_id}: total {order['total']}, payment {payment.status}")
        return {
            "order": order,
            "payment": payment.to_dict(),
            "stock_reservation": stock_reservation,
        }

    def _fail_payment(self, order_id: str, stock_reservation: dict, notes: str, user_id: str) -> None:
        try:
            self.update_order_status(order_id, OrderStatus.PAYMENT_FAILED, notes, user_id)
        except InvalidTransitionError as exc:
            logger.warning(f"Order {order_id} is {exc.from_status}; not marking payment_failed")
        finally:
            self.engine.release_reservations(stock_reservation["reservations"], "payment_failed")

    def _secure_stock(self, order: dict, items: List[dict], user_id: str, reservation_id: str) -> None:
        """Turn the paid order's reservations into sales.

        Items whose reservation expired during payment are claimed from
        available stock instead. If any item still cannot be covered, the
        units already sold are put back, the order is cancelled and refunded,
        and StockConfirmationFailedError is raised.
        """
        order_id = order["_id"]
        confirmation = self.engine.confirm_stock_reservation(order_id, items, user_id, reservation_id=reservation_id)
        sold = [
            {"product_id": c["product_id"], "quantity": c["quantity"], "variant_id": c["variant_id"]}
            for c in confirmation["confirmed"]
        ]
        failures = []

        for item in confirmation["failed"]:
            try:
                self.engine.claim(item["product_id"], item["quantity"], order_id, item["variant_id"])
            except ShopError as exc:
                failures.append({**item, "error": str(exc)})
            else:
                sold.append({k: item[k] for k in ("product_id", "quantity", "variant_id")})

        if not failures:
            return

        logger.error(f"Order {order['order_number']} paid but {len(failures)} item(s) could not be secured")
        _, outcome = self._transition(
            order_id,
            OrderStatus.CANCELLED,
            "Cancelled: stock could not be secured after payment",
            None,
            restock_items=sold,
        )
        raise StockConfirmationFailedError(order_id, order["order_number"], failures, outcome["refund_processed"])

    def _refund_orphaned_charge(self, order_id: str, order_number: str, payment: PaymentResult) -> bool:
        try:
            self.gateway.refund(payment.reference, payment.amount)
            refunded = True
        except PaymentGatewayError as exc:
            logger.error(f"Refund of {payment.reference} for cancelled order {order_number} failed: {exc}")
            refunded = False

        now = self.clock()

        def record(doc: dict) -> None:
            doc["payment"]["reference"] = payment.reference
            doc["payment"]["paid_at"] = now
            doc["payment"]["status"] = "refunded" if refunded else "completed"
            if refunded:
                doc["payment"]["refunded_at"] = now

        self.store.update_if(ORDERS, order_id, lambda _doc: True, record)
        logger.warning(f"Charge {payment.reference} arrived after order {order_number} was cancelled (refunded: {refunded})")
        return refunded

    # -------------------- status --------------------

    def update_order_status(
        self,
        order_id: str,
        status,
        notes: str = "",
        updated_by: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> dict:
        order, _ = self._transition(order_id, status, notes, updated_by, payment_reference)
        return order

    def _transition(self, order_id, status, notes, updated_by, payment_reference=None, restock_items=None):
        current = self.get_order(order_id)
        try:
            target = OrderStatus(status)
        except ValueError:
            raise InvalidTransitionError(current["status"], str(status))

        now = self.clock()
        outcome = {}

        def allowed(doc: dict) -> bool:
            return target in TRANSITIONS[OrderStatus(doc["status"])]

        def apply(doc: dict) -> None:
            outcome["previous"] = doc["status"]
            outcome["refund"] = False
            doc["status"] = target.value
            doc["status_history"].append(
                StatusEntry(status=target, timestamp=now, notes=notes, updated_by=updated_by).model_dump()
            )

            payment = doc["payment"]
            shipping = doc["shipping"]
            if target == OrderStatus.CONFIRMED:
                payment["status"] = "completed"
                payment["paid_at"] = now
                if payment_reference:
                    payment["reference"] = payment_reference
            elif target == OrderStatus.PAYMENT_FAILED:
                payment["status"] = "failed"
            elif target in SHIPPING_STATUSES:
                shipping["status"] = target.value
                if target == OrderStatus.SHIPPED:
                    shipping["shipped_at"] = now
                    shipping["tracking_number"] = self.generate_tracking_number()
                elif target == OrderStatus.DELIVERED:
                    shipping["delivered_at"] = now
            elif target in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                if payment["status"] == "completed":
                    payment["status"] = "refunded"
                    payment["refunded_at"] = now
                    outcome["refund"] = True

        order = self.store.update_if(ORDERS, order_id, allowed, apply)
        if order is None:
            latest = self.get_order(order_id)
            raise InvalidTransitionError(latest["status"], target.value)

        previous = outcome["previous"]
        if target == OrderStatus.CANCELLED:
            outcome["stock_restored"] = self._restore_stock(order, previous, restock_items)
        outcome["refund_processed"] = self._refund(order) if outcome["refund"] else False

        try:
            self.notifier.notify(order, target.value, previous)
        except Exception:
            logger.exception(f"Notification failed for {order['order_number']} ({target.value})")

        logger.info(f"Order {order['order_number']} status {previous} -> {target.value} by {updated_by}")
        return order, outcome

    def _restore_stock(self, order: dict, previous_status: str, restock_items: Optional[List[dict]] = None) -> bool:
        """Give a cancelled order's units back.

        restock_items limits the restock to units actually sold; it defaults to
        every line of the order.
        """
        if previous_status == OrderStatus.PENDING.value:
            # Never confirmed: the units are still only reserved.
            reservation_id = order["metadata"].get("stock_reservation_id")
            self.engine.release_reservations(
                [
                    {
                        "product_id": item["product_id"],
                        "quantity": item["quantity"],
                        "variant_id": item.get("variant_id"),
                        "user_id": order["user_id"],
                        "reservation_id": reservation_id,
                    }
                    for item in order["items"]
                ],
                "order_cancelled",
            )
            return True

        restored = True
        for item in order["items"] if restock_items is None else restock_items:
            restored = self.engine.restock(item["product_id"], item["quantity"], item.get("variant_id")) and restored
        return restored

    def _refund(self, order: dict) -> bool:
        reference = order["payment"].get("reference")
        if not reference:
            logger.warning(f"Order {order['order_number']} marked refunded without a payment reference")
            return False
        try:
            self.gateway.refund(reference, order["payment"].get("amount"))
        except PaymentGatewayError as exc:
            logger.error(f"Refund failed for {order['order_number']}: {exc}")
            return False
        return True

    # -------------------- cancellation --------------------

    def cancel_order(self, order_id: str, reason: str, user_id: Optional[str] = None) -> dict:
        order = self.get_order(order_id)
        if OrderStatus(order["status"]) not in CANCELLABLE:
            raise OrderNotCancellableError(order["status"])

        try:
            order, outcome = self._transition(order_id, OrderStatus.CANCELLED, f"Cancelled: {reason}", user_id)
        except InvalidTransitionError as exc:
            raise OrderNotCancellableError(exc.from_status) from exc

        logger.info(
            f"Order {order['order_number']} cancelled by {user_id}: {reason} "
            f"(refund processed: {outcome['refund_processed']})"
        )
        return {
            "order": order,
            "refund_processed": outcome["refund_processed"],
            "stock_restored": outcome.get("stock_restored", False),
        }
