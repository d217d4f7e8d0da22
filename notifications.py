"""Order status notifications."""

import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

MESSAGES = {
    "confirmed": "Your order has been confirmed and is being prepared.",
    "processing": "Your order is being processed and will ship soon.",
    "shipped": "Your order has been shipped! Tracking number: {tracking_number}",
    "delivered": "Your order has been delivered. Thank you for your purchase!",
    "cancelled": "Your order has been cancelled. If you have any questions, please contact support.",
    "payment_failed": "Payment for your order failed. Please update your payment method.",
    "refunded": "Your refund has been issued to your original payment method.",
}


class NotificationSink(Protocol):
    def notify(self, order: dict, new_status: str, previous_status: Optional[str]) -> None:
        ...


def render_message(order: dict, status: str) -> Optional[str]:
    template = MESSAGES.get(status)
    if template is None:
        return None
    tracking_number = (order.get("shipping") or {}).get("tracking_number")
    return template.format(tracking_number=tracking_number or "pending")


class LoggingNotifier:
    """Writes the customer-facing message to the log instead of sending it."""

    def notify(self, order, new_status, previous_status):
        message = render_message(order, new_status)
        if message is None:
            return
        logger.info(
            f"Order notification for {order.get('order_number')} "
            f"(user {order.get('user_id')}, {previous_status} -> {new_status}): {message}"
        )
