"""
Payment gateway adapters.

The order service only needs two calls, charge and refund, and treats each as
a synchronous request/response. StripeGateway maps them onto PaymentIntents.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import stripe

from errors import PaymentGatewayError

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    success: bool
    reference: Optional[str]
    status: str
    amount: float
    currency: str
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class PaymentGateway(Protocol):
    def charge(
        self,
        amount: float,
        currency: str,
        customer_ref: Optional[str],
        metadata: dict,
        payment_method_id: Optional[str] = None,
    ) -> PaymentResult:
        ...

    def refund(self, payment_ref: str, amount: Optional[float] = None) -> str:
        ...


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    """Charges through Stripe PaymentIntents, confirmed server-side."""

    def __init__(self, api_key: str):
        stripe.api_key = api_key

    def charge(self, amount, currency, customer_ref, metadata, payment_method_id=None):
        params = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if customer_ref:
            params["customer"] = customer_ref
        if payment_method_id:
            params["payment_method"] = payment_method_id

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as e:
            logger.warning(f"Card declined for {metadata.get('order_number')}: {e.user_message or e}")
            return PaymentResult(
                success=False,
                reference=None,
                status="failed",
                amount=amount,
                currency=currency,
                error=e.user_message or str(e),
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(str(e)) from e

        succeeded = intent.status == "succeeded"
        logger.info(f"Payment intent {intent.id} for {metadata.get('order_number')}: {intent.status}")
        return PaymentResult(
            success=succeeded,
            reference=intent.id,
            status="completed" if succeeded else "failed",
            amount=amount,
            currency=currency,
            error=None if succeeded else f"Payment intent status: {intent.status}",
        )

    def refund(self, payment_ref, amount=None):
        params = {"payment_intent": payment_ref}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            raise PaymentGatewayError(str(e)) from e

        logger.info(f"Refund {refund.id} created for {payment_ref}")
        return refund.id
