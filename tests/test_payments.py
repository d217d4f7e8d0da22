"""Tests for the Stripe gateway adapter, with the Stripe API stubbed out."""

from types import SimpleNamespace

import pytest
import stripe

from errors import PaymentGatewayError
from payments import StripeGateway, to_minor_units


@pytest.fixture
def gateway(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", None)
    return StripeGateway("sk_test_123")


@pytest.fixture
def intents(monkeypatch):
    calls = []

    def create(**params):
        calls.append(params)
        return SimpleNamespace(id="pi_abc", status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)
    return calls


def test_minor_units():
    assert to_minor_units(38.54) == 3854
    assert to_minor_units(0.1 + 0.2) == 30


def test_sets_api_key(gateway):
    assert stripe.api_key == "sk_test_123"


def test_successful_charge(gateway, intents):
    result = gateway.charge(38.54, "usd", "cus_123", {"order_number": "ORD2610180001"}, payment_method_id="pm_1")

    assert result.success
    assert result.reference == "pi_abc"
    assert result.status == "completed"
    params = intents[0]
    assert params["amount"] == 3854
    assert params["confirm"] is True
    assert params["customer"] == "cus_123"
    assert params["payment_method"] == "pm_1"
    assert params["metadata"] == {"order_number": "ORD2610180001"}


def test_anonymous_charge_omits_customer(gateway, intents):
    gateway.charge(10, "usd", None, {})
    assert "customer" not in intents[0]
    assert "payment_method" not in intents[0]


def test_unfinished_intent_is_a_failure(gateway, monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "create", lambda **params: SimpleNamespace(id="pi_abc", status="requires_action")
    )
    result = gateway.charge(10, "usd", None, {})

    assert not result.success
    assert result.status == "failed"
    assert "requires_action" in result.error


def test_card_decline_returns_failed_result(gateway, monkeypatch):
    def decline(**params):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", decline)
    result = gateway.charge(10, "usd", None, {"order_number": "ORD2610180001"})

    assert not result.success
    assert result.reference is None
    assert result.error == "Your card was declined."


def test_connection_error_raises(gateway, monkeypatch):
    def unreachable(**params):
        raise stripe.APIConnectionError("Could not connect to Stripe")

    monkeypatch.setattr(stripe.PaymentIntent, "create", unreachable)
    with pytest.raises(PaymentGatewayError):
        gateway.charge(10, "usd", None, {})


def test_refund(gateway, monkeypatch):
    calls = []

    def create(**params):
        calls.append(params)
        return SimpleNamespace(id="re_1")

    monkeypatch.setattr(stripe.Refund, "create", create)

    assert gateway.refund("pi_abc", 38.54) == "re_1"
    assert calls == [{"payment_intent": "pi_abc", "amount": 3854}]


def test_refund_error_raises(gateway, monkeypatch):
    def fail(**params):
        raise stripe.InvalidRequestError("Charge already refunded", None)

    monkeypatch.setattr(stripe.Refund, "create", fail)
    with pytest.raises(PaymentGatewayError):
        gateway.refund("pi_abc")
