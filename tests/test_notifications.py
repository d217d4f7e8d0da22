"""Tests for status notification messages."""

import logging

from notifications import LoggingNotifier, render_message


def test_shipped_message_includes_tracking_number():
    order = {"shipping": {"tracking_number": "TRK12345678ABC123"}}
    assert render_message(order, "shipped") == "Your order has been shipped! Tracking number: TRK12345678ABC123"


def test_shipped_without_tracking_number():
    assert render_message({"shipping": {}}, "shipped").endswith("Tracking number: pending")


def test_pending_has_no_message():
    assert render_message({}, "pending") is None


def test_logging_notifier(caplog):
    order = {"order_number": "ORD2610180001", "user_id": "u1", "shipping": {}}

    with caplog.at_level(logging.INFO, logger="notifications"):
        LoggingNotifier().notify(order, "cancelled", "confirmed")

    assert "ORD2610180001" in caplog.text
    assert "confirmed -> cancelled" in caplog.text
    assert "Your order has been cancelled" in caplog.text


def test_logging_notifier_skips_silent_statuses(caplog):
    with caplog.at_level(logging.INFO, logger="notifications"):
        LoggingNotifier().notify({"order_number": "ORD2610180001"}, "pending", None)

    assert caplog.text == ""
