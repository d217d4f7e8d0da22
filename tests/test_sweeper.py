"""Tests for the background reservation sweeper."""

import logging
import time

from sweeper import ExpirationSweeper


class ExplodingEngine:
    def cleanup_expired(self):
        raise RuntimeError("database unreachable")


def test_run_once_releases_expired(engine, make_product, stock, clock):
    pid = make_product(quantity=5)
    engine.reserve(pid, 2, "u1", "s1")
    clock.advance(minutes=16)

    result = ExpirationSweeper(engine).run_once()

    assert result == {"products_updated": 1, "total_released": 2}
    assert stock(pid)["reserved"] == 0


def test_run_once_with_nothing_expired(engine, make_product):
    pid = make_product()
    engine.reserve(pid, 1, "u1", "s1")

    assert ExpirationSweeper(engine).run_once() == {"products_updated": 0, "total_released": 0}


def test_failed_sweep_is_logged_not_raised(caplog):
    sweeper = ExpirationSweeper(ExplodingEngine())

    with caplog.at_level(logging.ERROR, logger="sweeper"):
        assert sweeper.run_once() is None

    assert "Reservation sweep failed" in caplog.text


def test_thread_sweeps_until_stopped(engine, make_product, stock, clock):
    pid = make_product(quantity=5)
    engine.reserve(pid, 3, "u1", "s1")
    clock.advance(minutes=30)

    sweeper = ExpirationSweeper(engine, interval_seconds=0.01)
    sweeper.start()
    try:
        assert sweeper.running
        deadline = time.monotonic() + 5
        while stock(pid)["reserved"] and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        sweeper.stop(timeout=5)

    assert stock(pid)["reserved"] == 0
    assert not sweeper.running


def test_start_and_stop_are_idempotent(engine):
    sweeper = ExpirationSweeper(engine, interval_seconds=60)
    sweeper.stop()

    sweeper.start()
    first = sweeper._thread
    sweeper.start()
    assert sweeper._thread is first

    sweeper.stop(timeout=5)
    sweeper.stop()
    assert not sweeper.running
