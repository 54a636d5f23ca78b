"""Tests for the per-device poller: cycle outcomes, backoff, overlap and cancellation."""

import logging
import threading
import time

import pytest

from zmk_battery_monitor.ble.errors import (
    ConnectFailure,
    GatewayTimeout,
    ReadFailure,
    UnexpectedDisconnect,
)
from zmk_battery_monitor.models import BatteryReading, ErrorKind, Half, PollerState
from zmk_battery_monitor.poller import DevicePoller, PollerSettings
from zmk_battery_monitor.policies import BackoffPolicy


@pytest.fixture
def settings():
    return PollerSettings(
        interval=60.0,
        connect_timeout=20.0,
        read_timeout=10.0,
        disconnect_timeout=5.0,
        backoff_policy=BackoffPolicy(initial_delay=5.0, max_delay=300.0, jitter_ratio=0.0),
    )


@pytest.fixture
def poller(corne, fake_gateway, store, settings, fake_clock):
    store.create(corne.address)
    p = DevicePoller(corne, fake_gateway, store, settings, clock=fake_clock)
    yield p
    p.stop(timeout=2.0)


class TestPollerSettings:
    def test_cycle_budget(self, settings):
        assert settings.cycle_budget == 20.0 + 2 * 10.0 + 5.0

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PollerSettings(interval=0)


class TestRunCycle:
    def test_successful_cycle_reads_both_halves(self, poller, fake_gateway, store, corne):
        assert poller.run_cycle()

        snapshot = store.get(corne.address)
        assert snapshot.central == BatteryReading(80, 1_000.0)
        assert snapshot.peripheral == BatteryReading(75, 1_000.0)
        assert snapshot.state == PollerState.IDLE
        assert snapshot.failure_count == 0
        assert snapshot.last_error is None
        assert snapshot.last_cycle_at == 1_000.0
        assert fake_gateway.disconnects == [corne.address]
        assert fake_gateway.open == []

    def test_timeout_after_success_keeps_readings_and_backs_off(
        self, poller, fake_gateway, store, corne, fake_clock
    ):
        poller.run_cycle()
        fake_clock.advance(60)
        fake_gateway.connect_errors[corne.address] = [
            GatewayTimeout("Connect timed out after 20.0 seconds")
        ]

        assert not poller.run_cycle()

        snapshot = store.get(corne.address)
        assert snapshot.central.level == 80
        assert snapshot.peripheral.level == 75
        assert snapshot.last_error.kind == ErrorKind.TIMEOUT
        assert snapshot.failure_count == 1
        assert snapshot.state == PollerState.BACKING_OFF
        assert snapshot.backoff.duration == 5.0
        assert snapshot.backoff.until == 1_065.0
        assert poller.state == PollerState.BACKING_OFF

    def test_consecutive_failures_double_backoff(self, poller, fake_gateway, store, corne):
        fake_gateway.connect_errors[corne.address] = [
            ConnectFailure("not found"),
            ConnectFailure("not found"),
            ConnectFailure("not found"),
        ]

        durations = []
        for _ in range(3):
            poller.run_cycle()
            durations.append(store.get(corne.address).backoff.duration)

        assert durations == [5.0, 10.0, 20.0]
        assert store.get(corne.address).failure_count == 3
        assert store.get(corne.address).last_error.kind == ErrorKind.CONNECT_FAILURE

    def test_backoff_never_exceeds_maximum(self, corne, fake_gateway, store, fake_clock):
        settings = PollerSettings(
            backoff_policy=BackoffPolicy(initial_delay=5.0, max_delay=20.0, jitter_ratio=0.5)
        )
        store.create(corne.address)
        poller = DevicePoller(corne, fake_gateway, store, settings, clock=fake_clock)
        fake_gateway.connect_errors[corne.address] = [
            ConnectFailure("not found") for _ in range(12)
        ]

        for _ in range(12):
            poller.run_cycle()
            assert 0 < store.get(corne.address).backoff.duration <= 20.0
        assert store.get(corne.address).failure_count == 12

    def test_one_half_failing_is_still_a_success(
        self, poller, fake_gateway, store, corne
    ):
        fake_gateway.connect_errors[corne.address] = [ConnectFailure("not found")]
        poller.run_cycle()
        fake_gateway.levels[corne.address] = {
            Half.CENTRAL: 64,
            Half.PERIPHERAL: ReadFailure("No battery service", reason=ReadFailure.NOT_FOUND),
        }

        assert poller.run_cycle()

        snapshot = store.get(corne.address)
        assert snapshot.central.level == 64
        assert snapshot.peripheral is None
        assert snapshot.failure_count == 0
        assert snapshot.state == PollerState.IDLE
        assert snapshot.backoff is None
        assert snapshot.last_error.kind == ErrorKind.READ_FAILURE
        assert snapshot.last_error.half == Half.PERIPHERAL

    def test_both_halves_failing_counts_one_failure(
        self, poller, fake_gateway, store, corne
    ):
        fake_gateway.levels[corne.address] = {
            Half.CENTRAL: ReadFailure("Empty battery level value"),
            Half.PERIPHERAL: UnexpectedDisconnect("link dropped"),
        }

        assert not poller.run_cycle()

        snapshot = store.get(corne.address)
        assert snapshot.failure_count == 1
        assert snapshot.last_error.kind == ErrorKind.UNEXPECTED_DISCONNECT
        assert snapshot.last_error.half == Half.PERIPHERAL
        assert snapshot.state == PollerState.BACKING_OFF
        assert fake_gateway.disconnects == [corne.address]

    def test_readings_are_monotonic(self, poller, fake_gateway, store, corne, fake_clock):
        poller.run_cycle()
        fake_clock.advance(-500)
        fake_gateway.default_levels = {Half.CENTRAL: 10, Half.PERIPHERAL: 10}

        poller.run_cycle()

        snapshot = store.get(corne.address)
        assert snapshot.central == BatteryReading(80, 1_000.0)
        assert snapshot.peripheral == BatteryReading(75, 1_000.0)

    def test_unexpected_exception_is_classified_and_logged(
        self, poller, fake_gateway, store, corne, caplog
    ):
        fake_gateway.connect_errors[corne.address] = [RuntimeError("adapter exploded")]

        with caplog.at_level(logging.ERROR):
            assert not poller.run_cycle()

        snapshot = store.get(corne.address)
        assert snapshot.last_error.kind == ErrorKind.CONNECT_FAILURE
        assert "adapter exploded" in snapshot.last_error.message
        assert "Unexpected error connecting" in caplog.text

    def test_next_cycle_after_backoff_starts_from_idle(
        self, poller, fake_gateway, store, corne
    ):
        fake_gateway.connect_errors[corne.address] = [ConnectFailure("not found")]
        poller.run_cycle()
        assert poller.state == PollerState.BACKING_OFF

        assert poller.run_cycle()
        assert poller.state == PollerState.IDLE
        assert poller.backoff is None


class TestOverlap:
    def test_tick_is_skipped_while_cycle_in_flight(self, poller, fake_gateway, corne):
        fake_gateway.connect_gate = threading.Event()
        worker = threading.Thread(target=poller.tick)
        worker.start()
        try:
            assert fake_gateway.connect_started.wait(2.0)
            assert poller.cycle_in_flight
            assert poller.tick() is False
            assert poller.refresh() is False
        finally:
            fake_gateway.connect_gate.set()
            worker.join(2.0)

        assert fake_gateway.connect_calls == [corne.address]
        assert not poller.cycle_in_flight
        assert poller.tick() is True


@pytest.mark.slow
class TestThreadedPoller:
    def test_stop_interrupts_connect(self, corne, fake_gateway, store, fast_settings):
        store.create(corne.address)
        poller = DevicePoller(corne, fake_gateway, store, fast_settings)
        fake_gateway.connect_gate = threading.Event()

        poller.start()
        assert fake_gateway.connect_started.wait(2.0)
        assert poller.stop(timeout=2.0)

        assert not poller.is_running
        assert poller.state == PollerState.IDLE
        snapshot = store.get(corne.address)
        assert snapshot.state == PollerState.IDLE
        assert snapshot.failure_count == 0
        assert fake_gateway.open == []

    def test_stop_during_read_releases_connection(
        self, corne, fake_gateway, store, fast_settings
    ):
        store.create(corne.address)
        poller = DevicePoller(corne, fake_gateway, store, fast_settings)
        fake_gateway.read_gate = threading.Event()

        poller.start()
        assert fake_gateway.read_started.wait(2.0)
        assert poller.stop(timeout=2.0)

        assert fake_gateway.disconnects == [corne.address]
        assert fake_gateway.open == []
        assert store.get(corne.address).central is None

    def test_recovers_after_short_backoff(self, corne, fake_gateway, store, fast_settings):
        store.create(corne.address)
        poller = DevicePoller(corne, fake_gateway, store, fast_settings)
        fake_gateway.connect_errors[corne.address] = [ConnectFailure("not found")]

        poller.start()
        try:
            assert store.wait_for(
                lambda snapshots: snapshots[0][1].central is not None, timeout=2.0
            )
        finally:
            assert poller.stop(timeout=2.0)

        snapshot = store.get(corne.address)
        assert snapshot.central.level == 80
        assert snapshot.failure_count == 0
        assert snapshot.state == PollerState.IDLE
        assert len(fake_gateway.connect_calls) == 2

    def test_refresh_triggers_an_immediate_cycle(
        self, corne, fake_gateway, store, fast_settings
    ):
        store.create(corne.address)
        poller = DevicePoller(corne, fake_gateway, store, fast_settings)
        poller.start()
        try:
            assert store.wait_for(
                lambda snapshots: snapshots[0][1].last_cycle_at is not None, timeout=2.0
            )
            first = store.get(corne.address).central
            deadline = time.monotonic() + 2.0
            while not poller.refresh():  # the first tick may still hold the cycle lock
                assert time.monotonic() < deadline
                time.sleep(0.01)
            assert store.wait_for(
                lambda snapshots: snapshots[0][1].central != first, timeout=2.0
            )
        finally:
            poller.stop(timeout=2.0)

        assert len(fake_gateway.connect_calls) >= 2

    def test_stop_without_start(self, poller):
        assert poller.stop(timeout=0.1)
        assert poller.refresh() is False
