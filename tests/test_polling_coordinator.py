"""Tests for the polling coordinator."""

import threading
import time

import pytest
from pubsub import pub

from zmk_battery_monitor.ble.errors import ConnectFailure
from zmk_battery_monitor.coordinator import (
    TOPIC_CONFIG_APPLIED,
    TOPIC_POLLER_STARTED,
    TOPIC_POLLER_STOPPED,
    PollingCoordinator,
)
from zmk_battery_monitor.models import DeviceConfig, Half, PollerState


@pytest.fixture
def coordinator(fake_gateway, fast_settings):
    c = PollingCoordinator(fake_gateway, settings=fast_settings, register_atexit=False)
    yield c
    c.shutdown()


@pytest.mark.slow
class TestApplyConfig:
    def test_starts_one_poller_per_enabled_device(self, coordinator, corne, lily):
        disabled = DeviceConfig(name="Off", address="AA:BB:CC:DD:EE:03", enabled=False)

        coordinator.apply_config([corne, disabled, lily])

        assert coordinator.addresses == [corne.address, lily.address]
        assert coordinator.wait_for_first_cycle(2.0)
        rows = coordinator.get_all_snapshots()
        assert [device.name for device, _ in rows] == ["Corne", "Lily58"]
        assert all(s.central.level == 80 for _, s in rows)
        assert disabled.address not in coordinator.store

    def test_apply_is_idempotent(self, coordinator, fake_gateway, corne):
        coordinator.apply_config([corne])
        assert coordinator.wait_for_first_cycle(2.0)
        poller = coordinator.poller(corne.address)
        snapshot = coordinator.store.get(corne.address)

        coordinator.apply_config([corne])

        assert coordinator.poller(corne.address) is poller
        assert poller.is_running
        assert coordinator.store.get(corne.address).central == snapshot.central
        assert len(coordinator.store) == 1
        assert fake_gateway.connect_calls == [corne.address]

    def test_changed_device_config_keeps_poller_and_readings(self, coordinator, corne):
        coordinator.apply_config([corne])
        assert coordinator.wait_for_first_cycle(2.0)
        poller = coordinator.poller(corne.address)
        renamed = DeviceConfig(
            name="Corne v4", address=corne.address.lower(), low_battery_threshold=30
        )

        coordinator.apply_config([renamed])

        assert coordinator.poller(corne.address) is poller
        device, snapshot = coordinator.get_all_snapshots()[0]
        assert device.name == "Corne v4"
        assert device.low_battery_threshold == 30
        assert snapshot.central.level == 80

    def test_duplicate_addresses_use_first_entry(self, coordinator, corne):
        duplicate = DeviceConfig(name="Copy", address=corne.address)

        coordinator.apply_config([corne, duplicate])

        assert coordinator.addresses == [corne.address]
        assert coordinator.poller(corne.address).device.name == "Corne"

    def test_removing_device_mid_cycle_releases_connection(
        self, coordinator, fake_gateway, corne, lily
    ):
        fake_gateway.read_gate = threading.Event()
        coordinator.apply_config([corne])
        assert fake_gateway.read_started.wait(2.0)
        retired = coordinator.poller(corne.address)

        coordinator.apply_config([lily])

        assert not retired.is_running
        assert corne.address not in coordinator.store
        assert fake_gateway.disconnects.count(corne.address) == 1
        assert all(c.address != corne.address for c in fake_gateway.open)
        assert coordinator.addresses == [lily.address]

    def test_readding_device_while_old_poller_stops_keeps_entry(
        self, coordinator, fake_gateway, corne
    ):
        fake_gateway.read_gate = threading.Event()
        fake_gateway.disconnect_delay = 0.3
        coordinator.apply_config([corne])
        assert fake_gateway.read_started.wait(2.0)
        retired = coordinator.poller(corne.address)

        remover = threading.Thread(target=coordinator.apply_config, args=([],))
        remover.start()
        while coordinator.poller(corne.address) is not None:
            time.sleep(0.01)
        coordinator.apply_config([corne])
        remover.join(2.0)
        fake_gateway.read_gate.set()

        assert not remover.is_alive()
        assert not retired.is_running
        assert coordinator.poller(corne.address) is not retired
        assert corne.address in coordinator.store
        assert coordinator.wait_for_first_cycle(2.0)
        [(device, snapshot)] = coordinator.get_all_snapshots()
        assert device.address == corne.address
        assert snapshot.central.level == 80

    def test_devices_are_polled_independently(self, coordinator, fake_gateway, corne, lily):
        fake_gateway.connect_errors[corne.address] = [
            ConnectFailure("not found") for _ in range(1000)
        ]
        fake_gateway.levels[lily.address] = {Half.CENTRAL: 55, Half.PERIPHERAL: 44}

        coordinator.apply_config([corne, lily])

        assert coordinator.store.wait_for(
            lambda snapshots: dict(snapshots)[lily.address].central is not None,
            timeout=2.0,
        )
        lily_snapshot = coordinator.store.get(lily.address)
        assert lily_snapshot.central.level == 55
        assert lily_snapshot.peripheral.level == 44
        assert lily_snapshot.failure_count == 0
        corne_snapshot = coordinator.store.get(corne.address)
        assert corne_snapshot.central is None
        assert corne_snapshot.failure_count >= 1


@pytest.mark.slow
class TestLifecycle:
    def test_lifecycle_events_are_published(self, coordinator, corne, lily):
        started, stopped, applied = [], [], []

        def on_started(coordinator, address, name):
            started.append((address, name))

        def on_stopped(coordinator, address, name):
            stopped.append((address, name))

        def on_applied(coordinator, addresses):
            applied.append(addresses)

        pub.subscribe(on_started, TOPIC_POLLER_STARTED)
        pub.subscribe(on_stopped, TOPIC_POLLER_STOPPED)
        pub.subscribe(on_applied, TOPIC_CONFIG_APPLIED)

        coordinator.apply_config([corne, lily])
        coordinator.apply_config([lily])

        assert started == [(corne.address, "Corne"), (lily.address, "Lily58")]
        assert stopped == [(corne.address, "Corne")]
        assert applied == [[corne.address, lily.address], [lily.address]]

    def test_shutdown_stops_everything(self, fake_gateway, fast_settings, corne, lily):
        fake_gateway.connect_gate = threading.Event()
        coordinator = PollingCoordinator(
            fake_gateway, settings=fast_settings, register_atexit=False
        )
        coordinator.apply_config([corne, lily])
        assert fake_gateway.connect_started.wait(2.0)
        pollers = [coordinator.poller(a) for a in coordinator.addresses]

        coordinator.shutdown()

        assert all(not p.is_running for p in pollers)
        assert all(p.state == PollerState.IDLE for p in pollers)
        assert fake_gateway.closed
        assert fake_gateway.open == []
        assert len(coordinator.store) == 0
        assert coordinator.thread_coordinator.alive_threads() == []

    def test_shutdown_is_idempotent_and_blocks_new_config(
        self, fake_gateway, fast_settings, corne
    ):
        coordinator = PollingCoordinator(
            fake_gateway, settings=fast_settings, register_atexit=False
        )
        coordinator.shutdown()
        coordinator.shutdown()

        coordinator.apply_config([corne])
        assert coordinator.addresses == []

    def test_refresh_wakes_idle_pollers(self, coordinator, fake_gateway, corne):
        coordinator.apply_config([corne])
        assert coordinator.wait_for_first_cycle(2.0)
        poller = coordinator.poller(corne.address)
        while poller.cycle_in_flight:
            time.sleep(0.01)

        coordinator.refresh()

        assert coordinator.store.wait_for(
            lambda _snapshots: len(fake_gateway.connect_calls) >= 2, timeout=2.0
        )

    def test_context_manager_shuts_down(self, fake_gateway, fast_settings, corne):
        with PollingCoordinator(
            fake_gateway, settings=fast_settings, register_atexit=False
        ) as coordinator:
            coordinator.apply_config([corne])
            assert coordinator.wait_for_first_cycle(2.0)
            poller = coordinator.poller(corne.address)

        assert not poller.is_running
        assert fake_gateway.closed

    def test_wait_for_first_cycle_times_out(self, coordinator, fake_gateway, corne):
        fake_gateway.connect_gate = threading.Event()
        coordinator.apply_config([corne])

        assert not coordinator.wait_for_first_cycle(0.05)
