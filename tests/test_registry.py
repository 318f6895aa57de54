"""Tests for printsentry.registry (reconciliation, alerts, counts)."""
from __future__ import annotations

from datetime import timedelta

from conftest import make_device

from printsentry.events import EventKind
from printsentry.models import AlertSeverity, DeviceStatus, utcnow
from printsentry.registry import (
    CODE_CONSUMABLE_CRITICAL,
    CODE_CONSUMABLE_LOW,
    CODE_DISCOVERED,
    CODE_STATUS_CHANGED,
    DeviceRegistry,
)


class TestDiscovery:
    def test_new_device_is_inserted_once(self):
        registry = DeviceRegistry()
        now = utcnow()
        events = registry.reconcile([make_device()], now)
        assert [e.kind for e in events] == [EventKind.DEVICE_DISCOVERED, EventKind.ALERT_RAISED]
        device = registry.get("192.168.1.50")
        assert device.first_detected == now
        assert device.last_seen == now
        assert [a.code for a in device.alerts] == [CODE_DISCOVERED]
        assert device.alerts[0].severity == AlertSeverity.INFO

    def test_same_device_twice_is_not_rediscovered(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device()])
        events = registry.reconcile([make_device()])
        assert events == []
        assert len(registry) == 1
        assert len(registry.get("192.168.1.50").alerts) == 1

    def test_empty_scan_leaves_registry_untouched(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device()])
        assert registry.reconcile([]) == []
        device = registry.get("192.168.1.50")
        assert device.status == DeviceStatus.ONLINE
        assert len(registry) == 1


class TestStatusChanges:
    def test_online_to_offline_raises_one_warning(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device()])
        events = registry.reconcile([make_device(status=DeviceStatus.OFFLINE)])
        assert [e.kind for e in events] == [EventKind.STATUS_CHANGED, EventKind.ALERT_RAISED]
        assert events[0].previous_status == DeviceStatus.ONLINE
        alert = events[1].alert
        assert alert.code == CODE_STATUS_CHANGED
        assert alert.severity == AlertSeverity.WARNING
        assert alert.metadata == {"previous": "Online", "current": "Offline"}
        device = registry.get("192.168.1.50")
        assert device.status == DeviceStatus.OFFLINE
        assert [a.code for a in device.alerts].count(CODE_STATUS_CHANGED) == 1

    def test_recovery_is_info(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device(status=DeviceStatus.ERROR)])
        events = registry.reconcile([make_device(status=DeviceStatus.ONLINE)])
        assert events[-1].alert.severity == AlertSeverity.INFO

    def test_last_seen_never_moves_backwards(self):
        registry = DeviceRegistry()
        now = utcnow()
        registry.reconcile([make_device()], now)
        registry.reconcile([make_device()], now - timedelta(minutes=5))
        assert registry.get("192.168.1.50").last_seen == now
        later = now + timedelta(minutes=5)
        registry.reconcile([make_device()], later)
        assert registry.get("192.168.1.50").last_seen == later


class TestAttributeMerge:
    def test_fallback_name_does_not_replace_real_name(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device(name="lobby-printer")])
        silent = make_device(name="Printer-192-168-1-50")
        silent.model = None
        registry.reconcile([silent])
        device = registry.get("192.168.1.50")
        assert device.name == "lobby-printer"
        assert device.model == "HP LaserJet 4000"

    def test_metrics_and_ports_are_replaced(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device()])
        update = make_device()
        update.open_ports = [631]
        update.metrics.page_count = 1300
        registry.reconcile([update])
        device = registry.get("192.168.1.50")
        assert device.open_ports == [631]
        assert device.metrics.page_count == 1300


class TestConsumables:
    def test_low_then_critical(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device(toner=50)])
        low = registry.reconcile([make_device(toner=15)])
        assert [e.alert.code for e in low] == [CODE_CONSUMABLE_LOW]
        assert low[0].alert.severity == AlertSeverity.WARNING
        critical = registry.reconcile([make_device(toner=5)])
        assert [e.alert.code for e in critical] == [CODE_CONSUMABLE_CRITICAL]
        assert critical[0].alert.severity == AlertSeverity.CRITICAL

    def test_active_alert_suppresses_repeat(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device(toner=15)])
        assert registry.reconcile([make_device(toner=14)]) == []

    def test_cleared_alert_can_fire_again(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device(toner=15)])
        registry.clear_alerts()
        events = registry.reconcile([make_device(toner=14)])
        assert [e.alert.code for e in events] == [CODE_CONSUMABLE_LOW]

    def test_unknown_level_raises_nothing(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device(toner=-3)])
        codes = [a.code for a in registry.get("192.168.1.50").alerts]
        assert codes == [CODE_DISCOVERED]


class TestQueries:
    def test_counts(self):
        registry = DeviceRegistry()
        registry.reconcile([
            make_device("10.0.0.1"),
            make_device("10.0.0.2", status=DeviceStatus.OFFLINE),
            make_device("10.0.0.3", status=DeviceStatus.ERROR),
            make_device("10.0.0.4", status=DeviceStatus.ERROR),
        ])
        counts = registry.counts()
        assert (counts.total, counts.online, counts.offline, counts.error) == (4, 1, 1, 2)

    def test_clear_alerts_returns_count(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device("10.0.0.1"), make_device("10.0.0.2")])
        assert len(registry.active_alerts()) == 2
        assert registry.clear_alerts() == 2
        assert registry.active_alerts() == []
        assert registry.clear_alerts() == 0

    def test_snapshot_is_a_copy(self):
        registry = DeviceRegistry()
        registry.reconcile([make_device()])
        [copy] = registry.snapshot()
        copy.name = "changed"
        copy.alerts.clear()
        device = registry.get("192.168.1.50")
        assert device.name == "HP-LaserJet-4000"
        assert len(device.alerts) == 1

    def test_unknown_address(self):
        assert DeviceRegistry().get("10.9.9.9") is None
