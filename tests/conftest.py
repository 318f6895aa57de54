from __future__ import annotations

from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from printsentry.central import CentralClient
from printsentry.models import (
    AgentConfiguration,
    ConsumableLevel,
    DeviceMetrics,
    DeviceRecord,
    DeviceStatus,
)


class FakeScanner:
    """Stand-in for NetworkScanner that returns a fixed device list."""

    def __init__(self, devices: Optional[List[DeviceRecord]] = None) -> None:
        self.devices = list(devices or [])
        self.calls = 0
        self.stop_events = []

    def scan_all(self, ranges, per_range_concurrency, stop_event=None):
        self.calls += 1
        self.stop_events.append(stop_event)
        return [device.model_copy(deep=True) for device in self.devices]

    def scan_one(self, address):
        for device in self.devices:
            if device.ip_address == address:
                return device.model_copy(deep=True)
        return None


def make_device(
    ip: str = "192.168.1.50",
    status: DeviceStatus = DeviceStatus.ONLINE,
    name: str = "HP-LaserJet-4000",
    toner: Optional[int] = None,
) -> DeviceRecord:
    consumables = []
    if toner is not None:
        consumables.append(ConsumableLevel(name="Black Toner", current_level=toner, max_level=100))
    return DeviceRecord(
        ip_address=ip,
        mac_address="00:11:22:33:44:55",
        name=name,
        model="HP LaserJet 4000",
        open_ports=[9100, 161],
        status=status,
        metrics=DeviceMetrics(page_count=1200, consumables=consumables),
    )


@pytest.fixture
def agent_config():
    return AgentConfiguration(
        agent_id="agent-test",
        agent_name="Test Agent",
        location="Lab",
        central_api_url="http://central.invalid/api",
        api_key="k3y",
        scan_ranges=("192.168.1.0/30",),
        max_concurrent_scans=4,
        scan_interval=60,
        report_interval=60,
        heartbeat_interval=60,
    )


@pytest.fixture
def fake_scanner():
    return FakeScanner([make_device()])


@pytest.fixture
def fake_central():
    """CentralClient double where every call succeeds."""
    central = MagicMock(spec=CentralClient)
    central.configured = True
    central.register.return_value = True
    central.send_report.return_value = True
    central.send_alert.return_value = True
    central.heartbeat.return_value = True
    central.poll_commands.return_value = []
    central.send_command_response.return_value = True
    central.pull_configuration.return_value = None
    central.measure_latency.return_value = 12.5
    central.test_connectivity.return_value = True
    return central
