from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from printsentry.events import AgentEvent, EventKind
from printsentry.log import get_logger
from printsentry.models import (
    AlertSeverity,
    DeviceAlert,
    DeviceRecord,
    DeviceStatus,
    fallback_device_name,
    utcnow,
)

logger = get_logger("registry")

CODE_DISCOVERED = "DEVICE_DISCOVERED"
CODE_STATUS_CHANGED = "STATUS_CHANGED"
CODE_CONSUMABLE_LOW = "CONSUMABLE_LOW"
CODE_CONSUMABLE_CRITICAL = "CONSUMABLE_CRITICAL"

_DESCRIPTIVE_FIELDS = ("mac_address", "model", "manufacturer", "serial_number", "description")


@dataclass(frozen=True)
class RegistryCounts:
    total: int = 0
    online: int = 0
    offline: int = 0
    error: int = 0


class DeviceRegistry:
    """Last known state of every device, keyed by IP address.

    All access goes through one re-entrant lock.  Readers receive deep copies,
    so nothing handed out can change under the caller or race a reconcile.
    """

    def __init__(self) -> None:
        self._devices: Dict[str, DeviceRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._devices

    def get(self, address: str) -> Optional[DeviceRecord]:
        with self._lock:
            device = self._devices.get(address)
            return device.model_copy(deep=True) if device else None

    def snapshot(self) -> List[DeviceRecord]:
        with self._lock:
            return [device.model_copy(deep=True) for device in self._devices.values()]

    def active_alerts(self) -> List[DeviceAlert]:
        with self._lock:
            return [
                alert.model_copy()
                for device in self._devices.values()
                for alert in device.alerts
                if alert.active
            ]

    def counts(self) -> RegistryCounts:
        with self._lock:
            statuses = [device.status for device in self._devices.values()]
        return RegistryCounts(
            total=len(statuses),
            online=statuses.count(DeviceStatus.ONLINE),
            offline=statuses.count(DeviceStatus.OFFLINE),
            error=statuses.count(DeviceStatus.ERROR),
        )

    def clear_alerts(self) -> int:
        """Mark every alert inactive; returns how many were active."""
        cleared = 0
        with self._lock:
            for device in self._devices.values():
                for alert in device.alerts:
                    if alert.active:
                        alert.active = False
                        cleared += 1
        return cleared

    def reconcile(
        self, observed: Iterable[DeviceRecord], now: Optional[datetime] = None
    ) -> List[AgentEvent]:
        """Merge one scan's devices and return the events to publish.

        Devices missing from ``observed`` are left untouched: not seeing a
        device once says nothing about its status.
        """
        now = now or utcnow()
        events: List[AgentEvent] = []
        with self._lock:
            for device in observed:
                current = self._devices.get(device.ip_address)
                if current is None:
                    events.extend(self._insert(device, now))
                else:
                    events.extend(self._update(current, device, now))
        return events

    def _insert(self, observed: DeviceRecord, now: datetime) -> List[AgentEvent]:
        record = observed.model_copy(deep=True)
        record.first_detected = now
        record.last_seen = now
        alert = DeviceAlert(
            severity=AlertSeverity.INFO,
            code=CODE_DISCOVERED,
            message=f"New device discovered: {record.name} ({record.ip_address})",
            timestamp=now,
        )
        record.alerts.append(alert)
        consumable_alerts = _consumable_alerts(record, now)
        record.alerts.extend(consumable_alerts)
        self._devices[record.ip_address] = record
        logger.info("new device discovered: %s (%s)", record.name, record.ip_address)

        snapshot = record.model_copy(deep=True)
        events = [
            AgentEvent(EventKind.DEVICE_DISCOVERED, snapshot, timestamp=now),
            AgentEvent(EventKind.ALERT_RAISED, snapshot, alert=alert, timestamp=now),
        ]
        events.extend(
            AgentEvent(EventKind.ALERT_RAISED, snapshot, alert=extra, timestamp=now)
            for extra in consumable_alerts
        )
        return events

    def _update(
        self, current: DeviceRecord, observed: DeviceRecord, now: datetime
    ) -> List[AgentEvent]:
        if now > current.last_seen:
            current.last_seen = now
        for field_name in _DESCRIPTIVE_FIELDS:
            value = getattr(observed, field_name)
            if value:
                setattr(current, field_name, value)
        # A fallback name only means SNMP was silent this time
        if observed.name and observed.name != fallback_device_name(observed.ip_address):
            current.name = observed.name
        current.open_ports = list(observed.open_ports)
        current.metrics = observed.metrics.model_copy(deep=True)

        new_alerts: List[DeviceAlert] = []
        previous_status: Optional[DeviceStatus] = None
        if observed.status != current.status:
            previous_status = current.status
            current.status = observed.status
            severity = (
                AlertSeverity.WARNING
                if observed.status in (DeviceStatus.OFFLINE, DeviceStatus.ERROR)
                else AlertSeverity.INFO
            )
            new_alerts.append(
                DeviceAlert(
                    severity=severity,
                    code=CODE_STATUS_CHANGED,
                    message=(
                        f"Status changed: {current.name} is now {observed.status.value}"
                        f" (was {previous_status.value})"
                    ),
                    timestamp=now,
                    metadata={
                        "previous": previous_status.value,
                        "current": observed.status.value,
                    },
                )
            )
            logger.info(
                "device %s status %s -> %s",
                current.ip_address, previous_status.value, observed.status.value,
            )
        new_alerts.extend(_consumable_alerts(current, now))
        current.alerts.extend(new_alerts)

        if not new_alerts:
            return []
        snapshot = current.model_copy(deep=True)
        events: List[AgentEvent] = []
        if previous_status is not None:
            events.append(
                AgentEvent(
                    EventKind.STATUS_CHANGED, snapshot,
                    previous_status=previous_status, timestamp=now,
                )
            )
        events.extend(
            AgentEvent(EventKind.ALERT_RAISED, snapshot, alert=alert, timestamp=now)
            for alert in new_alerts
        )
        return events


def _consumable_alerts(record: DeviceRecord, now: datetime) -> List[DeviceAlert]:
    """One alert per consumable entering the low or critical band.

    An alert that is still active suppresses repeats until it is cleared.
    """
    active = {
        (alert.code, alert.metadata.get("consumable"))
        for alert in record.alerts
        if alert.active
    }
    alerts = []
    for consumable in record.metrics.consumables:
        if consumable.is_critical:
            code, severity, label = CODE_CONSUMABLE_CRITICAL, AlertSeverity.CRITICAL, "critically low"
        elif consumable.is_low:
            code, severity, label = CODE_CONSUMABLE_LOW, AlertSeverity.WARNING, "low"
        else:
            continue
        if (code, consumable.name) in active:
            continue
        alerts.append(
            DeviceAlert(
                severity=severity,
                code=code,
                message=(
                    f"{consumable.name} on {record.name} is {label}"
                    f" ({consumable.percentage_remaining:.0f}%)"
                ),
                timestamp=now,
                metadata={
                    "consumable": consumable.name,
                    "percentage": consumable.percentage_remaining,
                },
            )
        )
    return alerts
