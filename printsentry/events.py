from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from printsentry.log import get_logger
from printsentry.models import DeviceAlert, DeviceRecord, DeviceStatus, utcnow

logger = get_logger("events")


class EventKind(str, Enum):
    DEVICE_DISCOVERED = "device_discovered"
    STATUS_CHANGED = "status_changed"
    ALERT_RAISED = "alert_raised"


@dataclass(frozen=True)
class AgentEvent:
    kind: EventKind
    device: DeviceRecord
    alert: Optional[DeviceAlert] = None
    previous_status: Optional[DeviceStatus] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "ip": self.device.ip_address,
            "name": self.device.name,
            "status": self.device.status.value,
        }
        if self.previous_status is not None:
            payload["previous_status"] = self.previous_status.value
        if self.alert is not None:
            payload["alert"] = self.alert.to_wire()
        return payload


Subscriber = Callable[[AgentEvent], None]


class EventBus:
    """Synchronous observer list.

    Subscribers are called in subscription order, once per event, on the
    publishing thread.  A subscriber that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[Subscriber, Optional[FrozenSet[EventKind]]]] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: Subscriber,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> Callable[[], None]:
        entry = (callback, frozenset(kinds) if kinds is not None else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: AgentEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, kinds in subscribers:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("event subscriber %r failed on %s", callback, event.kind.value)

    def publish_all(self, events: Iterable[AgentEvent]) -> None:
        for event in events:
            self.publish(event)


class JsonlEventSink:
    """Subscriber that appends every event to a JSONL journal."""

    def __init__(self, path: Optional[str]) -> None:
        self._path = path
        self._handle = open(path, "a", encoding="utf-8") if path else None
        self._lock = threading.Lock()

    def __call__(self, event: AgentEvent) -> None:
        if not self._handle:
            return
        line = json.dumps(event.to_dict(), ensure_ascii=True, default=str)
        with self._lock:
            self._handle.write(line)
            self._handle.write("\n")
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._handle:
                self._handle.close()
                self._handle = None
