from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

LOW_CONSUMABLE_PERCENT = 20.0
CRITICAL_CONSUMABLE_PERCENT = 10.0

# JetDirect, IPP, LPD, SNMP
DEFAULT_PRINTER_PORTS: Tuple[int, ...] = (9100, 631, 515, 161)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def fallback_device_name(address: str) -> str:
    return f"Printer-{address.replace('.', '-')}"


class WireModel(BaseModel):
    """Base for everything exchanged with the central service (camelCase)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DeviceStatus(str, Enum):
    UNKNOWN = "Unknown"
    ONLINE = "Online"
    OFFLINE = "Offline"
    ERROR = "Error"


class AlertSeverity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"


class AgentState(str, Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"


class DeviceAlert(WireModel):
    id: str = Field(default_factory=_new_id)
    severity: AlertSeverity
    code: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConsumableLevel(WireModel):
    name: str
    current_level: int = -1
    max_level: int = -1

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage_remaining(self) -> Optional[float]:
        # SNMP reports -2 (unknown) and -3 (some remaining) as levels
        if self.max_level <= 0 or self.current_level < 0:
            return None
        return min(100.0, self.current_level / self.max_level * 100.0)

    @property
    def is_low(self) -> bool:
        pct = self.percentage_remaining
        return pct is not None and pct < LOW_CONSUMABLE_PERCENT

    @property
    def is_critical(self) -> bool:
        pct = self.percentage_remaining
        return pct is not None and pct < CRITICAL_CONSUMABLE_PERCENT


class DeviceMetrics(WireModel):
    page_count: Optional[int] = None
    consumables: List[ConsumableLevel] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)


class DeviceRecord(WireModel):
    id: str = Field(default_factory=_new_id)
    ip_address: str
    mac_address: Optional[str] = None
    name: str = ""
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None
    open_ports: List[int] = Field(default_factory=list)
    status: DeviceStatus = DeviceStatus.UNKNOWN
    metrics: DeviceMetrics = Field(default_factory=DeviceMetrics)
    first_detected: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    alerts: List[DeviceAlert] = Field(default_factory=list)

    @property
    def active_alerts(self) -> List[DeviceAlert]:
        return [alert for alert in self.alerts if alert.active]


class AgentConfiguration(WireModel):
    """Immutable configuration snapshot; replace it, never mutate it."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )

    agent_id: str = Field(min_length=1)
    agent_name: str = ""
    location: str = ""
    central_api_url: str = ""
    api_key: str = ""
    scan_ranges: Tuple[str, ...] = ()
    max_concurrent_scans: int = Field(default=10, ge=1)
    printer_ports: Tuple[Annotated[int, Field(ge=1, le=65535)], ...] = DEFAULT_PRINTER_PORTS
    snmp_community: str = "public"
    snmp_timeout: float = Field(default=5.0, gt=0)
    ping_timeout: float = Field(default=2.0, gt=0)
    port_timeout: float = Field(default=3.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    scan_interval: float = Field(default=1800.0, gt=0)
    report_interval: float = Field(default=300.0, gt=0)
    heartbeat_interval: float = Field(default=60.0, gt=0)
    enable_auto_discovery: bool = True
    oui_file: Optional[str] = None


class AgentMetrics(WireModel):
    total_devices_discovered: int = 0
    devices_online: int = 0
    devices_offline: int = 0
    devices_with_errors: int = 0
    total_alerts_generated: int = 0
    successful_communications: int = 0
    failed_communications: int = 0
    average_response_time_ms: float = 0.0
    scans_completed: int = 0
    last_network_scan: Optional[datetime] = None
    network_scan_duration_seconds: float = 0.0


class AgentHealthStatus(WireModel):
    is_healthy: bool
    state: AgentState
    uptime_seconds: float
    last_central_communication: Optional[datetime] = None
    devices_monitored: int = 0
    active_alerts: int = 0
    cpu_usage: float = 0.0
    memory_usage_mb: float = 0.0
    network_latency_ms: float = -1.0
    issues: List[str] = Field(default_factory=list)


class AgentReport(WireModel):
    agent_id: str
    agent_name: str = ""
    location: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    health: AgentHealthStatus
    devices: List[DeviceRecord] = Field(default_factory=list)
    alerts: List[DeviceAlert] = Field(default_factory=list)
    metrics: AgentMetrics = Field(default_factory=AgentMetrics)


class CommandType(str, Enum):
    SCAN_NETWORK = "ScanNetwork"
    GENERATE_REPORT = "GenerateReport"
    UPDATE_CONFIGURATION = "UpdateConfiguration"
    CLEAR_ALERTS = "ClearAlerts"


# Numeric codes central sends for command types; unsupported ones stay names
COMMAND_TYPE_CODES: Dict[int, str] = {
    0: "UpdateConfiguration",
    1: "ScanNetwork",
    2: "RestartAgent",
    3: "UpdateFirmware",
    4: "GenerateReport",
    5: "TestPrinter",
    6: "ClearAlerts",
}


class AgentCommand(WireModel):
    command_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str = ""
    # Types outside the closed set stay as raw strings so they can be answered.
    type: Union[CommandType, str] = Field(union_mode="left_to_right")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type_from_code(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return COMMAND_TYPE_CODES.get(value, str(value))
        return value


class AgentCommandResponse(WireModel):
    command_id: str
    agent_id: str = ""
    success: bool
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
