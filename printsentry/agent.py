from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from printsentry.central import AlertOutbox, CentralClient
from printsentry.config import merge_configuration
from printsentry.events import AgentEvent, EventBus, EventKind
from printsentry.health import ProcessSampler, derive_issues
from printsentry.log import get_logger
from printsentry.models import (
    AgentCommand,
    AgentCommandResponse,
    AgentConfiguration,
    AgentHealthStatus,
    AgentMetrics,
    AgentReport,
    AgentState,
    AlertSeverity,
    CommandType,
    DeviceRecord,
    utcnow,
)
from printsentry.registry import DeviceRegistry
from printsentry.scanner import NetworkScanner
from printsentry.timers import PeriodicTask

logger = get_logger("agent")

# Loop name -> configuration field holding its interval
LOOP_INTERVALS = {
    "scan": "scan_interval",
    "report": "report_interval",
    "heartbeat": "heartbeat_interval",
}

# Fields that change how devices are probed
_SCANNER_FIELDS = (
    "printer_ports", "snmp_community", "snmp_timeout",
    "ping_timeout", "port_timeout", "oui_file",
)

PUSHED_SEVERITIES = (AlertSeverity.WARNING, AlertSeverity.CRITICAL)

CommandResult = Tuple[str, Dict[str, Any]]


class CommandError(Exception):
    """A command that could not be carried out; the message goes back to central."""


class AgentOrchestrator:
    """Owns the configuration and drives the scan, report and heartbeat loops.

    Every public method is safe to call from any thread.  Scans are serialised
    so reconciliations never overlap; events are published after the registry
    lock is released.
    """

    def __init__(
        self,
        config: AgentConfiguration,
        scanner_factory: Callable[[AgentConfiguration], NetworkScanner] = NetworkScanner.from_config,
        central: Optional[CentralClient] = None,
        registry: Optional[DeviceRegistry] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._config = config
        self._scanner_factory = scanner_factory
        self.scanner = scanner_factory(config)
        self.central = central or CentralClient(config)
        self.central.on_outcome = self._record_outcome
        self.outbox = AlertOutbox(self.central)
        self.registry = registry or DeviceRegistry()
        self.bus = bus or EventBus()

        self._state = AgentState.STOPPED
        self._state_lock = threading.RLock()
        self._config_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._tasks: Dict[str, PeriodicTask] = {}
        self._started_at: Optional[float] = None
        self._registered = False

        self._metrics = AgentMetrics()
        self._metrics_lock = threading.Lock()
        self._response_total_ms = 0.0
        self._last_central_communication: Optional[datetime] = None
        self._sampler = ProcessSampler()

        self._handlers: Dict[CommandType, Callable[[AgentCommand], CommandResult]] = {
            CommandType.SCAN_NETWORK: self._command_scan_network,
            CommandType.GENERATE_REPORT: self._command_generate_report,
            CommandType.UPDATE_CONFIGURATION: self._command_update_configuration,
            CommandType.CLEAR_ALERTS: self._command_clear_alerts,
        }
        missing = set(CommandType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no handler for command types: {sorted(m.value for m in missing)}")

        self.bus.subscribe(self._count_alert, kinds=[EventKind.ALERT_RAISED])
        self.bus.subscribe(self._push_alert, kinds=[EventKind.ALERT_RAISED])

    # -- properties --------------------------------------------------------

    @property
    def config(self) -> AgentConfiguration:
        return self._config

    @property
    def state(self) -> AgentState:
        with self._state_lock:
            return self._state

    @property
    def registered(self) -> bool:
        return self._registered

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> bool:
        with self._state_lock:
            if self._state != AgentState.STOPPED:
                logger.warning("agent already %s", self._state.value.lower())
                return False
            self._state = AgentState.STARTING
            self._stop_event.clear()
            self.outbox.start()
        config = self.config
        logger.info("starting agent %s (%s)", config.agent_id, config.agent_name)
        self._started_at = time.monotonic()

        self._register()
        if not self._registered:
            logger.warning("central registration failed; running in degraded mode")

        try:
            self.scan_network()
        except Exception:
            logger.exception("initial scan failed")

        with self._state_lock:
            if self._state != AgentState.STARTING:
                logger.info("start aborted by a concurrent stop")
                return False
            if config.enable_auto_discovery:
                self._arm("scan", self._scan_cycle, config.scan_interval)
            self._arm("report", self._report_cycle, config.report_interval)
            self._arm("heartbeat", self._heartbeat_cycle, config.heartbeat_interval)
            self._state = AgentState.RUNNING
        logger.info("agent running")
        return True

    def stop(self) -> None:
        with self._state_lock:
            if self._state in (AgentState.STOPPED, AgentState.STOPPING):
                return
            self._state = AgentState.STOPPING
            tasks = list(self._tasks.values())
            self._tasks.clear()
        logger.info("stopping agent")
        self._stop_event.set()
        # In-flight cycles see the stop signal between steps; wait for them
        for task in tasks:
            task.stop()
        self.outbox.stop()

        if self.central.configured:
            try:
                self.send_report()
            except Exception:
                logger.exception("final report failed")

        with self._state_lock:
            self._state = AgentState.STOPPED
        logger.info("agent stopped")

    def _arm(self, name: str, action: Callable[[], object], interval: float) -> None:
        task = PeriodicTask(name, action, interval)
        self._tasks[name] = task
        task.start()

    def _register(self) -> None:
        if not self.central.configured:
            logger.warning("no central service configured; reports stay local")
            return
        self._registered = self.central.register(self.config)

    # -- loop cycles -------------------------------------------------------

    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def _scan_cycle(self) -> None:
        self.scan_network()

    def _report_cycle(self) -> None:
        if not self.central.configured or self._stopping():
            return
        self.send_report()
        if self._stopping():
            return
        changes = self.central.pull_configuration()
        if changes and not self._stopping():
            self._apply_remote_configuration(changes)

    def _heartbeat_cycle(self) -> None:
        if not self.central.configured or self._stopping():
            return
        if not self._registered:
            self._register()
        self.central.heartbeat("healthy" if self._registered else "degraded")
        if self._stopping():
            return
        for command in self.central.poll_commands():
            if self._stopping():
                logger.info("leaving command %s for the next run", command.command_id)
                break
            response = self.process_command(command)
            self.central.send_command_response(response)

    def _apply_remote_configuration(self, changes: Dict[str, Any]) -> None:
        try:
            config = merge_configuration(self.config, changes)
        except ValidationError as e:
            logger.warning("ignoring invalid configuration from central: %s", e)
            return
        if config != self.config:
            logger.info("applying configuration from central")
            self.update_configuration(config)

    # -- operations --------------------------------------------------------

    def scan_network(self) -> List[DeviceRecord]:
        config = self.config
        stop_event = None if self.state == AgentState.STOPPED else self._stop_event
        with self._scan_lock:
            started = time.monotonic()
            found = self.scanner.scan_all(
                config.scan_ranges, config.max_concurrent_scans, stop_event
            )
            events = self.registry.reconcile(found)
            duration = time.monotonic() - started
            counts = self.registry.counts()
            with self._metrics_lock:
                self._metrics.scans_completed += 1
                self._metrics.last_network_scan = utcnow()
                self._metrics.network_scan_duration_seconds = round(duration, 3)
                self._metrics.total_devices_discovered = counts.total
                self._metrics.devices_online = counts.online
                self._metrics.devices_offline = counts.offline
                self._metrics.devices_with_errors = counts.error
        logger.info(
            "network scan finished in %.1fs: %d found, %d monitored",
            duration, len(found), counts.total,
        )
        self.bus.publish_all(events)
        return found

    def scan_device(self, address: str) -> Optional[DeviceRecord]:
        """Probe one address and merge the result like a scan would."""
        with self._scan_lock:
            found = self.scanner.scan_one(address)
            events = self.registry.reconcile([found]) if found else []
        self.bus.publish_all(events)
        return self.registry.get(address) if found else None

    def send_report(self) -> bool:
        config = self.config
        report = AgentReport(
            agent_id=config.agent_id,
            agent_name=config.agent_name,
            location=config.location,
            health=self.get_health_status(),
            devices=self.registry.snapshot(),
            alerts=self.registry.active_alerts(),
            metrics=self.get_metrics(),
        )
        ok = self.central.send_report(report)
        if ok:
            logger.debug("report sent (%d devices)", len(report.devices))
        return ok

    def get_health_status(self) -> AgentHealthStatus:
        state = self.state
        latency = self.central.measure_latency() if self.central.configured else -1.0
        stats = self._sampler.sample()
        counts = self.registry.counts()
        metrics = self.get_metrics()
        uptime = time.monotonic() - self._started_at if self._started_at is not None else 0.0
        with self._metrics_lock:
            last_contact = self._last_central_communication
        return AgentHealthStatus(
            is_healthy=state == AgentState.RUNNING,
            state=state,
            uptime_seconds=round(uptime, 3),
            last_central_communication=last_contact,
            devices_monitored=counts.total,
            active_alerts=len(self.registry.active_alerts()),
            cpu_usage=stats.cpu_percent,
            memory_usage_mb=stats.memory_mb,
            network_latency_ms=round(latency, 2),
            issues=derive_issues(
                metrics, counts.offline, counts.error,
                latency if self.central.configured else None,
            ),
        )

    def get_metrics(self) -> AgentMetrics:
        with self._metrics_lock:
            return self._metrics.model_copy()

    def get_devices(self) -> List[DeviceRecord]:
        return self.registry.snapshot()

    def get_device(self, address: str) -> Optional[DeviceRecord]:
        return self.registry.get(address)

    def update_configuration(self, config: AgentConfiguration) -> None:
        with self._config_lock:
            previous = self._config
            self._config = config
        self.central.configure(config)
        if any(getattr(previous, f) != getattr(config, f) for f in _SCANNER_FIELDS):
            self.scanner = self._scanner_factory(config)
        logger.info("configuration updated")

        with self._state_lock:
            if self._state != AgentState.RUNNING:
                return
            for name, field_name in LOOP_INTERVALS.items():
                task = self._tasks.get(name)
                interval = getattr(config, field_name)
                if task is not None and interval != getattr(previous, field_name):
                    task.rearm(interval)
            if config.enable_auto_discovery and "scan" not in self._tasks:
                self._arm("scan", self._scan_cycle, config.scan_interval)
            elif not config.enable_auto_discovery and "scan" in self._tasks:
                self._tasks.pop("scan").stop(timeout=0)

    # -- commands ----------------------------------------------------------

    def process_command(self, command: AgentCommand) -> AgentCommandResponse:
        type_name = getattr(command.type, "value", command.type)
        logger.info("processing command %s (%s)", command.command_id, type_name)
        if command.expires_at is not None and command.expires_at < utcnow():
            return self._respond(command, False, "Command expired")
        handler = self._handlers.get(command.type)
        if handler is None:
            logger.warning("unknown command type %r", type_name)
            return self._respond(command, False, f"Unknown command type: {type_name}")
        try:
            message, data = handler(command)
        except CommandError as e:
            return self._respond(command, False, str(e))
        except ValidationError as e:
            return self._respond(command, False, f"Invalid configuration: {_validation_summary(e)}")
        except Exception as e:
            logger.exception("command %s failed", command.command_id)
            return self._respond(command, False, f"Command failed: {e}")
        return self._respond(command, True, message, data)

    def _respond(
        self,
        command: AgentCommand,
        success: bool,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> AgentCommandResponse:
        if not success:
            logger.warning("command %s failed: %s", command.command_id, message)
        return AgentCommandResponse(
            command_id=command.command_id,
            agent_id=self.config.agent_id,
            success=success,
            message=message,
            data=data or {},
        )

    def _command_scan_network(self, command: AgentCommand) -> CommandResult:
        found = self.scan_network()
        return f"Scan completed: {len(found)} device(s) found", {"devicesFound": len(found)}

    def _command_generate_report(self, command: AgentCommand) -> CommandResult:
        if not self.send_report():
            raise CommandError("Report could not be delivered")
        return "Report sent", {}

    def _command_update_configuration(self, command: AgentCommand) -> CommandResult:
        changes = command.parameters.get("configuration")
        if not isinstance(changes, dict) or not changes:
            raise CommandError("Missing or invalid 'configuration' parameter")
        current = self.config
        config = merge_configuration(current, changes)
        changed = sorted(
            name for name in AgentConfiguration.model_fields
            if getattr(current, name) != getattr(config, name)
        )
        self.update_configuration(config)
        return "Configuration updated", {"changed": changed}

    def _command_clear_alerts(self, command: AgentCommand) -> CommandResult:
        cleared = self.registry.clear_alerts()
        logger.info("cleared %d alert(s)", cleared)
        return f"{cleared} alert(s) cleared", {"cleared": cleared}

    # -- event subscribers and counters ------------------------------------

    def _count_alert(self, event: AgentEvent) -> None:
        with self._metrics_lock:
            self._metrics.total_alerts_generated += 1

    def _push_alert(self, event: AgentEvent) -> None:
        alert = event.alert
        if alert is None or alert.severity not in PUSHED_SEVERITIES:
            return
        if not self.central.configured or self._stopping():
            return
        if self.outbox.running:
            self.outbox.submit(alert, event.device)
        else:
            logger.debug("agent not running; %s alert left for the next report", alert.code)

    def _record_outcome(self, operation: str, success: bool, elapsed_ms: float) -> None:
        with self._metrics_lock:
            if success:
                self._metrics.successful_communications += 1
                self._last_central_communication = utcnow()
            else:
                self._metrics.failed_communications += 1
            self._response_total_ms += elapsed_ms
            total = self._metrics.successful_communications + self._metrics.failed_communications
            self._metrics.average_response_time_ms = round(self._response_total_ms / total, 2)


def _validation_summary(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
    )
