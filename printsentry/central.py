"""HTTP client for the central monitoring service.

No method raises on network or protocol trouble: failures are logged and
turned into ``False``, ``[]`` or ``None`` so the agent keeps running while
the central service is away.
"""
from __future__ import annotations

import json
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib import error, request

from pydantic import ValidationError

from printsentry import __version__
from printsentry.log import get_logger
from printsentry.models import (
    AgentCommand,
    AgentCommandResponse,
    AgentConfiguration,
    AgentReport,
    DeviceAlert,
    DeviceRecord,
    utcnow,
)

logger = get_logger("central")

USER_AGENT = f"PrintSentry/{__version__}"

OutcomeCallback = Callable[[str, bool, float], None]

# Alerts waiting for delivery before new ones are dropped
ALERT_QUEUE_SIZE = 100


class CentralError(Exception):
    """A request that did not produce a usable response."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class _Endpoint:
    base_url: str
    agent_id: str
    api_key: str
    timeout: float


@dataclass
class _Response:
    status: int
    body: bytes
    headers: Dict[str, str]

    def json(self) -> Any:
        if not self.body.strip():
            return None
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CentralError(f"invalid JSON in response: {e}", self.status) from e


class CentralClient:
    def __init__(
        self,
        config: AgentConfiguration,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> None:
        self.on_outcome = on_outcome
        self._endpoint = self._endpoint_for(config)
        self._config_etag: Optional[str] = None
        self._lock = threading.Lock()

    @staticmethod
    def _endpoint_for(config: AgentConfiguration) -> _Endpoint:
        return _Endpoint(
            base_url=config.central_api_url.rstrip("/"),
            agent_id=config.agent_id,
            api_key=config.api_key,
            timeout=config.request_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self._endpoint.base_url)

    def configure(self, config: AgentConfiguration) -> None:
        """Point the client at a new endpoint and credential in one swap."""
        endpoint = self._endpoint_for(config)
        with self._lock:
            if endpoint.base_url != self._endpoint.base_url:
                self._config_etag = None
            self._endpoint = endpoint

    # -- transport ---------------------------------------------------------

    def _send(
        self,
        endpoint: _Endpoint,
        method: str,
        path: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> _Response:
        if not endpoint.base_url:
            raise CentralError("central service URL is not configured")
        all_headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            "X-Agent-Id": endpoint.agent_id,
            "X-API-Key": endpoint.api_key,
        }
        data = None
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")
            all_headers["Content-Type"] = "application/json"
        all_headers.update(headers or {})
        req = request.Request(
            endpoint.base_url + path, data=data, headers=all_headers, method=method
        )
        try:
            with request.urlopen(req, timeout=endpoint.timeout) as resp:
                return _Response(resp.status, resp.read(), dict(resp.headers.items()))
        except error.HTTPError as e:
            # 304 and 404 are meaningful answers for some operations
            body = e.read() if e.fp is not None else b""
            return _Response(e.code, body, dict(e.headers.items()) if e.headers else {})
        except (error.URLError, OSError) as e:
            reason = getattr(e, "reason", e)
            raise CentralError(f"{method} {path} failed: {reason}") from e

    def _exchange(
        self,
        operation: str,
        method: str,
        path_template: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None,
        accept: tuple = (),
        quiet: bool = False,
    ) -> Optional[_Response]:
        """Send one request, report its outcome, and return the response.

        Returns None on transport failure or on a status that is neither 2xx
        nor listed in ``accept``.
        """
        endpoint = self._endpoint
        path = path_template.format(agent_id=endpoint.agent_id)
        log = logger.debug if quiet else logger.warning
        start = time.monotonic()
        try:
            response = self._send(endpoint, method, path, payload, headers)
        except CentralError as e:
            self._report(operation, False, start)
            log("%s failed: %s", operation, e)
            return None
        ok = 200 <= response.status < 300 or response.status in accept
        self._report(operation, ok, start)
        if not ok:
            detail = response.body[:200].decode("utf-8", errors="replace")
            log("%s failed: HTTP %d %s", operation, response.status, detail)
            return None
        return response

    def _report(self, operation: str, success: bool, start: float) -> None:
        if self.on_outcome is None:
            return
        elapsed_ms = (time.monotonic() - start) * 1000
        try:
            self.on_outcome(operation, success, elapsed_ms)
        except Exception:
            logger.exception("outcome callback failed for %s", operation)

    # -- operations --------------------------------------------------------

    def register(self, config: AgentConfiguration) -> bool:
        logger.info("registering agent %s with %s", config.agent_id, self._endpoint.base_url)
        payload = {
            "agentId": config.agent_id,
            "agentName": config.agent_name,
            "location": config.location,
            "version": __version__,
            "capabilities": {
                "supportsSnmp": True,
                "maxConcurrentScans": config.max_concurrent_scans,
                "printerPorts": list(config.printer_ports),
            },
            "networkRanges": list(config.scan_ranges),
        }
        response = self._exchange("register", "POST", "/agents/register", payload)
        if response is None:
            return False
        logger.info("agent registered")
        return True

    def send_report(self, report: AgentReport) -> bool:
        logger.debug("sending report with %d device(s)", len(report.devices))
        return self._exchange("report", "POST", "/agents/reports", report.to_wire()) is not None

    def send_alert(self, alert: DeviceAlert, device: Optional[DeviceRecord] = None) -> bool:
        logger.info("sending %s alert: %s", alert.severity.value, alert.message)
        payload: Dict[str, Any] = {"agentId": self._endpoint.agent_id, "alert": alert.to_wire()}
        if device is not None:
            payload["device"] = {
                "id": device.id,
                "ipAddress": device.ip_address,
                "name": device.name,
                "status": device.status.value,
            }
        return self._exchange("alert", "POST", "/agents/alerts", payload) is not None

    def poll_commands(self) -> List[AgentCommand]:
        response = self._exchange(
            "poll_commands", "GET", "/agents/{agent_id}/commands", accept=(404,)
        )
        if response is None or response.status in (204, 404):
            return []
        try:
            items = response.json()
        except CentralError as e:
            logger.warning("poll_commands: %s", e)
            return []
        if items is None:
            return []
        if not isinstance(items, list):
            logger.warning("poll_commands: expected a list, got %s", type(items).__name__)
            return []
        commands = []
        for item in items:
            try:
                commands.append(AgentCommand.model_validate(item))
            except ValidationError as e:
                logger.warning("skipping malformed command %r: %s", item, e)
                self._reject_malformed(item, e)
        if commands:
            logger.debug("received %d pending command(s)", len(commands))
        return commands

    def _reject_malformed(self, item: Any, e: ValidationError) -> None:
        command_id = item.get("commandId") if isinstance(item, dict) else None
        if not isinstance(command_id, str) or not command_id:
            return
        fields = ", ".join(sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]}))
        self.send_command_response(AgentCommandResponse(
            command_id=command_id,
            agent_id=self._endpoint.agent_id,
            success=False,
            message=f"Malformed command: invalid {fields or 'payload'}",
        ))

    def send_command_response(self, response: AgentCommandResponse) -> bool:
        logger.debug("sending response for command %s: %s", response.command_id, response.success)
        return self._exchange(
            "command_response", "POST", "/agents/commands/responses", response.to_wire()
        ) is not None

    def pull_configuration(self) -> Optional[Dict[str, Any]]:
        """Fetch the configuration the central service holds for this agent.

        Returns the raw configuration object, or None when it is unchanged
        (HTTP 304) or unavailable.
        """
        headers = {}
        if self._config_etag:
            headers["If-None-Match"] = self._config_etag
        response = self._exchange(
            "pull_configuration", "GET", "/agents/{agent_id}/configuration",
            headers=headers, accept=(304,),
        )
        if response is None or response.status in (204, 304):
            logger.debug("configuration unchanged")
            return None
        try:
            data = response.json()
        except CentralError as e:
            logger.warning("pull_configuration: %s", e)
            return None
        if not isinstance(data, dict):
            logger.warning("pull_configuration: expected an object")
            return None
        etag = {key.lower(): value for key, value in response.headers.items()}.get("etag")
        if etag:
            self._config_etag = etag
        return data

    def heartbeat(self, status: str = "healthy") -> bool:
        payload = {
            "agentId": self._endpoint.agent_id,
            "timestamp": utcnow().isoformat(),
            "status": status,
        }
        return self._exchange(
            "heartbeat", "POST", "/agents/heartbeat", payload, quiet=True
        ) is not None

    def measure_latency(self) -> float:
        """Round trip of ``GET /health`` in ms, or -1 when unreachable.

        Not reported to the outcome callback.
        """
        endpoint = self._endpoint
        start = time.monotonic()
        try:
            response = self._send(endpoint, "GET", "/health")
        except CentralError as e:
            logger.debug("connectivity test failed: %s", e)
            return -1.0
        if not 200 <= response.status < 300:
            logger.debug("connectivity test failed: HTTP %d", response.status)
            return -1.0
        return (time.monotonic() - start) * 1000

    def test_connectivity(self) -> bool:
        return self.measure_latency() >= 0


class AlertOutbox:
    """Pushes alerts to central from a worker thread.

    ``submit`` never blocks: when ``maxsize`` alerts are already waiting the
    new one is dropped (it still reaches central in the next report).
    ``stop`` discards whatever is still queued and joins the worker.
    """

    def __init__(self, central: CentralClient, maxsize: int = ALERT_QUEUE_SIZE) -> None:
        self.central = central
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="printsentry-alerts", daemon=True
        )
        self._thread.start()

    def submit(self, alert: DeviceAlert, device: Optional[DeviceRecord] = None) -> bool:
        if self._stop_event.is_set():
            return False
        try:
            self._queue.put_nowait((alert, device))
        except queue.Full:
            self.dropped += 1
            logger.warning("alert queue full; dropping %s alert %s", alert.severity.value, alert.code)
            return False
        return True

    def stop(self) -> None:
        self._stop_event.set()
        discarded = self._discard_pending()
        if discarded:
            logger.info("discarded %d queued alert(s) on shutdown", discarded)
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        thread.join()

    def _discard_pending(self) -> int:
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return count
            count += 1

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                item = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            if item is None or self._stop_event.is_set():
                break
            alert, device = item
            try:
                self.central.send_alert(alert, device)
            except Exception:
                logger.exception("alert push failed")
