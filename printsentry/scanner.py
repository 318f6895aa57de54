from __future__ import annotations

import ipaddress
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Sequence

from printsentry.log import get_logger
from printsentry.models import (
    DEFAULT_PRINTER_PORTS,
    AgentConfiguration,
    ConsumableLevel,
    DeviceMetrics,
    DeviceRecord,
    fallback_device_name,
    utcnow,
)
from printsentry.probe import Prober, status_from_attributes
from printsentry.vendor import identify_manufacturer, load_oui_map

logger = get_logger("scanner")


class InvalidRangeError(ValueError):
    pass


def expand_range(spec: str) -> List[str]:
    """Expand ``10.0.0.0/24``, ``10.0.0.5-10.0.0.9`` or ``10.0.0.7``.

    CIDR blocks exclude their network and broadcast addresses, so /31 and /32
    expand to nothing.
    """
    text = spec.strip()
    if not text:
        raise InvalidRangeError("empty range")
    try:
        if "/" in text:
            network = ipaddress.IPv4Network(text, strict=False)
            first = int(network.network_address)
            last = int(network.broadcast_address)
            return [str(ipaddress.IPv4Address(value)) for value in range(first + 1, last)]
        if "-" in text:
            start_text, end_text = (part.strip() for part in text.split("-", 1))
            start = int(ipaddress.IPv4Address(start_text))
            end = int(ipaddress.IPv4Address(end_text))
            if start > end:
                raise InvalidRangeError(f"range start {start_text} is after end {end_text}")
            return [str(ipaddress.IPv4Address(value)) for value in range(start, end + 1)]
        return [str(ipaddress.IPv4Address(text))]
    except InvalidRangeError:
        raise
    except ValueError as e:
        raise InvalidRangeError(str(e)) from e


def expand_ranges(specs: Iterable[str]) -> List[str]:
    """Expand every range, skipping malformed ones with a warning."""
    addresses: List[str] = []
    seen = set()
    for spec in specs:
        try:
            expanded = expand_range(spec)
        except InvalidRangeError as e:
            logger.warning("skipping invalid range %r: %s", spec, e)
            continue
        for address in expanded:
            if address not in seen:
                seen.add(address)
                addresses.append(address)
    return addresses


class NetworkScanner:
    """Finds printer-like endpoints: reachable hosts with a printer port open."""

    def __init__(
        self,
        prober: Optional[Prober] = None,
        ports: Sequence[int] = DEFAULT_PRINTER_PORTS,
        oui_map: Optional[Dict[str, str]] = None,
    ) -> None:
        self.prober = prober or Prober()
        self.ports = tuple(ports)
        self.oui_map = oui_map or {}

    @classmethod
    def from_config(cls, config: AgentConfiguration) -> "NetworkScanner":
        oui_map: Dict[str, str] = {}
        if config.oui_file:
            try:
                oui_map = load_oui_map(config.oui_file)
            except OSError as e:
                logger.warning("could not read OUI file %s: %s", config.oui_file, e)
        return cls(Prober.from_config(config), config.printer_ports, oui_map)

    def scan_all(
        self,
        ranges: Sequence[str],
        per_range_concurrency: int,
        stop_event: Optional[threading.Event] = None,
    ) -> List[DeviceRecord]:
        """Scan all ranges concurrently and concatenate their devices.

        A range that fails is logged and contributes nothing; the others still
        complete.  An address listed in several ranges is reported once.
        """
        ranges = list(ranges)
        if not ranges:
            return []
        logger.info("scanning %d range(s)", len(ranges))
        devices: List[DeviceRecord] = []
        seen = set()
        with ThreadPoolExecutor(
            max_workers=len(ranges), thread_name_prefix="printsentry-range"
        ) as pool:
            futures = [
                (spec, pool.submit(self.scan_range, spec, per_range_concurrency, stop_event))
                for spec in ranges
            ]
            for spec, future in futures:
                try:
                    found = future.result()
                except Exception:
                    logger.exception("scan of range %r failed", spec)
                    continue
                for device in found:
                    if device.ip_address not in seen:
                        seen.add(device.ip_address)
                        devices.append(device)
        logger.info("scan finished: %d printer(s) found", len(devices))
        return devices

    def scan_range(
        self,
        spec: str,
        concurrency: int,
        stop_event: Optional[threading.Event] = None,
    ) -> List[DeviceRecord]:
        try:
            addresses = expand_range(spec)
        except InvalidRangeError as e:
            logger.warning("skipping invalid range %r: %s", spec, e)
            return []
        if not addresses:
            return []
        logger.debug("scanning range %s (%d addresses)", spec, len(addresses))

        def probe(address: str) -> Optional[DeviceRecord]:
            # Queued addresses are dropped once a stop is requested
            if stop_event is not None and stop_event.is_set():
                return None
            return self.scan_one(address)

        # The pool size is the cap on probes in flight for this range
        with ThreadPoolExecutor(
            max_workers=max(1, concurrency), thread_name_prefix="printsentry-probe"
        ) as pool:
            results = list(pool.map(probe, addresses))
        return [device for device in results if device is not None]

    def scan_one(self, address: str) -> Optional[DeviceRecord]:
        try:
            if not self.prober.is_reachable(address):
                return None
            open_ports = [port for port in self.ports if self.prober.is_port_open(address, port)]
            if not open_ports:
                return None
            return self._describe(address, open_ports)
        except Exception as e:
            logger.debug("error scanning %s: %s", address, e)
            return None

    def _describe(self, address: str, open_ports: List[int]) -> DeviceRecord:
        attrs = self.prober.fetch_attributes(address)
        mac = self.prober.resolve_mac(address)
        now = utcnow()
        record = DeviceRecord(
            ip_address=address,
            mac_address=mac,
            open_ports=open_ports,
            status=status_from_attributes(attrs),
            first_detected=now,
            last_seen=now,
            metrics=DeviceMetrics(last_updated=now),
        )
        if attrs:
            self._apply_attributes(record, attrs)
        if not record.name:
            record.name = fallback_device_name(address)
        record.manufacturer = identify_manufacturer(
            mac, record.description or record.model, self.oui_map
        )
        logger.debug("printer detected: %s at %s", record.name, address)
        return record

    @staticmethod
    def _apply_attributes(record: DeviceRecord, attrs: Dict[str, Any]) -> None:
        record.name = attrs.get("name") or ""
        record.description = attrs.get("description")
        record.model = attrs.get("model")
        record.serial_number = attrs.get("serial_number")
        record.metrics.page_count = attrs.get("page_count")
        record.metrics.consumables = [
            ConsumableLevel(
                name=supply["name"],
                current_level=supply.get("level", -1),
                max_level=supply.get("max_level", -1),
            )
            for supply in attrs.get("supplies") or []
        ]
