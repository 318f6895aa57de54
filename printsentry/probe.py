"""Single-address probes: ICMP liveness, TCP ports, SNMP attributes, ARP.

Every probe is bounded by its own timeout and reports failure as a value
(``False`` / ``None``) instead of raising, so one bad address never breaks a
scan.
"""
from __future__ import annotations

import random
import socket
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from scapy.all import ARP, ICMP, IP, Ether, conf, sr1, srp  # type: ignore
from scapy.asn1.asn1 import ASN1_NULL, ASN1_OID  # type: ignore
from scapy.layers.snmp import SNMP, SNMPget, SNMPvarbind  # type: ignore

from printsentry.log import get_logger
from printsentry.models import AgentConfiguration, DeviceStatus

logger = get_logger("probe")

SNMP_PORT = 161
MAX_SUPPLIES = 4

SYS_DESCR = "1.3.6.1.2.1.1.1.0"
SYS_NAME = "1.3.6.1.2.1.1.5.0"
HR_DEVICE_DESCR = "1.3.6.1.2.1.25.3.2.1.3.1"
HR_DEVICE_STATUS = "1.3.6.1.2.1.25.3.2.1.5.1"
HR_PRINTER_ERROR_STATE = "1.3.6.1.2.1.25.3.5.1.2.1"
PRT_SERIAL_NUMBER = "1.3.6.1.2.1.43.5.1.1.17.1"
PRT_MARKER_LIFE_COUNT = "1.3.6.1.2.1.43.10.2.1.4.1.1"
PRT_SUPPLY_DESCR = "1.3.6.1.2.1.43.11.1.1.6.1.{index}"
PRT_SUPPLY_MAX = "1.3.6.1.2.1.43.11.1.1.8.1.{index}"
PRT_SUPPLY_LEVEL = "1.3.6.1.2.1.43.11.1.1.9.1.{index}"

# hrDeviceStatus
HR_STATUS_DOWN = 5

# First octet of hrPrinterDetectedErrorState, most significant bit first
ERR_LOW_PAPER = 0x80
ERR_NO_PAPER = 0x40
ERR_LOW_TONER = 0x20
ERR_NO_TONER = 0x10
ERR_DOOR_OPEN = 0x08
ERR_JAMMED = 0x04
ERR_OFFLINE = 0x02
ERR_SERVICE_REQUESTED = 0x01
ERR_BLOCKING = ERR_NO_PAPER | ERR_NO_TONER | ERR_DOOR_OPEN | ERR_JAMMED | ERR_SERVICE_REQUESTED

_privilege_warning_logged = False


def ping_host(address: str, timeout: float = 2.0) -> Optional[float]:
    """Return the ICMP echo round trip in milliseconds, or None."""
    global _privilege_warning_logged
    pkt = IP(dst=address) / ICMP()
    start = time.monotonic()
    try:
        reply = sr1(pkt, timeout=timeout, verbose=False)
    except PermissionError:
        if not _privilege_warning_logged:
            logger.warning("ICMP probes need raw socket privileges; hosts will appear unreachable")
            _privilege_warning_logged = True
        return None
    except Exception as e:
        logger.debug("ping %s failed: %s", address, e)
        return None
    if reply is None or not reply.haslayer(ICMP) or reply[ICMP].type != 0:
        return None
    return (time.monotonic() - start) * 1000


def is_reachable(address: str, timeout: float = 2.0) -> bool:
    return ping_host(address, timeout) is not None


def is_port_open(address: str, port: int, timeout: float = 3.0) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except (OSError, OverflowError):
        return False


def resolve_mac(address: str, timeout: float = 2.0, iface: Optional[str] = None) -> Optional[str]:
    if iface:
        conf.iface = iface
    pkt = Ether(dst="ff:ff:ff:ff:ff:ff") / ARP(pdst=address)
    try:
        answered, _ = srp(pkt, timeout=timeout, retry=1, verbose=False)
    except Exception as e:
        logger.debug("arp %s failed: %s", address, e)
        return None
    for _, reply in answered:
        return reply.hwsrc
    return None


def _raw(value: Any) -> Any:
    if value is None or isinstance(value, ASN1_NULL):
        return None
    return getattr(value, "val", value)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if value is None:
        return None
    return str(value).strip("\x00 \r\n") or None


def snmp_get(
    address: str,
    oids: List[str],
    community: str = "public",
    timeout: float = 5.0,
) -> Optional[Dict[str, Any]]:
    """SNMP v2c GET over a plain UDP socket.

    Returns ``{oid: value}`` for the objects the agent answered (missing
    objects are left out), or None when nothing came back.
    """
    request_id = random.randint(1, 2**31 - 1)
    pkt = SNMP(
        community=community,
        PDU=SNMPget(
            id=request_id,
            varbindlist=[SNMPvarbind(oid=ASN1_OID(oid)) for oid in oids],
        ),
    )
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.settimeout(timeout)
        sock.sendto(bytes(pkt), (address, SNMP_PORT))
        deadline = time.monotonic() + timeout
        while True:
            data, _ = sock.recvfrom(65535)
            reply = SNMP(data)
            if int(reply.PDU.id.val) == request_id:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            sock.settimeout(remaining)
    if int(reply.PDU.error.val) != 0:
        return None
    values: Dict[str, Any] = {}
    for varbind in reply.PDU.varbindlist:
        value = _raw(getattr(varbind, "value", None))
        if value is None or value in (b"", ""):
            continue
        values[str(varbind.oid.val)] = value
    return values or None


def _query(
    address: str, oids: List[str], community: str, timeout: float
) -> Optional[Dict[str, Any]]:
    try:
        return snmp_get(address, oids, community, timeout)
    except OSError as e:
        logger.debug("snmp %s failed: %s", address, e)
    except Exception as e:
        logger.debug("snmp %s returned an undecodable reply: %s", address, e)
    return None


def fetch_attributes(
    address: str,
    community: str = "public",
    timeout: float = 5.0,
) -> Optional[Dict[str, Any]]:
    """Query the printer-relevant attributes of ``address``.

    Keys: name, description, model, serial_number, page_count, device_status,
    error_state, supplies (list of {name, level, max_level}).  None when the
    device does not answer the system group.
    """
    system = _query(address, [SYS_DESCR, SYS_NAME], community, timeout)
    if not system:
        return None
    attrs: Dict[str, Any] = {
        "name": _text(system.get(SYS_NAME)),
        "description": _text(system.get(SYS_DESCR)),
    }

    oids = [
        HR_DEVICE_DESCR,
        HR_DEVICE_STATUS,
        HR_PRINTER_ERROR_STATE,
        PRT_SERIAL_NUMBER,
        PRT_MARKER_LIFE_COUNT,
    ]
    for index in range(1, MAX_SUPPLIES + 1):
        oids.append(PRT_SUPPLY_DESCR.format(index=index))
        oids.append(PRT_SUPPLY_MAX.format(index=index))
        oids.append(PRT_SUPPLY_LEVEL.format(index=index))
    printer = _query(address, oids, community, timeout) or {}

    attrs["model"] = _text(printer.get(HR_DEVICE_DESCR))
    attrs["serial_number"] = _text(printer.get(PRT_SERIAL_NUMBER))
    attrs["page_count"] = _as_int(printer.get(PRT_MARKER_LIFE_COUNT))
    attrs["device_status"] = _as_int(printer.get(HR_DEVICE_STATUS))
    attrs["error_state"] = _error_bits(printer.get(HR_PRINTER_ERROR_STATE))

    supplies = []
    for index in range(1, MAX_SUPPLIES + 1):
        name = _text(printer.get(PRT_SUPPLY_DESCR.format(index=index)))
        if not name:
            continue
        supplies.append({
            "name": name,
            "level": _as_int(printer.get(PRT_SUPPLY_LEVEL.format(index=index)), -1),
            "max_level": _as_int(printer.get(PRT_SUPPLY_MAX.format(index=index)), -1),
        })
    attrs["supplies"] = supplies
    return attrs


def _as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _error_bits(value: Any) -> int:
    if isinstance(value, bytes) and value:
        return value[0]
    if isinstance(value, int):
        return value & 0xFF
    return 0


def status_from_attributes(attrs: Optional[Dict[str, Any]]) -> DeviceStatus:
    """Map what the device reports about itself onto a DeviceStatus."""
    if not attrs:
        return DeviceStatus.ONLINE
    error_state = attrs.get("error_state") or 0
    if error_state & ERR_OFFLINE:
        return DeviceStatus.OFFLINE
    if error_state & ERR_BLOCKING or attrs.get("device_status") == HR_STATUS_DOWN:
        return DeviceStatus.ERROR
    return DeviceStatus.ONLINE


@dataclass(frozen=True)
class Prober:
    """Probe settings taken from one configuration snapshot."""

    ping_timeout: float = 2.0
    port_timeout: float = 3.0
    snmp_timeout: float = 5.0
    community: str = "public"

    @classmethod
    def from_config(cls, config: AgentConfiguration) -> "Prober":
        return cls(
            ping_timeout=config.ping_timeout,
            port_timeout=config.port_timeout,
            snmp_timeout=config.snmp_timeout,
            community=config.snmp_community,
        )

    def is_reachable(self, address: str) -> bool:
        return is_reachable(address, self.ping_timeout)

    def is_port_open(self, address: str, port: int) -> bool:
        return is_port_open(address, port, self.port_timeout)

    def fetch_attributes(self, address: str) -> Optional[Dict[str, Any]]:
        return fetch_attributes(address, self.community, self.snmp_timeout)

    def resolve_mac(self, address: str) -> Optional[str]:
        return resolve_mac(address, self.ping_timeout)
