"""Tests for printsentry.probe.

scapy's send/receive functions and sockets are mocked so tests run without
root or network access.  SNMP replies are real packets built with scapy.
"""
from __future__ import annotations

import socket
from unittest.mock import MagicMock, patch

from scapy.asn1.asn1 import ASN1_INTEGER, ASN1_OID, ASN1_STRING  # type: ignore
from scapy.layers.snmp import SNMP, SNMPresponse, SNMPvarbind  # type: ignore

from printsentry import probe
from printsentry.models import DeviceStatus


def _echo_reply(icmp_type=0):
    reply = MagicMock()
    reply.haslayer.return_value = True
    reply.__getitem__.return_value.type = icmp_type
    return reply


class FakeUdpSocket:
    """Answers every SNMP GET with the configured values."""

    def __init__(self, values, error=0, wrong_id_first=False):
        self.values = values
        self.error = error
        self.wrong_id_first = wrong_id_first
        self.request = None
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def settimeout(self, timeout):
        pass

    def sendto(self, data, addr):
        self.request = SNMP(data)
        self.sent.append(addr)

    def _reply(self, request_id):
        varbinds = []
        for varbind in self.request.PDU.varbindlist:
            oid = str(varbind.oid.val)
            if oid in self.values:
                varbinds.append(SNMPvarbind(oid=ASN1_OID(oid), value=self.values[oid]))
        pdu = SNMPresponse(id=request_id, error=self.error, varbindlist=varbinds)
        return bytes(SNMP(community="public", PDU=pdu))

    def recvfrom(self, size):
        request_id = int(self.request.PDU.id.val)
        if self.wrong_id_first:
            self.wrong_id_first = False
            return self._reply(request_id + 1), ("10.0.0.5", 161)
        return self._reply(request_id), ("10.0.0.5", 161)


class TestPing:
    @patch("printsentry.probe.sr1")
    def test_echo_reply_is_reachable(self, mock_sr1):
        mock_sr1.return_value = _echo_reply()
        assert probe.ping_host("10.0.0.5", timeout=0.5) is not None
        assert probe.is_reachable("10.0.0.5") is True

    @patch("printsentry.probe.sr1")
    def test_timeout_is_unreachable(self, mock_sr1):
        mock_sr1.return_value = None
        assert probe.is_reachable("10.0.0.5") is False

    @patch("printsentry.probe.sr1")
    def test_destination_unreachable_is_unreachable(self, mock_sr1):
        mock_sr1.return_value = _echo_reply(icmp_type=3)
        assert probe.is_reachable("10.0.0.5") is False

    @patch("printsentry.probe.sr1")
    def test_missing_privileges_never_raise(self, mock_sr1):
        mock_sr1.side_effect = PermissionError("Operation not permitted")
        assert probe.is_reachable("10.0.0.5") is False


class TestPortProbe:
    @patch("printsentry.probe.socket.create_connection")
    def test_open_port(self, mock_connect):
        conn = MagicMock()
        mock_connect.return_value = conn
        assert probe.is_port_open("10.0.0.5", 9100, timeout=1.0) is True
        mock_connect.assert_called_once_with(("10.0.0.5", 9100), timeout=1.0)
        conn.__exit__.assert_called_once()

    @patch("printsentry.probe.socket.create_connection")
    def test_refused_port(self, mock_connect):
        mock_connect.side_effect = ConnectionRefusedError()
        assert probe.is_port_open("10.0.0.5", 9100) is False

    @patch("printsentry.probe.socket.create_connection")
    def test_timed_out_port(self, mock_connect):
        mock_connect.side_effect = socket.timeout()
        assert probe.is_port_open("10.0.0.5", 631) is False

    @patch("printsentry.probe.socket.create_connection")
    def test_out_of_range_port(self, mock_connect):
        mock_connect.side_effect = OverflowError("connect_ex(): port must be 0-65535.")
        assert probe.is_port_open("10.0.0.5", 70000) is False


class TestResolveMac:
    @patch("printsentry.probe.srp")
    def test_answer_gives_mac(self, mock_srp):
        reply = MagicMock(hwsrc="00:11:22:33:44:55")
        mock_srp.return_value = ([(MagicMock(), reply)], [])
        assert probe.resolve_mac("10.0.0.5") == "00:11:22:33:44:55"

    @patch("printsentry.probe.srp")
    def test_no_answer(self, mock_srp):
        mock_srp.return_value = ([], [])
        assert probe.resolve_mac("10.0.0.5") is None


class TestSnmp:
    def test_snmp_get_returns_answered_values(self):
        fake = FakeUdpSocket({probe.SYS_NAME: ASN1_STRING(b"lobby-printer")})
        with patch("printsentry.probe.socket.socket", return_value=fake):
            values = probe.snmp_get("10.0.0.5", [probe.SYS_NAME, probe.SYS_DESCR])
        assert values == {probe.SYS_NAME: b"lobby-printer"}
        assert fake.sent == [("10.0.0.5", 161)]

    def test_snmp_get_ignores_reply_with_other_request_id(self):
        fake = FakeUdpSocket({probe.SYS_NAME: ASN1_STRING(b"p1")}, wrong_id_first=True)
        with patch("printsentry.probe.socket.socket", return_value=fake):
            values = probe.snmp_get("10.0.0.5", [probe.SYS_NAME])
        assert values == {probe.SYS_NAME: b"p1"}

    def test_snmp_error_status_gives_none(self):
        fake = FakeUdpSocket({probe.SYS_NAME: ASN1_STRING(b"p1")}, error=2)
        with patch("printsentry.probe.socket.socket", return_value=fake):
            assert probe.snmp_get("10.0.0.5", [probe.SYS_NAME]) is None

    def test_fetch_attributes_reads_printer_mib(self):
        values = {
            probe.SYS_NAME: ASN1_STRING(b"lobby-printer"),
            probe.SYS_DESCR: ASN1_STRING(b"Brother NC-8300h"),
            probe.HR_DEVICE_DESCR: ASN1_STRING(b"Brother HL-L6200DW"),
            probe.HR_DEVICE_STATUS: ASN1_INTEGER(2),
            probe.HR_PRINTER_ERROR_STATE: ASN1_STRING(b"\x00"),
            probe.PRT_SERIAL_NUMBER: ASN1_STRING(b"U64123\x00"),
            probe.PRT_MARKER_LIFE_COUNT: ASN1_INTEGER(15000),
            probe.PRT_SUPPLY_DESCR.format(index=1): ASN1_STRING(b"Toner"),
            probe.PRT_SUPPLY_MAX.format(index=1): ASN1_INTEGER(3000),
            probe.PRT_SUPPLY_LEVEL.format(index=1): ASN1_INTEGER(600),
        }
        fake = FakeUdpSocket(values)
        with patch("printsentry.probe.socket.socket", return_value=fake):
            attrs = probe.fetch_attributes("10.0.0.5")
        assert attrs["name"] == "lobby-printer"
        assert attrs["model"] == "Brother HL-L6200DW"
        assert attrs["serial_number"] == "U64123"
        assert attrs["page_count"] == 15000
        assert attrs["device_status"] == 2
        assert attrs["error_state"] == 0
        assert attrs["supplies"] == [{"name": "Toner", "level": 600, "max_level": 3000}]

    @patch("printsentry.probe.snmp_get")
    def test_fetch_attributes_silent_device(self, mock_get):
        mock_get.side_effect = socket.timeout()
        assert probe.fetch_attributes("10.0.0.5") is None

    @patch("printsentry.probe.snmp_get")
    def test_printer_group_timeout_keeps_system_group(self, mock_get):
        mock_get.side_effect = [{probe.SYS_NAME: b"p1"}, socket.timeout()]
        attrs = probe.fetch_attributes("10.0.0.5")
        assert attrs["name"] == "p1"
        assert attrs["supplies"] == []
        assert attrs["error_state"] == 0


class TestStatusFromAttributes:
    def test_no_attributes_is_online(self):
        assert probe.status_from_attributes(None) == DeviceStatus.ONLINE

    def test_offline_bit(self):
        attrs = {"error_state": probe.ERR_OFFLINE, "device_status": 5}
        assert probe.status_from_attributes(attrs) == DeviceStatus.OFFLINE

    def test_jam_is_error(self):
        assert probe.status_from_attributes({"error_state": probe.ERR_JAMMED}) == DeviceStatus.ERROR

    def test_device_down_is_error(self):
        assert probe.status_from_attributes({"device_status": 5}) == DeviceStatus.ERROR

    def test_low_toner_is_still_online(self):
        attrs = {"error_state": probe.ERR_LOW_TONER | probe.ERR_LOW_PAPER, "device_status": 3}
        assert probe.status_from_attributes(attrs) == DeviceStatus.ONLINE
