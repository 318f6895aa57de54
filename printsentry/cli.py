from __future__ import annotations

import argparse
import json
import os
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Any, Dict, Optional

import uvicorn

from printsentry import __version__
from printsentry.agent import AgentOrchestrator
from printsentry.config import (
    ConfigError,
    apply_config,
    build_agent_configuration,
    load_config,
)
from printsentry.events import JsonlEventSink
from printsentry.log import get_logger, setup_logging
from printsentry.models import AgentConfiguration
from printsentry.probe import Prober, ping_host, status_from_attributes
from printsentry.scanner import NetworkScanner, expand_ranges
from printsentry.vendor import identify_manufacturer

logger = get_logger("cli")


def require_root() -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        print("warning: ICMP and ARP probes typically require root privileges", file=sys.stderr)


def _agent_config(args: argparse.Namespace, **overrides: Any) -> AgentConfiguration:
    try:
        return build_agent_configuration(args.config_data, overrides)
    except ConfigError as e:
        raise SystemExit(f"error: {e}")


def _write_json(data: Any, path: Optional[str]) -> None:
    text = json.dumps(data, indent=2, default=str)
    if path:
        Path(path).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)


def cmd_run(args: argparse.Namespace) -> None:
    require_root()
    config = _agent_config(args)
    if not config.scan_ranges:
        logger.warning("no scan ranges configured; the agent will find nothing")
    agent = AgentOrchestrator(config)
    sink = JsonlEventSink(args.journal) if args.journal else None
    if sink:
        agent.bus.subscribe(sink)
    agent.start()
    try:
        if args.web:
            from printsentry.web import api

            web = args.config_data.get("web", {})
            api.attach(agent, args.api_key or web.get("api_key"))
            host = args.host or web.get("host", "127.0.0.1")
            port = args.port or web.get("port", 8080)
            print(f"[*] Local control plane on {host}:{port}")
            # uvicorn installs its own SIGINT/SIGTERM handling
            uvicorn.run(api.app, host=host, port=port, reload=False, log_level="warning")
        else:
            stop_event = Event()

            def handle_signal(_signum, _frame) -> None:
                stop_event.set()

            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, handle_signal)
            while not stop_event.is_set():
                stop_event.wait(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        agent.stop()
        if sink:
            sink.close()


def cmd_scan(args: argparse.Namespace) -> None:
    require_root()
    overrides: Dict[str, Any] = {"max_concurrent_scans": args.concurrency}
    if args.ranges:
        overrides["scan_ranges"] = tuple(args.ranges)
    config = _agent_config(args, **overrides)
    if not config.scan_ranges:
        raise SystemExit("no ranges given and none configured")
    scanner = NetworkScanner.from_config(config)
    devices = scanner.scan_all(config.scan_ranges, config.max_concurrent_scans)
    if args.json:
        _write_json([device.to_wire() for device in devices], args.json)
        return
    for device in devices:
        ports = ",".join(str(port) for port in device.open_ports)
        print(
            f"{device.ip_address:<15} {device.status.value:<8} {device.name:<24}"
            f" mac={device.mac_address or '?'} vendor={device.manufacturer or '?'} ports={ports}"
        )
    print(f"{len(devices)} printer(s) found")


def cmd_probe(args: argparse.Namespace) -> None:
    require_root()
    config = _agent_config(args)
    prober = Prober.from_config(config)
    address = args.address
    rtt = ping_host(address, prober.ping_timeout)
    ports = {port: prober.is_port_open(address, port) for port in config.printer_ports}
    attrs = prober.fetch_attributes(address)
    mac = prober.resolve_mac(address)
    result = {
        "address": address,
        "reachable": rtt is not None,
        "rtt_ms": round(rtt, 2) if rtt is not None else None,
        "ports": {str(port): is_open for port, is_open in ports.items()},
        "mac": mac,
        "manufacturer": identify_manufacturer(
            mac, (attrs or {}).get("description"), NetworkScanner.from_config(config).oui_map
        ),
        "status": status_from_attributes(attrs).value if attrs else None,
        "snmp": attrs,
    }
    _write_json(result, args.json)


def cmd_ranges(args: argparse.Namespace) -> None:
    ranges = args.ranges or list(_agent_config(args).scan_ranges)
    # Malformed ranges are skipped with a logged warning
    addresses = expand_ranges(ranges)
    if args.count:
        print(f"{len(addresses)} address(es) in {len(ranges)} range(s)")
        return
    for address in addresses:
        print(address)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="printsentry",
        description="Network printer discovery and monitoring agent.",
    )
    parser.add_argument("--config", help="TOML configuration file")
    parser.add_argument("--log-level", help="Logging level (debug, info, warning)")
    parser.add_argument("--version", action="version", version=f"printsentry {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the monitoring agent")
    run_parser.add_argument("--web", action="store_true", help="Serve the local control plane")
    run_parser.add_argument("--host", help="Control plane bind host")
    run_parser.add_argument("--port", type=int, help="Control plane bind port")
    run_parser.add_argument("--api-key", help="Bearer key required by the control plane")
    run_parser.add_argument("--journal", help="Append agent events to this JSONL file")
    run_parser.set_defaults(func=cmd_run)

    scan_parser = subparsers.add_parser("scan", help="Scan ranges once and print the printers found")
    scan_parser.add_argument("ranges", nargs="*", help="CIDR, start-end range or address")
    scan_parser.add_argument("--concurrency", type=int, help="Probes in flight per range")
    scan_parser.add_argument("--json", help="Write results to JSON")
    scan_parser.set_defaults(func=cmd_scan)

    probe_parser = subparsers.add_parser("probe", help="Run every probe against one address")
    probe_parser.add_argument("address", help="Device IPv4 address")
    probe_parser.add_argument("--json", help="Write results to JSON instead of stdout")
    probe_parser.set_defaults(func=cmd_probe)

    ranges_parser = subparsers.add_parser("ranges", help="Show how scan ranges expand")
    ranges_parser.add_argument("ranges", nargs="*", help="Ranges (defaults to configured ones)")
    ranges_parser.add_argument("--count", action="store_true", help="Only print address counts")
    ranges_parser.set_defaults(func=cmd_ranges)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    # --config has to be known before the config can seed parser defaults
    pre_args, _ = parser.parse_known_args(argv)
    try:
        config = load_config(pre_args.config)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    apply_config(parser, config)
    args = parser.parse_args(argv)
    args.config_data = config
    setup_logging(args.log_level or config.get("logging", {}).get("level", "info"))
    args.func(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
