from __future__ import annotations

import argparse
import threading
import time
from argparse import RawDescriptionHelpFormatter
from typing import Mapping, Optional

from .config import TRANSPORT_SIMULATED, TRANSPORTS, BridgeConfig, load_config
from .constants import CMD_STATUS, USAGE_EXAMPLES
from .errors import PortUnavailable
from .ports import detect_candidate, is_reader_like, list_ports
from .protocol import encode_command, parse_line
from .serialio import SerialTransport


def run_list_ports(logger=None) -> int:
    """Print the serial ports and which one auto-detection would pick."""
    ports = list_ports(logger)
    if not ports:
        print("No serial ports found.")
        return 1
    cand = detect_candidate(ports)
    for p in ports:
        mark = "*" if cand is not None and p.path == cand.path else " "
        hint = " (reader-like)" if is_reader_like(p) else ""
        print(f" {mark} {p.path}  manufacturer={p.manufacturer or '-'} vid={p.vendor_id or '-'} pid={p.product_id or '-'}{hint}")
    print()
    print(f"Auto-detect would use: {cand.path}")
    return 0


def run_doctor(cfg: BridgeConfig, logger, seconds: float = 5.0) -> int:
    """Open the reader, send STATUS and print what comes back (safe: no card writes)."""
    print("Doctor Mode (safe):")
    print("  - No WRITE_CARD command is sent.")
    print("  - Scan a card during the capture window to test tag parsing.")
    print()

    if cfg.transport == TRANSPORT_SIMULATED:
        print("  Transport is 'simulated'; nothing to check on the host.")
        return 0

    port = cfg.port
    if not port:
        cand = detect_candidate(list_ports(logger))
        if cand is None:
            print("  FAIL: no serial ports found.")
            return 2
        port = cand.path
        print(f"  Detected port: {port} (manufacturer={cand.manufacturer or '-'})")

    lines = []
    got_error = threading.Event()

    def sink(kind, payload):
        if kind == "line":
            lines.append(payload)
            msg = parse_line(payload)
            print(f"  <- {payload!r}  => {type(msg).__name__ if msg is not None else 'blank'}")
        elif kind == "error":
            print(f"  ERROR: {payload}")
            got_error.set()

    transport = SerialTransport(sink, logger, read_timeout_s=cfg.read_timeout_s)
    try:
        transport.open(port, cfg.baud)
    except PortUnavailable as e:
        print(f"  FAIL: {e}")
        return 2
    print(f"  OK: opened {port} @ {cfg.baud}")

    try:
        transport.write_line(encode_command(CMD_STATUS))
        print("  -> STATUS")
        t0 = time.monotonic()
        while time.monotonic() - t0 < seconds and not got_error.is_set():
            time.sleep(0.05)
    finally:
        transport.close()

    if got_error.is_set():
        print("  FAIL: the port reported an error during capture.")
        return 2
    if not lines:
        print("  WARN: no lines received (check baud rate and firmware).")
        return 1
    print(f"  OK: {len(lines)} line(s) received.")
    return 0


def build_arg_parser():
    """Construct the CLI argument parser for the bridge daemon.

    Every option defaults to None so that only flags given on the command line
    override the config file and environment."""
    ap = argparse.ArgumentParser(
        prog="rfid-bridge",
        description="RFID reader serial bridge for attendance check-in.",
        epilog=USAGE_EXAMPLES,
        formatter_class=RawDescriptionHelpFormatter,
    )
    ap.add_argument("-p", "--port", help="Serial device of the reader (e.g. /dev/ttyUSB0, COM3). Auto-detected if omitted.")
    ap.add_argument("--baud", type=int, help="Serial baud rate (default: 9600).")
    ap.add_argument("--page-id", dest="page_id", help="Page id that owns the startup connection.")
    ap.add_argument("--transport", choices=TRANSPORTS, help="Reader transport.")
    ap.add_argument("--simulate", dest="transport", action="store_const", const=TRANSPORT_SIMULATED,
                    help="Use the simulated reader (same as --transport simulated).")
    ap.add_argument("--mock-card", dest="mock_card", action="append",
                    help="Card id the simulated reader scans periodically (repeatable).")
    ap.add_argument("--mock-period", dest="mock_period", type=float,
                    help="Seconds between simulated scans (0 disables).")
    ap.add_argument("--verbose", dest="verbose", action="store_true", default=None, help="Verbose logging (includes serial chatter).")
    ap.add_argument("--no-verbose", dest="verbose", action="store_false", help="Disable verbose logging.")
    json_group = ap.add_mutually_exclusive_group()
    json_group.add_argument("--json", dest="json", action="store_true", default=None, help="Emit JSON log events.")
    json_group.add_argument("--no-json", dest="json", action="store_false", help="Disable JSON log output.")
    ap.add_argument("--no-banner", dest="no_banner", action="store_true", default=None, help="Disable the startup banner.")
    ap.add_argument("--banner", dest="no_banner", action="store_false", help="Enable the startup banner.")
    ap.add_argument("--log-file", dest="log_file", help="Append log events to this file instead of stdout.")
    sock_group = ap.add_mutually_exclusive_group()
    sock_group.add_argument("--control-socket", dest="control_socket",
                            help="Path of the local UNIX control socket.")
    sock_group.add_argument("--no-control-socket", dest="control_socket", action="store_const", const="",
                            help="Disable the local control socket.")
    ap.add_argument("--config", help="Path to a TOML config file. CLI args override config values.")
    ap.add_argument("--print-config", action="store_true", help="Print the resolved configuration and exit.")
    ap.add_argument("--list-ports", action="store_true", help="List serial ports and the auto-detected reader, then exit.")
    ap.add_argument("--doctor", action="store_true", help="Open the reader, send STATUS and print replies, then exit.")
    ap.add_argument("--doctor-seconds", type=float, default=5.0, help="Capture window for --doctor (default: 5).")
    ap.add_argument("--version", action="store_true", help="Print version and exit.")
    return ap


# argparse dest -> BridgeConfig field
_ARG_FIELDS = {
    "port": "port",
    "baud": "baud",
    "page_id": "page_id",
    "transport": "transport",
    "mock_period": "mock_period_s",
    "verbose": "verbose",
    "json": "json",
    "no_banner": "no_banner",
    "log_file": "log_path",
    "control_socket": "control_socket",
}


def config_from_args(args, environ: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """Resolve defaults < TOML < environment < command line."""
    cfg = load_config(getattr(args, "config", None), environ)
    for dest, name in _ARG_FIELDS.items():
        val = getattr(args, dest, None)
        if val is not None:
            setattr(cfg, name, val)
    if getattr(args, "mock_card", None):
        cfg.mock_card_ids = tuple(args.mock_card)
    return cfg.validate()
