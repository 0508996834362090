from __future__ import annotations

import json
import os
import signal
import sys
import threading

from .bridge import RfidBridge
from .config import resolved_config_dict
from .constants import VERSION
from .control import ControlServer
from .doctor import build_arg_parser, config_from_args, run_doctor, run_list_ports
from .errors import ConnectError
from .logging import JsonLogger
from .notify import Notifier


def _open_log_stream(path):
    if not path:
        return None
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    return open(path, "a", encoding="utf-8")


def main(argv=None):
    """CLI entry point. Parses args, resolves config, and runs the bridge daemon."""
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    if args.version:
        print(VERSION)
        return 0

    try:
        cfg = config_from_args(args)
    except (OSError, ValueError) as e:
        # tomllib.TOMLDecodeError is a ValueError.
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.print_config:
        print(json.dumps(resolved_config_dict(cfg), indent=2, sort_keys=True))
        return 0

    log_stream = _open_log_stream(cfg.log_path)
    logger = JsonLogger(enable_json=cfg.json, stream=log_stream, verbose=cfg.verbose)
    try:
        if args.list_ports:
            return run_list_ports(logger)
        if args.doctor:
            return run_doctor(cfg, logger, seconds=args.doctor_seconds)
        if not cfg.enabled:
            logger.emit("reader_disabled")
            print("RFID reader is disabled (RFID_ENABLED / [reader] enabled); nothing to do.")
            return 0
        return _run(cfg, logger)
    finally:
        if log_stream is not None:
            log_stream.close()


def _run(cfg, logger) -> int:
    notifier = Notifier(cfg.notify_enabled, cfg.pushover_token, cfg.pushover_user, logger=logger)
    bridge = RfidBridge(cfg, logger, notifier=notifier)

    if not cfg.no_banner:
        print(f"rfid-bridge {VERSION}")
        logger.emit(
            "startup",
            version=VERSION,
            port=cfg.port,
            baud=cfg.baud,
            transport=cfg.transport,
            page_id=cfg.page_id,
            reconnect_delay_s=cfg.reconnect_delay_s,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
            heartbeat_interval_s=cfg.heartbeat_interval_s,
            control_socket=cfg.control_socket or None,
            verbose=cfg.verbose,
        )

    bridge.start()
    control = None
    if cfg.control_socket:
        control = ControlServer(bridge, logger, cfg.control_socket)
        control.start()

    # Connect at startup only when a port is pinned (or simulated); otherwise a
    # page claims the reader through the control socket.
    if cfg.port or cfg.mock_mode:
        try:
            bridge.connect(cfg.port, cfg.baud, cfg.page_id)
        except ConnectError as e:
            logger.emit("startup_connect_failed", error=str(e))

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    while not stop.wait(0.2):
        pass

    logger.emit("shutdown")
    if control is not None:
        control.stop()
    bridge.stop()
    bridge.disconnect()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
