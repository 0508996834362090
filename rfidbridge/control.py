from __future__ import annotations

import json
import os
import shlex
import socket
import threading
from typing import Optional

from .constants import VERSION
from .errors import ConnectError
from .ports import detect_candidate

HELP = "status | ports | connect [port|auto] [baud] [page] | disconnect | reset | latest-tag | mark <id> | take-tag | write-card <student_id> <name> | test"


class ControlServer:
    """Local control socket for the bridge.

    The bridge holds the reader's serial port, so nothing else can talk to the
    device. The web backend (or an operator with rfidctl) drives it through a
    UNIX socket instead: one command line in, one JSON line out."""
    def __init__(self, bridge, logger, sock_path: str):
        self.bridge = bridge
        self.logger = logger
        self.sock_path = sock_path
        self._thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()

    def start(self):
        if not self.sock_path:
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="rfid-control")
        self._thread.start()
        self.logger.emit("control_socket_started", path=self.sock_path)

    def stop(self):
        self._stop_evt.set()
        t = self._thread
        self._thread = None
        if t is not None:
            t.join(timeout=1.0)

    def _loop(self):
        path = self.sock_path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if os.path.exists(path):
            os.remove(path)

        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            srv.bind(path)
            os.chmod(path, 0o660)
            srv.listen(4)
            srv.settimeout(0.5)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            srv.close()
            return

        try:
            while not self._stop_evt.is_set():
                try:
                    conn, _ = srv.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    self.logger.emit("control_socket_error", error=str(e), path=path)
                    break
                self._serve(conn)
        finally:
            srv.close()
            if os.path.exists(path):
                os.remove(path)

    def _serve(self, conn):
        try:
            conn.settimeout(2.0)
            data = b""
            while b"\n" not in data and len(data) < 4096:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
            cmd = data.decode("utf-8", errors="replace").strip()
            resp = self.handle_command(cmd)
            conn.sendall((json.dumps(resp, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8"))
        except OSError as e:
            self.logger.emit("control_client_error", error=str(e))
        finally:
            conn.close()

    def handle_command(self, cmd: str) -> dict:
        """Run one control command and return its JSON-able response."""
        try:
            argv = shlex.split(cmd or "")
        except ValueError as e:
            return {"ok": False, "error": f"bad command line: {e}"}
        if not argv:
            return {"ok": False, "error": "empty command"}
        name, args = argv[0].lower(), argv[1:]
        try:
            return self._dispatch(name, args)
        except ConnectError as e:
            return {"ok": False, "error": str(e)}
        except ValueError as e:
            return {"ok": False, "error": f"bad argument: {e}"}

    def _dispatch(self, name: str, args) -> dict:
        b = self.bridge
        if name in ("status", "state"):
            return {"ok": True, "status": b.get_status(), "version": VERSION}

        if name == "ports":
            ports = b.list_ports()
            cand = detect_candidate(ports)
            return {
                "ok": True,
                "ports": [p.to_dict() for p in ports],
                "candidate": cand.path if cand is not None else None,
            }

        if name == "connect":
            port = args[0] if args and args[0].lower() not in ("auto", "-") else None
            baud = int(args[1]) if len(args) > 1 else None
            page = args[2] if len(args) > 2 else None
            result = b.connect(port, baud, page)
            return {"ok": True, **result}

        if name == "disconnect":
            b.disconnect()
            return {"ok": True}

        if name == "reset":
            b.reset_connection()
            return {"ok": True}

        if name == "latest-tag":
            tag = b.get_latest_tag()
            return {"ok": True, "tag": tag.to_dict() if tag is not None else None}

        if name == "mark":
            if not args:
                return {"ok": False, "error": "usage: mark <id>"}
            return {"ok": True, "marked": b.mark_tag_processed(int(args[0]))}

        if name == "take-tag":
            tag = b.take_tag()
            if tag is None:
                return {"ok": True, "hasNewTag": False}
            return {"ok": True, "hasNewTag": True, "uid": tag.rfid_card_id, "timestamp": tag.tag_time, "tag": tag.to_dict()}

        if name == "write-card":
            if len(args) < 2:
                return {"ok": False, "error": "usage: write-card <student_id> <student_name>"}
            ok = b.write_card_data(args[0], " ".join(args[1:]))
            return {"ok": ok} if ok else {"ok": False, "error": "reader is not connected"}

        if name == "test":
            result = b.test_connection()
            resp = {"ok": bool(result.get("success")), **result}
            if not resp["ok"]:
                resp["error"] = result.get("message", "test failed")
            return resp

        if name == "help":
            return {"ok": True, "commands": HELP}

        return {"ok": False, "error": f"unknown command: {name}"}
