#!/usr/bin/env python3
"""Local control client for rfid-bridge.

The bridge holds the reader's serial port, so nothing else can open the
device. rfidctl talks to the bridge over its local UNIX socket.

Commands:
  status | ports | connect [port|auto] [baud] [page] | disconnect | reset
  latest-tag | mark <id> | take-tag | write-card <student_id> <name> | test

Socket path:
  - default: /run/rfidbridge/rfidbridge.sock
  - override: --socket PATH or RFIDBRIDGE_SOCKET env var
"""

from __future__ import annotations

import argparse
import json
import os
import shlex
import socket
import sys

DEFAULT_SOCK = "/run/rfidbridge/rfidbridge.sock"
COMMANDS = ["status", "ports", "connect", "disconnect", "reset", "latest-tag", "mark", "take-tag", "write-card", "test"]


def _send(sock_path: str, cmd: str) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(5.0)
        s.connect(sock_path)
        s.sendall((cmd.strip() + "\n").encode("utf-8"))
        data = b""
        while b"\n" not in data and len(data) < 65536:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
    except OSError as e:
        return {"ok": False, "error": f"cannot reach bridge at {sock_path}: {e}"}
    finally:
        s.close()
    line = data.decode("utf-8", errors="replace").strip()
    if not line:
        return {"ok": False, "error": "empty response"}
    try:
        return json.loads(line)
    except ValueError:
        return {"ok": False, "error": "non-json response", "raw": line}


def _summary(command: str, resp: dict) -> str:
    if command == "status":
        st = resp.get("status", {})
        return (f"ok  version={resp.get('version', '')} state={st.get('state')} port={st.get('port')} "
                f"page={st.get('current_page')} last_ping={st.get('last_ping')} "
                f"reconnects={st.get('reconnect_attempts')} pending_tags={st.get('pending_tags')}")
    if command in ("latest-tag", "take-tag"):
        tag = resp.get("tag")
        if not tag:
            return "ok  no new tag"
        return f"ok  id={tag.get('id')} card={tag.get('rfid_card_id')} at={tag.get('tag_time')} source={tag.get('source')}"
    if command == "ports":
        lines = [f"{'*' if p.get('path') == resp.get('candidate') else ' '} {p.get('path')}  {p.get('manufacturer') or '-'}"
                 for p in resp.get("ports", [])]
        return "\n".join(lines) or "no ports"
    if command == "test":
        return f"ok  ping_time={resp.get('ping_time')} reader={resp.get('reader_info')}"
    return "ok"


def main() -> int:
    ap = argparse.ArgumentParser(description="Control rfid-bridge via its local UNIX socket")
    ap.add_argument("command", choices=COMMANDS, help="Command to send to the bridge")
    ap.add_argument("args", nargs="*", help="Command arguments")
    ap.add_argument("--socket", default=os.environ.get("RFIDBRIDGE_SOCKET", DEFAULT_SOCK),
                    help=f"Control socket path (default: {DEFAULT_SOCK})")
    ap.add_argument("--json", action="store_true", help="Print raw JSON response")
    args = ap.parse_args()

    cmd = " ".join([args.command] + [shlex.quote(a) for a in args.args])
    resp = _send(args.socket, cmd)
    if args.json:
        print(json.dumps(resp, indent=2, sort_keys=True, ensure_ascii=False))
        return 0 if resp.get("ok") else 2

    if not resp.get("ok"):
        print(f"error: {resp.get('error', 'unknown error')}", file=sys.stderr)
        raw = resp.get("raw")
        if raw:
            print(raw, file=sys.stderr)
        return 2
    print(_summary(args.command, resp))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
