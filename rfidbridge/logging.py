from __future__ import annotations

import json
import sys
import threading
import time
from typing import Optional, TextIO


def _ts_iso(t: float) -> str:
    ms = int((t - int(t)) * 1000)
    return time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(t)) + f'.{ms:03d}'


class JsonLogger:
    """Minimal structured logger.

    Emits one line per event (connection lifecycle, tag scans, protocol errors)
    either as JSON or as `[timestamp] event k=v` text, so logs are easy to grep
    and machine-parse. The reader thread, reconnect timer and control socket all
    log through the same instance; lines are written under a lock."""
    def __init__(self, enable_json: bool, stream: Optional[TextIO] = None, verbose: bool = False):
        """Create a logger.

        Args:
            enable_json: Emit JSON lines instead of human-readable text.
            stream: File-like object for output (defaults to stdout).
            verbose: Whether debug() events are written.
        """
        self.enable_json = enable_json
        self.verbose = bool(verbose)
        self._stream = stream
        self._lock = threading.Lock()

    def emit(self, event: str, **fields):
        """Emit an event with a name and optional key/value fields."""
        t = time.time()
        if self.enable_json:
            # ts: float seconds since epoch; ts_iso: local time with milliseconds.
            payload = {"ts": t, "ts_iso": _ts_iso(t), "event": event, **fields}
            line = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        else:
            line = f"[{_ts_iso(t)}] {event}"
            if fields:
                line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        stream = self._stream or sys.stdout
        with self._lock:
            print(line, file=stream, flush=True)

    def debug(self, event: str, **fields):
        """Emit only in verbose mode (serial chatter, parser detail)."""
        if self.verbose:
            self.emit(event, **fields)
