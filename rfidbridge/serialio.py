from __future__ import annotations

import itertools
import json
import threading
from typing import Callable, Iterable, List, Optional

try:
    import serial  # pyserial
except ImportError:  # pragma: no cover
    serial = None

from .constants import CMD_STATUS, CMD_WRITE_CARD, MSG_RFID_TAG, MSG_SYSTEM_MESSAGE, MSG_SYSTEM_STATUS, VERSION
from .errors import NotOpen, PortUnavailable
from .logging import JsonLogger

# sink(kind, payload) where kind is "opened" | "line" | "error"
Sink = Callable[[str, object], None]


# Reader lines are short JSON envelopes; anything longer is line noise.
MAX_LINE_BYTES = 4096


class LineFramer:
    """Reassemble newline-terminated lines from arbitrarily chunked reads.

    Splitting happens on raw bytes, so a UTF-8 sequence cut across two reads is
    decoded only once the whole line is present. A partial line that grows past
    `max_line` is discarded up to its next newline and counted in `dropped`."""
    def __init__(self, max_line: int = MAX_LINE_BYTES):
        self._buf = bytearray()
        self.max_line = int(max_line)
        self.dropped = 0
        self._discarding = False

    def feed(self, data: bytes) -> List[str]:
        """Add bytes and return every line they complete, in order."""
        if not data:
            return []
        self._buf.extend(data)
        lines = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buf[:idx])
            del self._buf[:idx + 1]
            if self._discarding:
                self._discarding = False
                continue
            if len(raw) > self.max_line:
                self.dropped += 1
                continue
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            lines.append(raw.decode("utf-8", errors="replace"))
        if len(self._buf) > self.max_line:
            self._buf.clear()
            if not self._discarding:
                self._discarding = True
                self.dropped += 1
        return lines

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by a newline."""
        return len(self._buf)

    def reset(self):
        self._buf.clear()
        self._discarding = False


class SerialThread(threading.Thread):
    """Background serial reader.

    Continuously reads from the reader's serial port, frames the bytes into lines
    and forwards each line to the transport sink. A read failure is reported once
    as an "error" event and ends the thread."""
    def __init__(self, ser, sink: Sink, stop_evt: threading.Event, logger: JsonLogger):
        """Create the serial reader thread.

        Args:
            ser: An open pyserial Serial instance.
            sink: Callback receiving ("line", text) and ("error", exc) events.
            stop_evt: Set by the transport when it is closed.
            logger: JsonLogger for serial-related events.
        """
        super().__init__(daemon=True, name="rfid-serial-reader")
        self.ser = ser
        self.sink = sink
        self.stop_evt = stop_evt
        self.logger = logger
        self.framer = LineFramer()

    def run(self):
        """Thread entry point. Reads until stopped or the port fails."""
        while not self.stop_evt.is_set():
            try:
                waiting = getattr(self.ser, "in_waiting", 0) or 1
                data = self.ser.read(waiting)
            except Exception as e:
                if self.stop_evt.is_set():
                    break
                self.logger.emit("serial_read_error", error=str(e))
                self.sink("error", e)
                break
            if not data:
                continue
            dropped = self.framer.dropped
            lines = self.framer.feed(data)
            if self.framer.dropped != dropped:
                self.logger.emit("serial_line_overflow", max_bytes=self.framer.max_line, dropped=self.framer.dropped)
            for line in lines:
                try:
                    self.sink("line", line)
                except Exception as e:
                    # One bad line must not stop the reader.
                    self.logger.emit("serial_line_error", error=repr(e), length=len(line))


class SerialTransport:
    """pyserial-backed transport for one physical reader."""

    kind = "serial"

    def __init__(self, sink: Sink, logger: JsonLogger, read_timeout_s: float = 0.25,
                 serial_factory: Optional[Callable] = None):
        self._sink = sink
        self.logger = logger
        self.read_timeout_s = float(read_timeout_s)
        self._serial_factory = serial_factory
        self._ser = None
        self._stop_evt = threading.Event()
        self._thread: Optional[SerialThread] = None
        self._write_lock = threading.Lock()
        self.port: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._ser is not None

    def open(self, port: str, baud_rate: int):
        """Open the port and start the reader thread.

        Raises:
            PortUnavailable: The device is busy, missing, or not permitted.
        """
        factory = self._serial_factory
        if factory is None:
            if serial is None:
                raise PortUnavailable(port, "pyserial is not installed")
            factory = serial.Serial
        try:
            ser = factory(port, baud_rate, timeout=self.read_timeout_s)
        except (OSError, ValueError) as e:
            # serial.SerialException is an OSError subclass.
            raise PortUnavailable(port, str(e)) from e

        self._ser = ser
        self.port = port
        self._stop_evt = threading.Event()
        self._sink("opened", port)
        self._thread = SerialThread(ser, self._sink, self._stop_evt, self.logger)
        self._thread.start()

    def write_line(self, line: str):
        """Write one newline-terminated line.

        Raises:
            NotOpen: The transport has been closed.
        """
        ser = self._ser
        if ser is None:
            raise NotOpen("serial transport is not open")
        # Writes come from request threads and the reader thread; keep lines whole.
        with self._write_lock:
            ser.write((line + "\n").encode("utf-8"))
            ser.flush()

    def close(self):
        """Release the port. Safe to call more than once."""
        ser = self._ser
        if ser is None:
            return
        self._ser = None
        self._stop_evt.set()
        try:
            ser.close()
        except Exception as e:
            self.logger.emit("serial_close_error", port=self.port, error=str(e))
        t = self._thread
        self._thread = None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=1.0)


class SimulatedTransport:
    """Hardware-free reader used when the simulated transport is configured.

    Answers STATUS and WRITE_CARD commands the way the reader firmware does and,
    if mock card ids are configured, scans them round-robin every
    `mock_period_s` seconds. Tests drive it with inject_line()/inject_error()."""

    kind = "simulated"

    def __init__(self, sink: Sink, logger: JsonLogger, mock_card_ids: Iterable[str] = (),
                 mock_period_s: float = 0.0, reader_id: str = "SIM-READER"):
        self._sink = sink
        self.logger = logger
        self.mock_card_ids = [str(c) for c in mock_card_ids if c]
        self.mock_period_s = float(mock_period_s)
        self.reader_id = reader_id
        self.writes: List[str] = []
        self.port: Optional[str] = None
        self._open = False
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._framer = LineFramer()

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, port: str, baud_rate: int):
        self._open = True
        self.port = port
        self._stop_evt = threading.Event()
        self._sink("opened", port)
        if self.mock_card_ids and self.mock_period_s > 0:
            self._thread = threading.Thread(target=self._scan_loop, daemon=True, name="rfid-sim-scanner")
            self._thread.start()

    def write_line(self, line: str):
        if not self._open:
            raise NotOpen("simulated transport is not open")
        self.writes.append(line)
        try:
            cmd = json.loads(line)
        except ValueError:
            return
        if not isinstance(cmd, dict):
            return
        if cmd.get("command") == CMD_STATUS:
            self.inject_line(json.dumps({
                "type": MSG_SYSTEM_STATUS,
                "reader_id": self.reader_id,
                "model": "RC522 (Simulated)",
                "version": VERSION,
                "state": "idle",
            }))
        elif cmd.get("command") == CMD_WRITE_CARD:
            self.inject_line(json.dumps({
                "type": MSG_SYSTEM_MESSAGE,
                "message_type": "WRITE_SUCCESS",
                "message": f"student {cmd.get('student_id')} written",
            }, ensure_ascii=False))

    def inject_line(self, text: str):
        """Deliver one line as if the reader had sent it."""
        self._sink("line", text)

    def inject_bytes(self, data: bytes):
        """Deliver raw bytes through the line framer."""
        for line in self._framer.feed(data):
            self._sink("line", line)

    def inject_error(self, exc: Exception):
        """Report a transport failure as if the device had gone away."""
        self._sink("error", exc)

    def close(self):
        if not self._open:
            return
        self._open = False
        self._stop_evt.set()
        self._framer.reset()
        t = self._thread
        self._thread = None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=1.0)

    def _scan_loop(self):
        for card_id in itertools.cycle(self.mock_card_ids):
            if self._stop_evt.wait(self.mock_period_s):
                return
            self.inject_line(json.dumps({"type": MSG_RFID_TAG, "card_id": card_id, "reader_id": self.reader_id}))
