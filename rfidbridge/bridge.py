from __future__ import annotations

import threading
from typing import Callable, List, Optional

from . import events as ev
from .config import TRANSPORT_SIMULATED, BridgeConfig
from .constants import CMD_STATUS, CMD_WRITE_CARD, VERSION
from .errors import BridgeError, ConnectError, NoPortAvailable, PortUnavailable
from .events import EventBus
from .logging import JsonLogger
from .ports import PortInfo, detect_candidate, list_ports
from .protocol import (
    Heartbeat,
    InboundMessage,
    RfidTag,
    SystemMessage,
    SystemStatus,
    TextStatus,
    Unrecognized,
    encode_command,
    parse_line,
)
from .serialio import SerialTransport, SimulatedTransport
from .state import BridgeState, ConnectionState
from .tags import TagEvent, TagQueue
from .util import now_iso, now_s

SIMULATED_PORT = "SIMULATED"
NOTIFY_KEY_EXHAUSTED = "reconnect_exhausted"


class RfidBridge:
    """RFID reader connection manager.

    Owns the serial link to one reader, parses its line protocol and turns card
    scans into queued TagEvents. Only one page may hold the link at a time; a
    connect from a different page evicts the current owner. When a transport
    error hits a port that was connected before, the bridge retries it on a
    timer until `max_reconnect_attempts` is reached, then stays disconnected
    until the next explicit connect.

    One instance is created per process (see cli.main) and shared with the
    control socket. All state changes happen under `_lock`; the serial reader
    thread, the reconnect timer and request threads call in concurrently."""
    def __init__(
        self,
        config: BridgeConfig,
        logger: JsonLogger,
        transport_factory: Optional[Callable] = None,
        port_lister: Optional[Callable[[], List[PortInfo]]] = None,
        timer_factory: Optional[Callable] = None,
        notifier=None,
    ):
        """
        Args:
            config: Resolved bridge configuration.
            logger: JsonLogger for lifecycle and protocol events.
            transport_factory: Called with a sink callback; returns an unopened
                transport. Defaults to the transport selected by config.
            port_lister: Returns the current serial ports (defaults to pyserial).
            timer_factory: threading.Timer-compatible factory for reconnect delays.
            notifier: Optional Notifier used when reconnects are exhausted.
        """
        self.config = config
        self.logger = logger
        self.state = BridgeState()
        self.events = EventBus(logger)
        self.tags = TagQueue()
        self.tags.add_listener(self._on_tag_enqueued)
        self.notifier = notifier

        self._transport_factory = transport_factory or self._default_transport_factory
        self._port_lister = port_lister or (lambda: list_ports(self.logger))
        self._timer_factory = timer_factory or threading.Timer

        self._lock = threading.RLock()
        self._transport = None
        self._generation = 0
        self._pending_open = None
        self._reconnect_timer = None
        self._reader_status: dict = {}
        self._status_evt = threading.Event()

        # Watchdog loop
        self._stop_evt = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._next_hb_ts = now_s() + max(0.0, float(config.breadcrumb_interval_s))
        self._heartbeat_stale = False

    # ---------------- Subscriptions ----------------

    def subscribe(self, event: str, callback):
        """Register a listener for one of the events in rfidbridge.events."""
        return self.events.subscribe(event, callback)

    def unsubscribe(self, event: str, callback):
        self.events.unsubscribe(event, callback)

    # ---------------- Connection lifecycle ----------------

    def connect(self, port: Optional[str] = None, baud_rate: Optional[int] = None,
                page_id: Optional[str] = None) -> dict:
        """Open the reader on `port` for `page_id`.

        A different page holding the link is evicted first. With no port, the
        configured or remembered port is used, then auto-detection.

        Raises:
            NoPortAvailable: No port given and none could be found.
            PortUnavailable: The port could not be opened.
        """
        with self._lock:
            baud = int(baud_rate or self.state.baud_rate or self.config.baud)
            owner = self.state.owning_page
            if self.state.connected and owner is not None and owner != page_id:
                self.logger.emit("page_evicted", previous_page=owner, new_page=page_id)
                self.disconnect()
                self.events.emit(ev.PAGE_EVICTED, {"previous_page": owner, "new_page": page_id})

            if port is None:
                port = self._resolve_port()
                if port is None:
                    self.logger.emit("no_port_available")
                    raise NoPortAvailable("no serial port given and none detected")

            self._cancel_reconnect()
            self._close_transport()
            self._open(port, baud, page_id)
            return {
                "success": True,
                "message": "Serial connection established",
                "port": port,
                "baudRate": baud,
                "page_id": page_id,
            }

    connect_to_port = connect

    def disconnect(self):
        """Close the link and release page ownership. Keeps the remembered port."""
        with self._lock:
            active = (
                self._transport is not None
                or self._reconnect_timer is not None
                or self.state.state is not ConnectionState.DISCONNECTED
            )
            self._cancel_reconnect()
            self._close_transport()
            previous = self.state.owning_page
            self.state.owning_page = None
            self.state.reconnect_attempts = 0
            self._set_state(ConnectionState.DISCONNECTED)
            if active:
                self.logger.emit("disconnected", port=self.state.current_port, previous_page=previous)
                self.events.emit(ev.DISCONNECTED, {"port": self.state.current_port, "previous_page": previous})

    def reset_connection(self):
        """disconnect() and forget the port, so no automatic reconnect has a target."""
        with self._lock:
            self.disconnect()
            self.state.current_port = None
            self.state.baud_rate = None
            self.state.last_page = None
            self.state.last_heartbeat = None
            self.state.last_heartbeat_ts = 0.0
            self._reader_status = {}
            self.logger.emit("connection_reset")

    def _resolve_port(self) -> Optional[str]:
        if self.config.port:
            return self.config.port
        if self.state.current_port:
            return self.state.current_port
        if self.config.transport == TRANSPORT_SIMULATED:
            return SIMULATED_PORT
        cand = detect_candidate(self._port_lister())
        if cand is not None:
            self.logger.emit("port_detected", port=cand.path, manufacturer=cand.manufacturer)
            return cand.path
        return None

    def _default_transport_factory(self, sink):
        if self.config.transport == TRANSPORT_SIMULATED:
            return SimulatedTransport(
                sink,
                self.logger,
                mock_card_ids=self.config.mock_card_ids,
                mock_period_s=self.config.mock_period_s,
            )
        return SerialTransport(sink, self.logger, read_timeout_s=self.config.read_timeout_s)

    def _open(self, port: str, baud: int, page_id: Optional[str]):
        self.state.owning_page = None
        self._set_state(ConnectionState.CONNECTING)
        self._generation += 1
        gen = self._generation
        transport = self._transport_factory(lambda kind, payload: self._on_transport_event(gen, kind, payload))
        self._transport = transport
        self._pending_open = (port, baud, page_id)
        try:
            transport.open(port, baud)
        except PortUnavailable as e:
            if self._transport is transport:
                self._transport = None
            self.logger.emit("connect_failed", port=port, baud=baud, error=str(e))
            self._handle_connection_error(e)
            raise
        finally:
            self._pending_open = None

    def _close_transport(self):
        t = self._transport
        self._transport = None
        # Events still in flight from the old reader thread are dropped.
        self._generation += 1
        if t is not None:
            t.close()

    def _set_state(self, new: ConnectionState):
        prev = self.state.state
        if prev is new:
            return
        self.state.state = new
        self.logger.debug("state_changed", previous=prev.value, current=new.value)
        self.events.emit(ev.STATE_CHANGED, {"previous": prev.value, "current": new.value})

    def _stamp_heartbeat(self):
        self.state.last_heartbeat = now_iso()
        self.state.last_heartbeat_ts = now_s()
        self._heartbeat_stale = False

    # ---------------- Transport events ----------------

    def _on_transport_event(self, gen: int, kind: str, payload):
        # A closing transport's reader may be waiting here while close() joins it.
        while not self._lock.acquire(timeout=0.1):
            if gen != self._generation:
                return
        try:
            if gen != self._generation:
                self.logger.debug("stale_transport_event", kind=kind)
                return
            if kind == "opened":
                self._on_opened(payload)
            elif kind == "line":
                self._on_line(payload)
            elif kind == "error":
                self._on_transport_error(payload)
        finally:
            self._lock.release()

    def _on_opened(self, port):
        _, baud, page_id = self._pending_open or (port, self.config.baud, None)
        self._set_state(ConnectionState.CONNECTED)
        self.state.current_port = port
        self.state.baud_rate = baud
        self.state.owning_page = page_id
        self.state.last_page = page_id
        self.state.reconnect_attempts = 0
        self._stamp_heartbeat()
        if self.notifier is not None:
            self.notifier.clear(NOTIFY_KEY_EXHAUSTED)
        kind = getattr(self._transport, "kind", "serial")
        self.logger.emit("connected", port=port, baud=baud, page=page_id, transport=kind)
        self.events.emit(ev.CONNECTED, {"port": port, "baudRate": baud, "page_id": page_id})

    def _on_line(self, line: str):
        self.logger.debug("serial", line=line)
        msg = parse_line(line, self.logger)
        if msg is None:
            return
        self.handle_message(msg)

    def _on_transport_error(self, exc):
        self.logger.emit("transport_error", port=self.state.current_port, error=str(exc))
        self._close_transport()
        self._handle_connection_error(exc)

    def _handle_connection_error(self, exc):
        if self.state.owning_page is not None:
            self.state.last_page = self.state.owning_page
        self.state.owning_page = None
        self._set_state(ConnectionState.ERROR)
        self.events.emit(ev.CONNECTION_ERROR, {"port": self.state.current_port, "error": str(exc)})

        if self.state.current_port is None:
            # Only a port that was connected before is retried automatically.
            self.logger.emit("reconnect_skipped", reason="no_known_port")
            self._set_state(ConnectionState.DISCONNECTED)
            return

        limit = int(self.config.max_reconnect_attempts)
        if self.state.reconnect_attempts < limit:
            self.state.reconnect_attempts += 1
            self.logger.emit(
                "reconnect_scheduled",
                attempt=self.state.reconnect_attempts,
                max_attempts=limit,
                port=self.state.current_port,
                delay_s=self.config.reconnect_delay_s,
            )
            self._schedule_reconnect()
            return

        self.logger.emit("reconnect_exhausted", attempts=self.state.reconnect_attempts, port=self.state.current_port)
        self._set_state(ConnectionState.DISCONNECTED)
        if self.notifier is not None:
            self.notifier.send(
                NOTIFY_KEY_EXHAUSTED,
                "RFID reader offline",
                f"Reader on {self.state.current_port} did not come back after "
                f"{self.state.reconnect_attempts} attempts; reconnect it manually.",
                priority=1,
            )

    # ---------------- Reconnect policy ----------------

    def _schedule_reconnect(self):
        self._cancel_reconnect()
        timer = self._timer_factory(float(self.config.reconnect_delay_s), self._reconnect)
        timer.daemon = True
        self._reconnect_timer = timer
        timer.start()

    def _cancel_reconnect(self):
        timer = self._reconnect_timer
        self._reconnect_timer = None
        if timer is not None:
            timer.cancel()

    def _reconnect_target(self) -> Optional[str]:
        remembered = self.state.current_port
        if self.config.transport == TRANSPORT_SIMULATED:
            return remembered
        ports = self._port_lister()
        if any(p.path == remembered for p in ports):
            return remembered
        cand = detect_candidate(ports)
        return cand.path if cand is not None else remembered

    def _reconnect(self):
        with self._lock:
            if self._reconnect_timer is None:
                # Cancelled after the timer had already fired.
                return
            self._reconnect_timer = None
            port = self._reconnect_target()
            baud = self.state.baud_rate or self.config.baud
            page_id = self.state.last_page
            self.logger.emit("reconnect_attempt", attempt=self.state.reconnect_attempts, port=port)
            try:
                self._close_transport()
                self._open(port, baud, page_id)
            except ConnectError as e:
                self.logger.emit("reconnect_failed", attempt=self.state.reconnect_attempts, error=str(e))

    # ---------------- Inbound messages ----------------

    def handle_message(self, msg: InboundMessage):
        """Apply one parsed message: queue tags, track heartbeats, fan out events."""
        if isinstance(msg, RfidTag):
            if not msg.uid:
                self.logger.emit("tag_dropped", reason="empty_uid", source=msg.source)
                return
            tag = self.tags.new_event(msg.uid, reader_id=msg.reader_id, source=msg.source)
            self.logger.emit("tag_queued", card_id=tag.rfid_card_id, id=tag.id, source=tag.source,
                             queue_size=len(self.tags) + 1)
            self.tags.enqueue(tag)
        elif isinstance(msg, Heartbeat):
            self._stamp_heartbeat()
            self._status_evt.set()
            self.events.emit(ev.HEARTBEAT, {"timestamp": msg.timestamp, "reader_id": msg.reader_id, "state": msg.state})
        elif isinstance(msg, SystemMessage):
            self.logger.emit("system_message", message_type=msg.message_type, message=msg.message)
            self.events.emit(ev.SYSTEM_MESSAGE, dict(msg.payload))
        elif isinstance(msg, SystemStatus):
            self._reader_status = dict(msg.payload)
            self._status_evt.set()
            self.events.emit(ev.SYSTEM_STATUS, dict(msg.payload))
        elif isinstance(msg, TextStatus):
            self.logger.emit("reader_text", kind=msg.kind, text=msg.text)
            self.events.emit(ev.MESSAGE, {"type": msg.kind, "message": msg.text, "timestamp": now_iso()})
        elif isinstance(msg, Unrecognized):
            self.logger.debug("unrecognized_line", reason=msg.reason, raw=msg.raw)
            self.events.emit(ev.MESSAGE, {
                "type": "UNRECOGNIZED",
                "message": msg.raw,
                "reason": msg.reason,
                "timestamp": now_iso(),
            })

    def _on_tag_enqueued(self, tag: TagEvent):
        self.events.emit(ev.RFID_TAG, tag.to_dict())

    # ---------------- Tag queue ----------------

    def get_latest_tag(self) -> Optional[TagEvent]:
        """Oldest unprocessed tag, or None."""
        return self.tags.get_latest_tag()

    def mark_tag_processed(self, tag_id) -> bool:
        return self.tags.mark_processed(tag_id)

    def take_tag(self) -> Optional[TagEvent]:
        """get_latest_tag() + mark_tag_processed() as one step."""
        return self.tags.take_next()

    # ---------------- Commands ----------------

    def _send_line(self, line: str) -> bool:
        with self._lock:
            transport = self._transport if self.state.connected else None
        if transport is None:
            self.logger.emit("command_rejected", reason="not_connected", command=line)
            return False
        try:
            transport.write_line(line)
        except (BridgeError, OSError) as e:
            self.logger.emit("command_write_error", command=line, error=str(e))
            return False
        self.logger.emit("command_sent", command=line)
        return True

    def write_card_data(self, student_id, student_name) -> bool:
        """Ask the reader to write a student onto the next card. False if offline."""
        return self._send_line(encode_command(CMD_WRITE_CARD, student_id=student_id, student_name=student_name))

    def send_command(self, command) -> dict:
        line = command if isinstance(command, str) else encode_command(**command)
        if self._send_line(line):
            return {"success": True, "message": "Command sent successfully"}
        return {"success": False, "message": "Reader is not connected or the write failed"}

    def write_card(self, student_data: dict) -> dict:
        return self.send_command({
            "command": CMD_WRITE_CARD,
            "student_id": student_data.get("student_id"),
            "student_name": student_data.get("student_name"),
            "card_id": student_data.get("card_id"),
        })

    def test_connection(self, timeout_s: Optional[float] = None) -> dict:
        """Send STATUS and time the reader's reply.

        ping_time is the round trip in ms, or None if neither a status nor a
        heartbeat arrived within the timeout."""
        timeout = self.config.status_timeout_s if timeout_s is None else timeout_s
        if not self.state.connected:
            return {"success": False, "ping_time": None, "reader_info": self.reader_info(),
                    "message": "Reader is not connected"}
        self._status_evt.clear()
        t0 = now_s()
        if not self._send_line(encode_command(CMD_STATUS)):
            return {"success": False, "ping_time": None, "reader_info": self.reader_info(),
                    "message": "STATUS command could not be sent"}
        ping_time = None
        if self._status_evt.wait(max(0.0, float(timeout))):
            ping_time = int(round((now_s() - t0) * 1000))
        return {"success": True, "ping_time": ping_time, "reader_info": self.reader_info()}

    # ---------------- Status ----------------

    def list_ports(self) -> List[PortInfo]:
        return self._port_lister()

    def reader_info(self) -> dict:
        info = {
            "model": "RC522 (Simulated)" if self.config.mock_mode else "RC522",
            "version": VERSION,
        }
        for key in ("model", "version", "reader_id"):
            if self._reader_status.get(key) is not None:
                info[key] = self._reader_status[key]
        return info

    def get_status(self) -> dict:
        with self._lock:
            s = self.state
            return {
                "connected": s.connected,
                "state": s.state.value,
                "port": s.current_port or self.config.port,
                "baudRate": s.baud_rate or self.config.baud,
                "last_ping": s.last_heartbeat,
                "current_page": s.owning_page,
                "mock_mode": self.config.mock_mode,
                "transport": self.config.transport,
                "reconnect_attempts": s.reconnect_attempts,
                "reader_info": self.reader_info(),
                "pending_tags": self.tags.pending_count(),
            }

    # ---------------- Watchdog ----------------

    def start(self):
        """Start the heartbeat watchdog loop."""
        if self._loop_thread is not None:
            return
        self._stop_evt.clear()
        self._loop_thread = threading.Thread(target=self._loop, daemon=True, name="rfid-bridge-watchdog")
        self._loop_thread.start()

    def stop(self):
        """Stop the watchdog and any pending reconnect. The link stays as is."""
        self._stop_evt.set()
        with self._lock:
            self._cancel_reconnect()
        t = self._loop_thread
        self._loop_thread = None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=1.0)

    def _loop(self):
        while not self._stop_evt.wait(0.5):
            self._maybe_breadcrumbs()

    def _maybe_breadcrumbs(self):
        """Emit the periodic 'hb' snapshot and a one-shot 'heartbeat_stale' warning."""
        now = now_s()
        with self._lock:
            s = self.state
            dt = (now - s.last_heartbeat_ts) if s.last_heartbeat_ts else None

            interval = float(self.config.breadcrumb_interval_s)
            if interval > 0 and now >= self._next_hb_ts:
                self.logger.emit(
                    "hb",
                    state=s.state.value,
                    port=s.current_port,
                    page=s.owning_page,
                    pending_tags=self.tags.pending_count(),
                    dt_since_heartbeat=(round(dt, 3) if dt is not None else None),
                )
                self._next_hb_ts = now + interval

            if not s.connected or dt is None:
                return
            limit = float(self.config.heartbeat_interval_s) * float(self.config.heartbeat_timeout_factor)
            if limit <= 0 or self._heartbeat_stale:
                return
            if dt >= limit:
                self._heartbeat_stale = True
                self.logger.emit("heartbeat_stale", port=s.current_port, dt_since_heartbeat=round(dt, 3), limit_s=limit)
