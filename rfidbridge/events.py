from __future__ import annotations

import threading
from collections import defaultdict
from typing import Callable, Dict, List

# Events emitted by the bridge.
CONNECTED = "connected"
DISCONNECTED = "disconnected"
CONNECTION_ERROR = "connection_error"
STATE_CHANGED = "state_changed"
PAGE_EVICTED = "page_evicted"
RFID_TAG = "rfid_tag"
HEARTBEAT = "heartbeat"
SYSTEM_MESSAGE = "system_message"
SYSTEM_STATUS = "system_status"
MESSAGE = "message"

ALL_EVENTS = (
    CONNECTED, DISCONNECTED, CONNECTION_ERROR, STATE_CHANGED, PAGE_EVICTED,
    RFID_TAG, HEARTBEAT, SYSTEM_MESSAGE, SYSTEM_STATUS, MESSAGE,
)

Listener = Callable[[object], None]


class EventBus:
    """Typed subscriptions for bridge events.

    Listeners run synchronously, in registration order, on the thread that
    emitted the event. A listener that raises is logged and skipped so one bad
    subscriber cannot stall the serial reader."""
    def __init__(self, logger=None):
        self.logger = logger
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: Listener) -> Listener:
        if event not in ALL_EVENTS:
            raise ValueError(f"unknown event: {event}")
        with self._lock:
            self._listeners[event].append(callback)
        return callback

    def unsubscribe(self, event: str, callback: Listener):
        with self._lock:
            try:
                self._listeners[event].remove(callback)
            except ValueError:
                pass

    def emit(self, event: str, payload=None):
        with self._lock:
            listeners = list(self._listeners.get(event, ()))
        for cb in listeners:
            try:
                cb(payload)
            except Exception as e:
                if self.logger is not None:
                    self.logger.emit("listener_error", bus_event=event, error=repr(e))
