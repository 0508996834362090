from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from .constants import DEFAULT_READER_ID
from .util import now_iso


@dataclass
class TagEvent:
    """One card scan. Only `processed` changes after creation."""
    id: int
    rfid_card_id: str
    tag_time: str
    reader_id: str = DEFAULT_READER_ID
    source: str = "arduino"
    processed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class TagQueue:
    """Append-only FIFO of tag events with processed flags.

    Entries are never removed implicitly; a consumer that never marks tags
    processed makes the queue grow without bound. prune_processed() is the only
    way entries leave."""
    def __init__(self):
        self._items: List[TagEvent] = []
        self._listeners: List[Callable[[TagEvent], None]] = []
        self._lock = threading.RLock()
        self._last_id = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def next_id(self) -> int:
        """Creation time in ms, bumped so ids stay strictly increasing."""
        with self._lock:
            candidate = int(time.time() * 1000)
            if candidate <= self._last_id:
                candidate = self._last_id + 1
            self._last_id = candidate
            return candidate

    def new_event(self, card_id: str, reader_id: Optional[str] = None, source: str = "arduino") -> TagEvent:
        return TagEvent(
            id=self.next_id(),
            rfid_card_id=card_id,
            tag_time=now_iso(),
            reader_id=reader_id or DEFAULT_READER_ID,
            source=source,
        )

    def add_listener(self, callback: Callable[[TagEvent], None]):
        self._listeners.append(callback)

    def enqueue(self, event: TagEvent):
        """Append in arrival order and notify listeners synchronously."""
        with self._lock:
            self._items.append(event)
            listeners = list(self._listeners)
        for cb in listeners:
            cb(event)

    def get_latest_tag(self) -> Optional[TagEvent]:
        """Oldest unprocessed entry by insertion order, or None."""
        with self._lock:
            for item in self._items:
                if not item.processed:
                    return item
        return None

    def mark_processed(self, tag_id) -> bool:
        """Flip `processed` on the matching entry. Unknown ids are a no-op."""
        with self._lock:
            for item in self._items:
                if item.id == tag_id:
                    item.processed = True
                    return True
        return False

    def take_next(self) -> Optional[TagEvent]:
        """Return the oldest unprocessed entry and mark it processed atomically."""
        with self._lock:
            item = self.get_latest_tag()
            if item is not None:
                item.processed = True
            return item

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for item in self._items if not item.processed)

    def prune_processed(self) -> int:
        """Drop processed entries; returns how many were removed."""
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if not item.processed]
            return before - len(self._items)
