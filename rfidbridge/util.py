from __future__ import annotations

import time
from datetime import datetime, timezone


def now_s() -> float:
    """Monotonic clock in seconds."""
    return time.monotonic()


def now_iso() -> str:
    """Wall-clock UTC timestamp in ISO-8601 with milliseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")
