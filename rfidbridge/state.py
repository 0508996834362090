from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass


class BridgeState:
    """Holds mutable connection state for the bridge.

    Updated by connect/disconnect calls, the serial reader thread and the
    reconnect timer, always under the bridge lock. `owning_page` is only set
    while `state` is CONNECTED."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    current_port: Optional[str] = None
    baud_rate: Optional[int] = None
    owning_page: Optional[str] = None
    last_page: Optional[str] = None
    last_heartbeat: Optional[str] = None
    last_heartbeat_ts: float = 0.0
    reconnect_attempts: int = 0

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED
