"""rfidbridge package for rfid-bridge."""

from .bridge import RfidBridge
from .config import BridgeConfig
from .state import BridgeState, ConnectionState
from .tags import TagEvent, TagQueue

__all__ = ["RfidBridge", "BridgeConfig", "BridgeState", "ConnectionState", "TagEvent", "TagQueue"]
