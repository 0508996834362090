from __future__ import annotations


class BridgeError(Exception):
    """Base class for errors raised by the RFID bridge."""


class ConnectError(BridgeError):
    """The bridge could not establish a serial connection."""


class PortUnavailable(ConnectError):
    """The serial device could not be claimed (busy, permission denied, absent)."""

    def __init__(self, port, reason: str = ""):
        self.port = port
        self.reason = reason
        msg = f"serial port unavailable: {port}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NoPortAvailable(ConnectError):
    """No port was given and none could be detected."""


class NotOpen(BridgeError):
    """Write attempted on a closed transport."""
