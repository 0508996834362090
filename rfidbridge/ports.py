from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence

try:
    import serial.tools.list_ports as list_ports_mod
except ImportError:  # pragma: no cover
    list_ports_mod = None

from .constants import READER_MANUFACTURER_HINTS, READER_VENDOR_IDS


@dataclass
class PortInfo:
    path: str
    manufacturer: Optional[str] = None
    vendor_id: Optional[str] = None
    product_id: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _hex_id(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, int):
        return f"{value:04x}"
    return str(value).lower()


def list_ports(logger=None) -> List[PortInfo]:
    """Enumerate serial devices. Returns an empty list if enumeration fails."""
    if list_ports_mod is None:
        if logger is not None:
            logger.emit("port_list_unavailable", reason="pyserial is not installed")
        return []
    try:
        found = list_ports_mod.comports()
    except Exception as e:
        if logger is not None:
            logger.emit("port_list_error", error=str(e))
        return []
    return [
        PortInfo(
            path=p.device,
            manufacturer=p.manufacturer,
            vendor_id=_hex_id(p.vid),
            product_id=_hex_id(p.pid),
            serial_number=p.serial_number,
            description=p.description,
        )
        for p in found
    ]


def is_reader_like(port: PortInfo) -> bool:
    """True if the port looks like an Arduino/CH340/FTDI reader."""
    manufacturer = (port.manufacturer or "").lower()
    if any(hint in manufacturer for hint in READER_MANUFACTURER_HINTS):
        return True
    return (port.vendor_id or "").lower() in READER_VENDOR_IDS


def detect_candidate(ports: Sequence[PortInfo]) -> Optional[PortInfo]:
    """Pick the port most likely to be the RFID reader.

    The first reader-like port in enumeration order wins; otherwise the first port
    at all; None if there are no ports."""
    for p in ports:
        if is_reader_like(p):
            return p
    if ports:
        return ports[0]
    return None
