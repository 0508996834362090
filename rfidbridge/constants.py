from __future__ import annotations

VERSION = "1.0.0"

DEFAULT_BAUD = 9600
DEFAULT_READER_ID = "ARDUINO"

# Inbound JSON envelope types
MSG_RFID_TAG = "RFID_TAG"
MSG_HEARTBEAT = "HEARTBEAT"
MSG_SYSTEM_MESSAGE = "SYSTEM_MESSAGE"
MSG_SYSTEM_STATUS = "SYSTEM_STATUS"

# Outbound commands
CMD_WRITE_CARD = "WRITE_CARD"
CMD_STATUS = "STATUS"

SOURCE_JSON = "arduino_json"
SOURCE_TEXT = "arduino_text"

# Port discovery hints (lower-case)
READER_MANUFACTURER_HINTS = ("arduino", "ch340", "ch341", "ftdi")
READER_VENDOR_IDS = ("2341", "1a86", "0403")

DEFAULT_CONTROL_SOCKET = "/run/rfidbridge/rfidbridge.sock"


USAGE_EXAMPLES = """\
Usage examples:
  # Auto-detect the reader and run the bridge
  python rfid-bridge.py

  # Explicit port, claimed for the reader page
  python rfid-bridge.py -p /dev/ttyUSB0 --baud 9600 --page-id reader

  # Simulated reader (no hardware), JSON logs
  python rfid-bridge.py --simulate --json --verbose

  # List serial ports and show the detected candidate
  python rfid-bridge.py --list-ports

  # Reader diagnostic (opens the port and sends STATUS)
  python rfid-bridge.py --doctor -p /dev/ttyUSB0
"""
