#!/usr/bin/env python3
#
# RFID reader serial bridge
#
# Owns the serial link to an Arduino-class RFID reader, parses its line
# protocol (JSON envelopes and plain-text status lines) and queues card scans
# for the attendance backend, which polls them over a local control socket.
#

from __future__ import annotations

from rfidbridge.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
