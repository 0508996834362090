from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from .constants import (
    MSG_HEARTBEAT,
    MSG_RFID_TAG,
    MSG_SYSTEM_MESSAGE,
    MSG_SYSTEM_STATUS,
    SOURCE_JSON,
    SOURCE_TEXT,
)

# "태그 번호: 1F3CE217" (tag number) as printed by the reader firmware.
TAG_NUMBER_RE = re.compile(r"태그 번호:\s*([A-F0-9]+)", re.IGNORECASE)
# Legacy firmware output, "RFID:1F3CE217".
LEGACY_RFID_RE = re.compile(r"^RFID:\s*([A-F0-9]+)$", re.IGNORECASE)

CONTEXT_WINDOW = 20

TEXT_RFID = "RFID"
TEXT_CONNECTION = "CONNECTION"
TEXT_ERROR = "ERROR"
TEXT_STATUS = "STATUS"


@dataclass(frozen=True)
class RfidTag:
    uid: str
    source: str
    reader_id: Optional[str] = None


@dataclass(frozen=True)
class Heartbeat:
    timestamp: Optional[str] = None
    reader_id: Optional[str] = None
    state: Optional[str] = None


@dataclass(frozen=True)
class SystemMessage:
    message_type: Optional[str] = None
    message: Optional[str] = None
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SystemStatus:
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TextStatus:
    kind: str
    text: str


@dataclass(frozen=True)
class Unrecognized:
    raw: str
    reason: str


InboundMessage = Union[RfidTag, Heartbeat, SystemMessage, SystemStatus, TextStatus, Unrecognized]


def context_window(text: str, width: int = CONTEXT_WINDOW) -> str:
    """Return `width` characters centred on the middle of `text`."""
    mid = len(text) // 2
    start = max(0, mid - width // 2)
    return text[start:start + width]


def parse_line(raw: str, logger=None) -> Optional[InboundMessage]:
    """Classify one line from the reader.

    Returns None for blank lines. Never raises: malformed JSON becomes
    Unrecognized and is logged with a short context window."""
    text = (raw or "").strip()
    if not text:
        return None
    if text.startswith("{") and text.endswith("}"):
        return _parse_json(text, logger)
    return _parse_text(text, logger)


def _parse_json(text: str, logger) -> InboundMessage:
    try:
        msg = json.loads(text)
    except (ValueError, RecursionError) as e:
        # Deeply nested input exhausts the decoder stack.
        if logger is not None:
            logger.emit(
                "protocol_json_error",
                error=str(e),
                length=len(text),
                context=context_window(text),
            )
        return Unrecognized(raw=text, reason="malformed_json")

    if not isinstance(msg, dict):
        return Unrecognized(raw=text, reason="not_an_object")

    mtype = msg.get("type")
    if mtype == MSG_RFID_TAG:
        card_id = msg.get("card_id")
        if card_id is None or str(card_id).strip() == "":
            if logger is not None:
                logger.emit("protocol_missing_card_id", raw=text)
            return Unrecognized(raw=text, reason="missing_card_id")
        reader_id = msg.get("reader_id")
        return RfidTag(uid=str(card_id).strip(), source=SOURCE_JSON,
                       reader_id=str(reader_id) if reader_id is not None else None)
    if mtype == MSG_HEARTBEAT:
        return Heartbeat(timestamp=msg.get("timestamp"), reader_id=msg.get("reader_id"), state=msg.get("state"))
    if mtype == MSG_SYSTEM_MESSAGE:
        return SystemMessage(message_type=msg.get("message_type"), message=msg.get("message"), payload=msg)
    if mtype == MSG_SYSTEM_STATUS:
        return SystemStatus(payload=msg)

    if logger is not None:
        logger.emit("protocol_unknown_type", type=mtype)
    return Unrecognized(raw=text, reason="unknown_type")


def _parse_text(text: str, logger) -> InboundMessage:
    m = TAG_NUMBER_RE.search(text)
    if m:
        return RfidTag(uid=m.group(1).upper(), source=SOURCE_TEXT)
    if "태그 번호:" in text and logger is not None:
        logger.emit("protocol_tag_number_unparsed", raw=text)

    m = LEGACY_RFID_RE.match(text)
    if m:
        return RfidTag(uid=m.group(1).upper(), source=SOURCE_TEXT)

    if "RFID" in text:
        return TextStatus(kind=TEXT_RFID, text=text)
    # "연결" = connected, "준비" = ready
    if "연결" in text or "준비" in text:
        return TextStatus(kind=TEXT_CONNECTION, text=text)
    # "오류" = error
    if "오류" in text or "ERROR" in text:
        return TextStatus(kind=TEXT_ERROR, text=text)
    return TextStatus(kind=TEXT_STATUS, text=text)


def encode_command(command: str, **fields) -> str:
    """Serialize an outbound command as one JSON line (no terminator)."""
    payload = {"command": command}
    payload.update({k: v for k, v in fields.items() if v is not None})
    return json.dumps(payload, ensure_ascii=False)
