import json

import pytest

from rfidbridge.protocol import (
    Heartbeat,
    RfidTag,
    SystemMessage,
    SystemStatus,
    TextStatus,
    Unrecognized,
    context_window,
    encode_command,
    parse_line,
)


class CapturingLogger:
    def __init__(self):
        self.events = []

    def emit(self, event: str, **fields):
        self.events.append((event, fields))


@pytest.mark.parametrize("raw", ["", "   ", "\r", "\t\n"])
def test_blank_lines_are_dropped(raw):
    assert parse_line(raw) is None


def test_json_tag_with_reader_id():
    msg = parse_line('  {"type":"RFID_TAG","card_id":"DEADBEEF","reader_id":"R1"}  ')
    assert msg == RfidTag(uid="DEADBEEF", source="arduino_json", reader_id="R1")


def test_truncated_json_is_unrecognized_and_logged():
    logger = CapturingLogger()
    raw = '{"type":"RFID_TAG", "card_id":'
    # Not JSON-shaped (no closing brace), so it is classified as text.
    msg = parse_line(raw, logger)
    assert not isinstance(msg, RfidTag)

    broken = '{"type":"RFID_TAG", "card_id": }'
    msg = parse_line(broken, logger)
    assert isinstance(msg, Unrecognized)
    assert msg.reason == "malformed_json"
    name, fields = logger.events[-1]
    assert name == "protocol_json_error"
    assert fields["context"] == context_window(broken)
    assert len(fields["context"]) == 20


def test_context_window_is_centred():
    text = "0123456789" * 6
    assert context_window(text) == text[20:40]
    assert context_window("short") == "short"


def test_missing_card_id_is_unrecognized():
    assert parse_line('{"type":"RFID_TAG"}') == Unrecognized(raw='{"type":"RFID_TAG"}', reason="missing_card_id")
    assert isinstance(parse_line('{"type":"RFID_TAG","card_id":""}'), Unrecognized)


def test_heartbeat_fields():
    msg = parse_line('{"type":"HEARTBEAT","timestamp":"T","reader_id":"R1","state":"idle"}')
    assert msg == Heartbeat(timestamp="T", reader_id="R1", state="idle")


def test_system_message_and_status_keep_payload():
    sm = parse_line('{"type":"SYSTEM_MESSAGE","message_type":"BOOT","message":"ready"}')
    assert isinstance(sm, SystemMessage)
    assert sm.message_type == "BOOT"
    assert sm.message == "ready"

    st = parse_line('{"type":"SYSTEM_STATUS","model":"RC522","uptime":12}')
    assert isinstance(st, SystemStatus)
    assert st.payload["uptime"] == 12


def test_unknown_type_and_non_object():
    assert parse_line('{"type":"NOPE"}').reason == "unknown_type"
    assert parse_line('{"card_id":"AB"}').reason == "unknown_type"


def test_korean_tag_number_text():
    assert parse_line("태그 번호: 1f3ce217") == RfidTag(uid="1F3CE217", source="arduino_text")
    # The marker wins even when other keywords are present.
    assert parse_line("RFID 태그 번호:AbC0 오류").uid == "ABC0"


def test_legacy_rfid_prefix():
    assert parse_line("RFID: 04a1b2c3") == RfidTag(uid="04A1B2C3", source="arduino_text")


@pytest.mark.parametrize(
    "raw,kind",
    [
        ("RFID reader initialised", "RFID"),
        ("시리얼 연결 완료", "CONNECTION"),
        ("리더기 준비", "CONNECTION"),
        ("카드 읽기 오류", "ERROR"),
        ("ERROR: antenna", "ERROR"),
        ("booting", "STATUS"),
        ("태그 번호: zz", "STATUS"),
    ],
)
def test_text_classification_precedence(raw, kind):
    msg = parse_line(raw)
    assert isinstance(msg, TextStatus)
    assert msg.kind == kind
    assert msg.text == raw


def test_encode_command_omits_missing_fields():
    assert json.loads(encode_command("STATUS")) == {"command": "STATUS"}
    line = encode_command("WRITE_CARD", student_id="S1", student_name="김민수", card_id=None)
    assert json.loads(line) == {"command": "WRITE_CARD", "student_id": "S1", "student_name": "김민수"}
    assert "\n" not in line


def test_deeply_nested_json_is_unrecognized_not_raised():
    logger = CapturingLogger()
    raw = '{"a":' + "[" * 100000 + "]" * 100000 + "}"
    msg = parse_line(raw, logger)
    assert isinstance(msg, Unrecognized)
    assert msg.reason == "malformed_json"
    (event, fields), = logger.events
    assert event == "protocol_json_error"
    assert len(fields["context"]) <= 20
