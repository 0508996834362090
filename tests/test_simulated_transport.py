import json
import time

from rfidbridge.serialio import SimulatedTransport


def _collect():
    got = []
    return got, lambda kind, payload: got.append((kind, payload))


def test_status_and_write_are_answered(logger):
    got, sink = _collect()
    t = SimulatedTransport(sink, logger)
    t.open("SIMULATED", 9600)
    t.write_line(json.dumps({"command": "STATUS"}))
    t.write_line(json.dumps({"command": "WRITE_CARD", "student_id": "S9", "student_name": "Lee"}))
    t.write_line("not json")
    t.close()

    assert got[0] == ("opened", "SIMULATED")
    status = json.loads(got[1][1])
    assert status["type"] == "SYSTEM_STATUS"
    assert status["model"] == "RC522 (Simulated)"
    reply = json.loads(got[2][1])
    assert reply["message_type"] == "WRITE_SUCCESS"
    assert len(got) == 3
    assert len(t.writes) == 3


def test_inject_bytes_frames_lines(logger):
    got, sink = _collect()
    t = SimulatedTransport(sink, logger)
    t.open("SIMULATED", 9600)
    t.inject_bytes(b'{"type":"RFID_TAG","ca')
    t.inject_bytes(b'rd_id":"C1"}\r\nTag')
    assert got[1:] == [("line", '{"type":"RFID_TAG","card_id":"C1"}')]


def test_mock_cards_scan_round_robin(logger):
    got, sink = _collect()
    t = SimulatedTransport(sink, logger, mock_card_ids=["A", "B"], mock_period_s=0.01)
    t.open("SIMULATED", 9600)
    deadline = time.time() + 2.0
    while len(got) < 4 and time.time() < deadline:
        time.sleep(0.01)
    t.close()
    cards = [json.loads(p)["card_id"] for k, p in got[1:4]]
    assert cards == ["A", "B", "A"]


def test_simulated_bridge_receives_mock_scans(make_bridge):
    b = make_bridge(use_factory=False, transport="simulated", mock_card_ids=("D4",), mock_period_s=0.01)
    b.connect(None, None, "reader")
    try:
        deadline = time.time() + 2.0
        while b.get_latest_tag() is None and time.time() < deadline:
            time.sleep(0.01)
        tag = b.get_latest_tag()
        assert tag is not None
        assert tag.rfid_card_id == "D4"
        assert b.get_status()["mock_mode"] is True
    finally:
        b.disconnect()
