from types import SimpleNamespace

from rfidbridge import ports as ports_mod
from rfidbridge.ports import PortInfo, detect_candidate, is_reader_like


def test_empty_list_has_no_candidate():
    assert detect_candidate([]) is None


def test_falls_back_to_first_port():
    ps = [PortInfo("/dev/ttyS0", manufacturer="Intel"), PortInfo("/dev/ttyS1")]
    assert detect_candidate(ps).path == "/dev/ttyS0"


def test_manufacturer_hint_is_case_insensitive_and_first_match_wins():
    ps = [
        PortInfo("COM1", manufacturer="Microsoft"),
        PortInfo("COM4", manufacturer="wch.cn CH340"),
        PortInfo("COM3", manufacturer="Arduino LLC"),
    ]
    assert detect_candidate(ps).path == "COM4"


def test_vendor_ids():
    assert is_reader_like(PortInfo("a", vendor_id="2341"))
    assert is_reader_like(PortInfo("b", vendor_id="1A86"))
    assert is_reader_like(PortInfo("c", vendor_id="0403"))
    assert not is_reader_like(PortInfo("d", vendor_id="8086", manufacturer="Intel"))
    ps = [PortInfo("/dev/ttyS0"), PortInfo("/dev/ttyUSB0", vendor_id="1a86")]
    assert detect_candidate(ps).path == "/dev/ttyUSB0"


def test_list_ports_maps_pyserial_entries(monkeypatch):
    fake = SimpleNamespace(
        comports=lambda: [
            SimpleNamespace(device="/dev/ttyACM0", manufacturer="Arduino (www.arduino.cc)", vid=0x2341,
                            pid=0x0043, serial_number="123", description="Arduino Uno"),
            SimpleNamespace(device="/dev/ttyS0", manufacturer=None, vid=None, pid=None,
                            serial_number=None, description="n/a"),
        ]
    )
    monkeypatch.setattr(ports_mod, "list_ports_mod", fake)
    found = ports_mod.list_ports()
    assert [p.path for p in found] == ["/dev/ttyACM0", "/dev/ttyS0"]
    assert found[0].vendor_id == "2341"
    assert found[0].product_id == "0043"
    assert found[1].vendor_id is None
    assert found[0].to_dict()["description"] == "Arduino Uno"


def test_list_ports_failure_returns_empty(monkeypatch, logger):
    def boom():
        raise OSError("no sysfs")

    monkeypatch.setattr(ports_mod, "list_ports_mod", SimpleNamespace(comports=boom))
    assert ports_mod.list_ports(logger) == []
    assert logger.events[-1][0] == "port_list_error"
