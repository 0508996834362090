import json

import pytest

from rfidbridge import cli
from rfidbridge.config import BridgeConfig, apply_env, config_from_toml, load_config, resolved_config_dict
from rfidbridge.constants import VERSION
from rfidbridge.doctor import build_arg_parser, config_from_args

ENV_VARS = ("ARDUINO_PORT", "ARDUINO_BAUD", "RFID_ENABLED", "RFID_TRANSPORT", "LOG_LEVEL", "LOG_TO_FILE",
            "RFIDBRIDGE_NOTIFY", "PUSHOVER_TOKEN", "PUSHOVER_USER")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    c = BridgeConfig()
    assert c.baud == 9600
    assert c.reconnect_delay_s == 3.0
    assert c.max_reconnect_attempts == 10
    assert c.heartbeat_interval_s == 5.0
    assert c.mock_mode is False


def test_toml_sections(tmp_path):
    p = tmp_path / "bridge.toml"
    p.write_text(
        '[serial]\nport = "/dev/ttyUSB1"\nbaud = 115200\n'
        '[reader]\nmax_reconnect_attempts = 4\nreconnect_delay = 1.5\npage_id = "reader"\n'
        '[simulator]\nmock_card_ids = ["A1", "B2"]\nmock_period = 2\n'
        '[logging]\njson = true\n',
        encoding="utf-8",
    )
    c = load_config(str(p), environ={})
    assert c.port == "/dev/ttyUSB1"
    assert c.baud == 115200
    assert c.max_reconnect_attempts == 4
    assert c.reconnect_delay_s == 1.5
    assert c.page_id == "reader"
    assert c.mock_card_ids == ("A1", "B2")
    assert c.json is True
    # Untouched sections keep defaults.
    assert c.heartbeat_interval_s == 5.0


def test_bad_section_type_falls_back():
    c = config_from_toml({"serial": "nope"})
    assert c.baud == 9600


def test_toml_string_booleans_are_parsed():
    c = config_from_toml({
        "reader": {"enabled": "false"},
        "logging": {"json": "yes", "verbose": "off"},
        "notify": {"enabled": 1},
    })
    assert c.enabled is False
    assert c.json is True
    assert c.verbose is False
    assert c.notify_enabled is True
    # Unrecognized strings keep the default.
    assert config_from_toml({"reader": {"enabled": "maybe"}}).enabled is True


def test_env_overlay():
    c = apply_env(BridgeConfig(), {
        "ARDUINO_PORT": "COM5",
        "ARDUINO_BAUD": "57600",
        "RFID_ENABLED": "false",
        "RFID_TRANSPORT": "Simulated",
        "LOG_LEVEL": "debug",
        "LOG_TO_FILE": "true",
    })
    assert c.port == "COM5"
    assert c.baud == 57600
    assert c.enabled is False
    assert c.transport == "simulated"
    assert c.verbose is True
    assert c.log_path


def test_cli_overrides_env_and_file(tmp_path):
    p = tmp_path / "bridge.toml"
    p.write_text('[serial]\nport = "/dev/ttyUSB1"\n[logging]\nverbose = true\n', encoding="utf-8")
    args = build_arg_parser().parse_args(["--config", str(p), "-p", "COM8", "--no-verbose", "--mock-card", "X1"])
    c = config_from_args(args, environ={"ARDUINO_PORT": "COM5"})
    assert c.port == "COM8"
    assert c.verbose is False
    assert c.mock_card_ids == ("X1",)
    # Flags that were not given keep the lower-precedence value.
    assert c.baud == 9600


def test_invalid_transport_rejected():
    args = build_arg_parser().parse_args([])
    with pytest.raises(ValueError):
        config_from_args(args, environ={"RFID_TRANSPORT": "bluetooth"})


def test_resolved_config_hides_credentials():
    d = resolved_config_dict(BridgeConfig(pushover_token="secret", pushover_user="u"))
    assert d["pushover_token"] == "***"
    assert d["pushover_user"] == "***"


def test_main_version(capsys):
    assert cli.main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == VERSION


def test_main_print_config(capsys):
    assert cli.main(["--print-config", "--simulate", "--baud", "19200"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["transport"] == "simulated"
    assert out["baud"] == 19200


def test_main_disabled_reader_exits(monkeypatch, capsys):
    monkeypatch.setenv("RFID_ENABLED", "false")
    assert cli.main(["--no-banner", "--no-control-socket"]) == 0
    assert "disabled" in capsys.readouterr().out


def test_main_bad_config_file(tmp_path, capsys):
    p = tmp_path / "broken.toml"
    p.write_text("[serial\nport=", encoding="utf-8")
    assert cli.main(["--config", str(p), "--print-config"]) == 2
    assert "invalid configuration" in capsys.readouterr().err
