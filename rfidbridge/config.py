from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Mapping, Optional, Tuple

try:
    import tomllib  # py3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

from .constants import DEFAULT_BAUD, DEFAULT_CONTROL_SOCKET

TRANSPORT_SERIAL = "serial"
TRANSPORT_SIMULATED = "simulated"
TRANSPORTS = (TRANSPORT_SERIAL, TRANSPORT_SIMULATED)

DEFAULT_LOG_PATH = "./logs/rfid-bridge.log"


@dataclass
class BridgeConfig:
    # serial
    port: Optional[str] = None
    baud: int = DEFAULT_BAUD
    read_timeout_s: float = 0.25
    transport: str = TRANSPORT_SERIAL

    # reader
    enabled: bool = True
    page_id: Optional[str] = None
    heartbeat_interval_s: float = 5.0
    heartbeat_timeout_factor: float = 3.0
    reconnect_delay_s: float = 3.0
    max_reconnect_attempts: int = 10
    status_timeout_s: float = 1.0

    # simulator
    mock_card_ids: Tuple[str, ...] = ()
    mock_period_s: float = 0.0

    # logging
    verbose: bool = False
    json: bool = False
    no_banner: bool = False
    log_path: Optional[str] = None
    breadcrumb_interval_s: float = 30.0

    # control
    control_socket: Optional[str] = DEFAULT_CONTROL_SOCKET

    # notify
    notify_enabled: bool = False
    pushover_token: Optional[str] = field(default=None, repr=False)
    pushover_user: Optional[str] = field(default=None, repr=False)

    @property
    def mock_mode(self) -> bool:
        return self.transport == TRANSPORT_SIMULATED

    def validate(self):
        if self.transport not in TRANSPORTS:
            raise ValueError(f"transport must be one of {', '.join(TRANSPORTS)} (got {self.transport!r})")
        if self.baud <= 0:
            raise ValueError("baud must be positive")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if self.reconnect_delay_s < 0:
            raise ValueError("reconnect_delay_s must be >= 0")
        return self


def _as_bool(val, default: bool = False) -> bool:
    """Interpret a TOML or environment value as a boolean (unknown strings keep `default`)."""
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    if isinstance(val, (int, float)):
        return bool(val)
    val = str(val).strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


def get_bool_env(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get(name), default)


def load_toml_config(path: str) -> dict:
    """Load TOML configuration from path."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _get_cfg(cfg: dict, section: str, key: str, default=None):
    sec = cfg.get(section, {})
    if not isinstance(sec, dict):
        return default
    return sec.get(key, default)


def config_from_toml(cfg: dict, base: Optional[BridgeConfig] = None) -> BridgeConfig:
    """Map TOML sections onto a BridgeConfig (missing keys keep `base` values)."""
    c = base or BridgeConfig()
    ids = _get_cfg(cfg, "simulator", "mock_card_ids", c.mock_card_ids) or ()
    return BridgeConfig(
        port=_get_cfg(cfg, "serial", "port", c.port),
        baud=int(_get_cfg(cfg, "serial", "baud", c.baud)),
        read_timeout_s=float(_get_cfg(cfg, "serial", "read_timeout", c.read_timeout_s)),
        transport=str(_get_cfg(cfg, "serial", "transport", c.transport)),
        enabled=_as_bool(_get_cfg(cfg, "reader", "enabled", c.enabled), c.enabled),
        page_id=_get_cfg(cfg, "reader", "page_id", c.page_id),
        heartbeat_interval_s=float(_get_cfg(cfg, "reader", "heartbeat_interval", c.heartbeat_interval_s)),
        heartbeat_timeout_factor=float(_get_cfg(cfg, "reader", "heartbeat_timeout_factor", c.heartbeat_timeout_factor)),
        reconnect_delay_s=float(_get_cfg(cfg, "reader", "reconnect_delay", c.reconnect_delay_s)),
        max_reconnect_attempts=int(_get_cfg(cfg, "reader", "max_reconnect_attempts", c.max_reconnect_attempts)),
        status_timeout_s=float(_get_cfg(cfg, "reader", "status_timeout", c.status_timeout_s)),
        mock_card_ids=tuple(str(x) for x in ids),
        mock_period_s=float(_get_cfg(cfg, "simulator", "mock_period", c.mock_period_s)),
        verbose=_as_bool(_get_cfg(cfg, "logging", "verbose", c.verbose), c.verbose),
        json=_as_bool(_get_cfg(cfg, "logging", "json", c.json), c.json),
        no_banner=_as_bool(_get_cfg(cfg, "logging", "no_banner", c.no_banner), c.no_banner),
        log_path=_get_cfg(cfg, "logging", "log_path", c.log_path),
        breadcrumb_interval_s=float(_get_cfg(cfg, "logging", "breadcrumb_interval", c.breadcrumb_interval_s)),
        control_socket=_get_cfg(cfg, "control", "socket", c.control_socket),
        notify_enabled=_as_bool(_get_cfg(cfg, "notify", "enabled", c.notify_enabled), c.notify_enabled),
        pushover_token=_get_cfg(cfg, "notify", "pushover_token", c.pushover_token),
        pushover_user=_get_cfg(cfg, "notify", "pushover_user", c.pushover_user),
    )


def apply_env(c: BridgeConfig, environ: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """Overlay environment variables on a config (in place) and return it."""
    env = os.environ if environ is None else environ
    if env.get("ARDUINO_PORT"):
        c.port = env["ARDUINO_PORT"]
    if env.get("ARDUINO_BAUD"):
        c.baud = int(env["ARDUINO_BAUD"])
    if env.get("RFID_TRANSPORT"):
        c.transport = env["RFID_TRANSPORT"].strip().lower()
    c.enabled = get_bool_env("RFID_ENABLED", c.enabled, env)
    level = (env.get("LOG_LEVEL") or "").strip().lower()
    if level == "debug":
        c.verbose = True
    elif level:
        c.verbose = False
    if get_bool_env("LOG_TO_FILE", False, env) and not c.log_path:
        c.log_path = DEFAULT_LOG_PATH
    c.notify_enabled = get_bool_env("RFIDBRIDGE_NOTIFY", c.notify_enabled, env)
    c.pushover_token = env.get("PUSHOVER_TOKEN", c.pushover_token)
    c.pushover_user = env.get("PUSHOVER_USER", c.pushover_user)
    return c


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """Defaults, then the TOML file (if any), then environment."""
    c = BridgeConfig()
    if path:
        c = config_from_toml(load_toml_config(path), c)
    return apply_env(c, environ)


def resolved_config_dict(c: BridgeConfig) -> dict:
    d = asdict(c)
    # Never print credentials.
    for key in ("pushover_token", "pushover_user"):
        if d.get(key):
            d[key] = "***"
    d["mock_card_ids"] = list(c.mock_card_ids)
    return d


CONFIG_FIELDS = tuple(f.name for f in fields(BridgeConfig))
