import sys
from pathlib import Path

import pytest

# Allow running the suite from a checkout without installing the package.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rfidbridge.errors import NotOpen, PortUnavailable


class CapturingLogger:
    """Minimal logger that matches the bridge's .emit(event, **fields) contract."""
    def __init__(self):
        self.events = []
        self.verbose = False

    def emit(self, event: str, **fields):
        self.events.append((event, fields))

    def debug(self, event: str, **fields):
        if self.verbose:
            self.events.append((event, fields))

    def names(self):
        return [e for e, _ in self.events]


class FakeTransport:
    """Transport double driven by the test through the same sink contract."""
    kind = "fake"

    def __init__(self, sink, fail=False):
        self.sink = sink
        self.fail = fail
        self.writes = []
        self.is_open = False
        self.closed = 0
        self.port = None

    def open(self, port, baud_rate):
        if self.fail:
            raise PortUnavailable(port, "device busy")
        self.is_open = True
        self.port = port
        self.sink("opened", port)

    def write_line(self, line):
        if not self.is_open:
            raise NotOpen("closed")
        self.writes.append(line)

    def close(self):
        self.closed += 1
        self.is_open = False

    def line(self, text):
        self.sink("line", text)

    def error(self, exc):
        self.sink("error", exc)


class TransportFactory:
    """Creates FakeTransports; set `.fail = True` to make the next opens fail."""
    def __init__(self):
        self.created = []
        self.fail = False

    def __call__(self, sink):
        t = FakeTransport(sink, fail=self.fail)
        self.created.append(t)
        return t

    @property
    def last(self):
        return self.created[-1]


class FakeTimer:
    """threading.Timer stand-in; tests call fire() instead of waiting."""
    def __init__(self, registry, delay, fn):
        self.registry = registry
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True
        self.registry.append(self)

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn()


class DummyNotifier:
    def __init__(self):
        self.sent = []
        self.cleared = []

    def send(self, key, title, message, priority=0):
        self.sent.append((key, title, message, priority))
        return True

    def clear(self, key):
        self.cleared.append(key)


@pytest.fixture
def logger():
    return CapturingLogger()


@pytest.fixture
def factory():
    return TransportFactory()


@pytest.fixture
def timers():
    return []


@pytest.fixture
def make_bridge(logger, factory, timers):
    """Build an RfidBridge wired to fake transport, timers and port listing."""
    from rfidbridge.bridge import RfidBridge
    from rfidbridge.config import BridgeConfig

    def _make(ports=None, notifier=None, use_factory=True, **cfg):
        cfg.setdefault("breadcrumb_interval_s", 0.0)
        config = BridgeConfig(**cfg)
        return RfidBridge(
            config,
            logger,
            transport_factory=factory if use_factory else None,
            port_lister=lambda: list(ports or []),
            timer_factory=lambda delay, fn: FakeTimer(timers, delay, fn),
            notifier=notifier,
        )

    return _make
