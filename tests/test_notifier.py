from rfidbridge import notify
from rfidbridge.notify import Notifier

from conftest import CapturingLogger


def test_disabled_without_credentials():
    n = Notifier(True, None, "user")
    assert n.enabled is False
    assert n.send("k", "t", "m") is False


def test_send_never_raises(monkeypatch):
    def boom(*a, **k):
        raise notify.requests.ConnectionError("network down")

    monkeypatch.setattr(notify.requests, "post", boom)
    logger = CapturingLogger()
    n = Notifier(True, "tok", "user", logger=logger)
    n._send_sync("title", "message", 0)
    assert logger.names() == ["notify_error"]


def test_http_error_is_logged(monkeypatch):
    class Resp:
        def raise_for_status(self):
            raise notify.requests.HTTPError("400 Client Error")

    posted = []

    def fake_post(url, data=None, timeout=None):
        posted.append((url, data, timeout))
        return Resp()

    monkeypatch.setattr(notify.requests, "post", fake_post)
    logger = CapturingLogger()
    Notifier(True, "tok", "user", timeout_s=2.0, logger=logger)._send_sync("t", "m", 1)
    url, data, timeout = posted[0]
    assert url == notify.PUSHOVER_URL
    assert data["priority"] == 1
    assert timeout == 2.0
    assert logger.names() == ["notify_error"]


def test_dedup_until_cleared(monkeypatch):
    sent = []
    monkeypatch.setattr(Notifier, "_send_sync", lambda self, title, message, priority: sent.append(title))
    n = Notifier(True, "tok", "user")
    assert n.send("reader", "a", "m") is True
    assert n.send("reader", "b", "m") is False
    n.clear("reader")
    assert n.send("reader", "c", "m") is True
