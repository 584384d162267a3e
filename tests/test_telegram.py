"""Operator alert formatting and delivery."""

import requests

from perp_bot.utils import telegram
from perp_bot.utils.telegram import TelegramAlerter, send_telegram


class Resp:
    status_code = 200
    text = "ok"


def test_unconfigured_is_a_no_op(monkeypatch):
    monkeypatch.setattr(telegram.requests, "post", lambda *a, **k: (_ for _ in ()).throw(AssertionError))
    assert send_telegram("hello") is False


def test_alert_format_and_send(monkeypatch):
    sent = []
    monkeypatch.setattr(telegram.requests, "post", lambda url, json, timeout: sent.append(json) or Resp())
    alert = TelegramAlerter("token", "chat", "perp-bot BTCUSDT")
    assert alert("Position closed", side="long", pnl="-1.0000", note="")
    assert sent[0]["text"] == "[perp-bot BTCUSDT] Position closed | side=long | pnl=-1.0000"
    assert sent[0]["chat_id"] == "chat"


def test_network_error_is_reported_not_raised(monkeypatch):
    def boom(*a, **k):
        raise requests.ConnectionError("down")
    monkeypatch.setattr(telegram.requests, "post", boom)
    assert send_telegram("x", "token", "chat") is False
