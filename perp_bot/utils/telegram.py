"""Operator alerts over Telegram. Never log token or chat_id."""

from __future__ import annotations
import logging

import requests

logger = logging.getLogger("perp_bot.utils.telegram")


def send_telegram(text: str, bot_token: str = "", chat_id: str = "") -> bool:
    """Send a message. Returns True on success; unconfigured is a quiet no-op."""
    if not bot_token or not chat_id:
        logger.debug("Telegram not configured, skipping message (len=%d)", len(text))
        return False
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    try:
        r = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
    except requests.RequestException as e:
        logger.warning("Telegram error: %s", type(e).__name__)
        return False
    if r.status_code != 200:
        logger.warning("Telegram send failed: %s %s", r.status_code, r.text[:200])
        return False
    return True


class TelegramAlerter:
    """Formats one-line operator alerts: "[perp-bot SYMBOL] TITLE | k=v ..."."""

    def __init__(self, bot_token: str = "", chat_id: str = "", tag: str = "perp-bot"):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.tag = tag

    def __call__(self, title: str, **details) -> bool:
        parts = [f"[{self.tag}] {title}"]
        parts += [f"{k}={v}" for k, v in details.items() if v not in (None, "")]
        text = " | ".join(parts)
        logger.info("Alert: %s", text)
        return send_telegram(text, self.bot_token, self.chat_id)
