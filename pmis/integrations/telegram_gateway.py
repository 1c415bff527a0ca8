"""
Telegram Bot API gateway.

All outbound calls to api.telegram.org go through this class.

  - One endpoint: POST {TELEGRAM_API_URL}/bot{token}/sendMessage
  - Timeout: DELIVERY_TIMEOUT_SECONDS per call; a timeout is a failed send
  - Never raises: callers check ``GatewayResult.ok``
  - No TELEGRAM_BOT_TOKEN configured -> log-only dev mode (ok=True)

Testability: pass a mock `session` to TelegramGateway() in tests instead
of letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 15


class GatewayResult:
    """Structured return value from TelegramGateway calls.

    Attributes:
        ok:           True if Telegram accepted the message.
        status_code:  HTTP status code (None if network-level failure).
        error:        Human-readable error message or None.
        duration_ms:  Round-trip latency in milliseconds.
    """

    def __init__(self, ok: bool, status_code: int | None, error: str | None,
                 duration_ms: int) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code} error={self.error!r}>"


def format_message(title: str, message: str, link: str | None = None) -> str:
    """Markdown text: bold title, blank line, body, optional link line."""
    text = f"*{title}*\n\n{message}"
    if link:
        text += f"\n\n[Open]({link})"
    return text


class TelegramGateway:
    """Telegram Bot API client.

    Instantiate once at module level (module-level singleton pattern).

    Usage:
        from pmis.integrations.telegram_gateway import telegram_gateway
        result = telegram_gateway.send_message("12345", "*Hi*")
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send_message(self, chat_id: str, text: str, *, timeout: float | None = None) -> GatewayResult:
        cfg = current_app.config
        token = cfg.get("TELEGRAM_BOT_TOKEN")
        if not token:
            logger.info("Telegram (dev mode): chat=%s text=%r", chat_id, text[:80],
                        extra={"channel": "telegram"})
            return GatewayResult(ok=True, status_code=None, error=None, duration_ms=0)

        url = f"{cfg.get('TELEGRAM_API_URL', 'https://api.telegram.org').rstrip('/')}/bot{token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }
        timeout = timeout or cfg.get("DELIVERY_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT)
        start = time.monotonic()
        try:
            resp = self.session.post(url, json=payload, timeout=timeout)
        except requests.Timeout:
            return self._failed(None, f"timeout after {timeout}s", start, chat_id)
        except requests.RequestException as exc:
            return self._failed(None, f"{type(exc).__name__}: {exc}", start, chat_id)

        if not resp.ok:
            return self._failed(resp.status_code, f"HTTP {resp.status_code}: {resp.text[:300]}",
                                start, chat_id)
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Telegram sent: chat=%s duration=%dms", chat_id, duration_ms,
                    extra={"channel": "telegram", "duration_ms": duration_ms})
        return GatewayResult(ok=True, status_code=resp.status_code, error=None,
                             duration_ms=duration_ms)

    @staticmethod
    def _failed(status_code, error, start, chat_id):
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning("Telegram failed: chat=%s error=%s", chat_id, error,
                       extra={"channel": "telegram", "duration_ms": duration_ms})
        return GatewayResult(ok=False, status_code=status_code, error=error,
                             duration_ms=duration_ms)


telegram_gateway = TelegramGateway()
