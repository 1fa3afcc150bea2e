"""Alerts — email to the site admin plus an optional chat webhook.

Fires on:
- Cache desync (data has products, storefront shows none)
- Hard failure (ok → empty)
- Recovery (normal, or immediately after a cache purge)
- Manual test alerts
- Heartbeat / stall (webhook only)

Both channels are best-effort: each failure is logged and swallowed, and one
channel failing never keeps the other from being tried.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections.abc import Callable
from email.message import EmailMessage
from email.utils import format_datetime, make_msgid
from enum import Enum

import httpx

from shopwatch.config import Settings, settings
from shopwatch.monitor.models import MonitorConfig, utc_now

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5.0
SMTP_TIMEOUT = 10.0


class AlertKind(str, Enum):
    FAILURE = "failure"
    DESYNC = "desync"
    RECOVERY = "recovery"
    IMMEDIATE_RECOVERY = "immediate_recovery"
    TEST = "test"
    STALL = "stall"


_EMOJI = {
    AlertKind.FAILURE: "⚠",
    AlertKind.DESYNC: "⚠",
    AlertKind.RECOVERY: "✅",
    AlertKind.IMMEDIATE_RECOVERY: "✅",
    AlertKind.TEST: "🧪",
    AlertKind.STALL: "🚨",
}


# ── Composition ──────────────────────────────────────────────────────────────


def compose(kind: AlertKind, site_url: str = "") -> tuple[str, str]:
    """Build the (subject, body) pair for an alert."""
    if kind == AlertKind.DESYNC:
        subject = f"{_EMOJI[kind]} Shop Cache Desync"
        body = "Shop page empty while products exist.\nCache flushed."
    elif kind == AlertKind.FAILURE:
        subject = f"{_EMOJI[kind]} Shop Products Missing"
        body = "Zero products detected.\nAuto-recovery started."
    elif kind == AlertKind.RECOVERY:
        subject = f"{_EMOJI[kind]} Shop Recovered"
        body = "Products are visible again."
    elif kind == AlertKind.IMMEDIATE_RECOVERY:
        subject = f"{_EMOJI[kind]} Immediate Recovery"
        body = "Products visible again after cache purge."
    elif kind == AlertKind.TEST:
        subject = "[TEST] Shop Monitor"
        body = "This is a test alert."
    else:
        raise ValueError(f"No email alert for kind: {kind}")

    if site_url and kind in (AlertKind.DESYNC, AlertKind.FAILURE):
        body += f"\n{site_url}"
    return subject, body


def compose_stall(threshold_minutes: int = 5) -> str:
    return f"{_EMOJI[AlertKind.STALL]} Shop Monitor Stalled\nNo checks in last {threshold_minutes} minutes."


# ── Channels ─────────────────────────────────────────────────────────────────


class EmailChannel:
    """Plain-text mail over SMTP."""

    def __init__(self, cfg: Settings | None = None) -> None:
        cfg = cfg or settings
        self.host = cfg.smtp_host
        self.port = cfg.smtp_port
        self.username = cfg.smtp_username
        self.password = cfg.smtp_password
        self.use_tls = cfg.smtp_use_tls
        self.sender = cfg.smtp_from

    def send(self, recipient: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["To"] = recipient
        msg["From"] = self.sender
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain="shopwatch.local")
        msg["Date"] = format_datetime(utc_now())
        msg.set_content(body, charset="utf-8")

        with smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT) as smtp:
            if self.use_tls:
                smtp.ehlo()
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)


class WebhookChannel:
    """POST a single text field to a Slack-compatible incoming webhook."""

    def __init__(self, timeout: float = WEBHOOK_TIMEOUT) -> None:
        self.timeout = timeout

    def post(self, url: str, text: str) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(url, json={"text": text})
        if resp.status_code >= 300:
            logger.warning("Webhook returned %d: %s", resp.status_code, resp.text[:200])


# ── Dispatcher ───────────────────────────────────────────────────────────────


class AlertDispatcher:
    """Fans alerts out to email and (if configured) the webhook."""

    def __init__(
        self,
        config: Callable[[], MonitorConfig],
        email: EmailChannel | None = None,
        webhook: WebhookChannel | None = None,
    ) -> None:
        self._config = config
        self.email = email or EmailChannel()
        self.webhook = webhook or WebhookChannel()

    def alert(self, kind: AlertKind, subject: str, body: str) -> None:
        cfg = self._config()
        logger.info("Dispatching %s alert: %s", AlertKind(kind).value, subject)
        self._send_email(cfg, subject, body)
        if cfg.webhook_url:
            self._send_webhook(cfg.webhook_url, f"{subject}\n\n{body}")

    def heartbeat(self, text: str) -> None:
        """Webhook-only notice; heartbeat mail would just be noise."""
        cfg = self._config()
        if not cfg.webhook_url:
            logger.warning("Stall detected but no webhook configured: %s", text.splitlines()[0])
            return
        self._send_webhook(cfg.webhook_url, text)

    def _send_email(self, cfg: MonitorConfig, subject: str, body: str) -> None:
        if not cfg.admin_email:
            logger.warning("No admin email configured — skipping email alert")
            return
        try:
            self.email.send(cfg.admin_email, subject, body)
        except Exception as exc:
            logger.warning("Email alert failed: %s: %s", type(exc).__name__, exc)

    def _send_webhook(self, url: str, text: str) -> None:
        try:
            self.webhook.post(url, text)
        except httpx.TimeoutException:
            logger.warning("Webhook alert timed out")
        except Exception as exc:
            logger.warning("Webhook alert failed: %s: %s", type(exc).__name__, exc)
