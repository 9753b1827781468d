"""
auth/notify.py -- Outbound e-mail collaborator and message templates.

AuthService only knows the Notifier protocol: send(message) either returns or
raises. Two implementations ship here:

  LogNotifier     development default (no RESEND_API_KEY). Logs recipient and
                  subject only -- never the body, which carries the code.
  ResendNotifier  posts to the Resend HTTP e-mail API with requests. Any
                  transport error or non-2xx response raises, and AuthService
                  turns that into NotificationError.

Templates build the links the user clicks:
  {APP_ORIGIN}/confirm-account?code=<code>
  {APP_ORIGIN}/reset-password?code=<code>&exp=<expiry epoch ms>
The exp parameter is display-only; the server re-validates every code.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from urllib.parse import urlencode

import requests

logger = logging.getLogger("gatehouse.notify")

RESEND_API = "https://api.resend.com/emails"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str
    html: str


class Notifier(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class LogNotifier:
    def send(self, message: EmailMessage) -> None:
        logger.info("E-mail (not sent, log-only notifier) to=%s subject=%r", message.to, message.subject)


class ResendNotifier:
    """Deliver e-mail through the Resend REST API."""

    def __init__(self, api_key: str, sender: str, timeout: float = 10.0) -> None:
        self._sender = sender
        self._timeout = timeout
        # Module pattern: one pooled session per notifier; redirects are never
        # expected from this API.
        self._session = requests.Session()
        self._session.max_redirects = 0
        self._session.headers.update({"Authorization": f"Bearer {api_key}"})

    def send(self, message: EmailMessage) -> None:
        resp = self._session.post(
            RESEND_API,
            json={
                "from": self._sender,
                "to": [message.to],
                "subject": message.subject,
                "text": message.text,
                "html": message.html,
            },
            timeout=self._timeout,
        )
        resp.raise_for_status()
        logger.info("E-mail sent to=%s subject=%r", message.to, message.subject)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def verification_email(to: str, name: str, app_origin: str, code: str) -> EmailMessage:
    url = f"{app_origin}/confirm-account?{urlencode({'code': code})}"
    greeting = f"Hi {name}," if name else "Hi,"
    return EmailMessage(
        to=to,
        subject="Confirm your account",
        text=f"{greeting}\n\nConfirm your e-mail address by opening this link:\n{url}\n",
        html=(
            f"<p>{html.escape(greeting)}</p>"
            f'<p>Confirm your e-mail address: <a href="{html.escape(url)}">Verify e-mail</a></p>'
        ),
    )


def password_reset_email(to: str, name: str, app_origin: str, code: str, expires_at: datetime) -> EmailMessage:
    exp_ms = int(expires_at.timestamp() * 1000)
    url = f"{app_origin}/reset-password?{urlencode({'code': code, 'exp': exp_ms})}"
    greeting = f"Hi {name}," if name else "Hi,"
    return EmailMessage(
        to=to,
        subject="Reset your password",
        text=(
            f"{greeting}\n\nWe received a request to reset your password. "
            f"Open this link to choose a new one:\n{url}\n\n"
            "If you did not ask for this, you can ignore this e-mail.\n"
        ),
        html=(
            f"<p>{html.escape(greeting)}</p>"
            "<p>We received a request to reset your password.</p>"
            f'<p><a href="{html.escape(url)}">Reset password</a></p>'
            "<p>If you did not ask for this, you can ignore this e-mail.</p>"
        ),
    )
