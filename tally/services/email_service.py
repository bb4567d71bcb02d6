"""
tally.services.email_service — Outbound Invitation Email
=========================================================

The email collaborator is fire-and-forget from the ledger's point of view:
``send(to, subject, text) -> EmailResult``.  A failed send is logged and
never rolls back or fails the state transition that triggered it.

Two senders ship with Tally:

- :class:`HttpEmailSender` — POSTs to a Resend-compatible HTTP API
  (``EMAIL_API_URL`` / ``EMAIL_API_KEY``).
- :class:`LoggingEmailSender` — logs the message instead of sending it
  (local development and tests).

The API wraps either one in :class:`BackgroundEmailSender` so the provider
call happens after the response is sent, not inside the request.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

import httpx

from tally.config import TallyConfig

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True, slots=True)
class EmailResult:
    ok: bool
    error: str | None = None


class EmailSender(Protocol):
    def send(self, to: str, subject: str, text: str) -> EmailResult: ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------
class HttpEmailSender:
    """Send through an HTTP email provider with a short timeout."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str = DEFAULT_EMAIL_API_URL,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._from = from_address
        self._api_url = api_url
        self._timeout = timeout

    @classmethod
    def from_env(cls, cfg: TallyConfig) -> HttpEmailSender | None:
        """Build from ``EMAIL_API_KEY`` / ``EMAIL_API_URL``; ``None`` if unset."""
        api_key = os.getenv("EMAIL_API_KEY", "").strip()
        if not api_key:
            return None
        api_url = os.getenv("EMAIL_API_URL", "").strip() or DEFAULT_EMAIL_API_URL
        return cls(api_key=api_key, from_address=cfg.email_from, api_url=api_url)

    def send(self, to: str, subject: str, text: str) -> EmailResult:
        transport = httpx.HTTPTransport(retries=1)
        try:
            with httpx.Client(timeout=self._timeout, transport=transport) as client:
                resp = client.post(
                    self._api_url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={"from": self._from, "to": [to], "subject": subject, "text": text},
                )
        except httpx.HTTPError as exc:
            return EmailResult(ok=False, error=f"transport: {exc.__class__.__name__}")

        if resp.status_code >= 400:
            return EmailResult(ok=False, error=f"HTTP {resp.status_code}: {resp.text[:200]}")
        return EmailResult(ok=True)


class LoggingEmailSender:
    """Records messages in memory and logs them; never fails."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, text: str) -> EmailResult:
        self.sent.append((to, subject, text))
        logger.info("Email (not sent) → %s: %s", to, subject)
        return EmailResult(ok=True)


class BackgroundEmailSender:
    """Queue sends on *schedule* instead of making them in the caller.

    *schedule* is called as ``schedule(fn, *args)``, which matches
    ``BackgroundTasks.add_task``; the queued call goes through
    :func:`send_best_effort` so a later failure is only logged.
    """

    def __init__(self, inner: EmailSender, schedule: Callable[..., Any]) -> None:
        self._inner = inner
        self._schedule = schedule

    def send(self, to: str, subject: str, text: str) -> EmailResult:
        self._schedule(send_best_effort, self._inner, to, subject, text)
        return EmailResult(ok=True)


def build_sender(cfg: TallyConfig) -> EmailSender:
    """HTTP sender when credentials are configured, logging sender otherwise."""
    sender = HttpEmailSender.from_env(cfg)
    if sender is None:
        logger.warning("EMAIL_API_KEY not set — invitation emails will only be logged")
        return LoggingEmailSender()
    return sender


# ---------------------------------------------------------------------------
# Message building
# ---------------------------------------------------------------------------
def invitation_email(
    cfg: TallyConfig,
    *,
    code: str,
    role: str,
    expires_at: datetime,
    message: str | None = None,
    team_name: str | None = None,
) -> tuple[str, str]:
    """Return ``(subject, text)`` for an invitation or team invitation."""
    if team_name:
        subject = f"You've been invited to join {team_name} on {cfg.app_name}"
        intro = f"You've been invited to join the team {team_name}."
    else:
        subject = f"You've been invited to {cfg.app_name}"
        what = "a trainer" if role == "TRAINER" else "a client"
        intro = f"You've been invited to join {cfg.app_name} as {what}."

    lines = [intro, ""]
    if message:
        lines += [f'"{message}"', ""]
    lines += [
        f"Accept your invitation: {cfg.invitation_url(code)}",
        "",
        f"This invitation expires on {expires_at.strftime('%Y-%m-%d %H:%M UTC')}.",
    ]
    return subject, "\n".join(lines)


def send_best_effort(sender: EmailSender, to: str, subject: str, text: str) -> bool:
    """Send and swallow every failure after logging it."""
    try:
        result = sender.send(to, subject, text)
    except Exception:
        logger.exception("Email send raised for %s", to)
        return False
    if not result.ok:
        logger.warning("Email send failed for %s: %s", to, result.error)
        return False
    return True
