from __future__ import annotations

import asyncio
import logging
import smtplib
from collections import deque
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from trustgate.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessageOut:
  to: str
  subject: str
  body: str


class Mailer(Protocol):
  async def send(self, msg: EmailMessageOut) -> None: ...


class LocalMailer:
  """Keeps messages in memory; used when SMTP is not configured and in tests."""

  def __init__(self) -> None:
    self.outbox: deque[EmailMessageOut] = deque(maxlen=100)

  async def send(self, msg: EmailMessageOut) -> None:
    self.outbox.append(msg)
    logger.info("local mailer captured %r for %s", msg.subject, msg.to)


class SmtpMailer:
  def __init__(
    self,
    *,
    host: str,
    port: int = 587,
    username: str | None = None,
    password: str | None = None,
    from_addr: str,
    starttls: bool = True,
  ) -> None:
    self.host = host
    self.port = int(port)
    self.username = (username or "").strip()
    self.password = (password or "").strip()
    self.from_addr = from_addr
    self.starttls = starttls

  async def send(self, msg: EmailMessageOut) -> None:
    def _send_sync() -> None:
      m = EmailMessage()
      m["Subject"] = msg.subject
      m["From"] = self.from_addr
      m["To"] = msg.to
      m.set_content(msg.body)
      with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as s:
        s.ehlo()
        if self.starttls:
          s.starttls()
          s.ehlo()
        if self.username and self.password:
          s.login(self.username, self.password)
        s.send_message(m)

    await asyncio.to_thread(_send_sync)


def magic_link_message(*, to: str, url: str) -> EmailMessageOut:
  minutes = max(1, int(settings.magic_link_ttl_seconds) // 60)
  return EmailMessageOut(
    to=to,
    subject=f"Sign in to {settings.totp_issuer}",
    body=(
      "Use the link below to sign in.\n\n"
      f"{url}\n\n"
      f"The link expires in {minutes} minutes and can be used once. "
      "If you did not request it, you can ignore this email."
    ),
  )


_local_mailer = LocalMailer()


def mailer_from_settings() -> Mailer:
  host = (settings.smtp_host or "").strip()
  from_addr = (settings.smtp_from or "").strip()
  if host and from_addr:
    return SmtpMailer(
      host=host,
      port=settings.smtp_port,
      username=settings.smtp_username,
      password=settings.smtp_password,
      from_addr=from_addr,
      starttls=settings.smtp_starttls,
    )
  return _local_mailer
