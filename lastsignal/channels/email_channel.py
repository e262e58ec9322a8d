"""
Email Channel (SMTP).

============================================================
PURPOSE
============================================================
Deliver plain-text notifications over SMTP with STARTTLS.

- smtplib is blocking; every call runs in the default
  executor so the event loop never stalls
- Each connection is bounded by a socket timeout
- Delivery problems come back as ChannelResult.failed

============================================================
"""

from email.message import EmailMessage
from functools import partial
from typing import Optional
import asyncio
import logging
import smtplib

from lastsignal.channels.base import Channel, ChannelResult


logger = logging.getLogger(__name__)

DEFAULT_SUBJECT_PREFIX = "LastSignal"
DEFAULT_TIMEOUT_SECONDS = 30.0


class EmailChannel(Channel):
    """
    Sends notifications by email.

    Subject is "<subject_prefix> Notification"; replies to it
    are what BidirectionalEmailChannel looks for.
    """

    def __init__(
        self,
        to: str,
        smtp_host: str,
        smtp_port: int,
        username: str,
        password: str,
        from_address: Optional[str] = None,
        subject_prefix: str = DEFAULT_SUBJECT_PREFIX,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._to = to
        self._smtp_host = smtp_host
        self._smtp_port = int(smtp_port)
        self._username = username
        self._password = password
        self._from = from_address or username
        self._subject_prefix = subject_prefix
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "email"

    @property
    def to(self) -> str:
        return self._to

    @property
    def subject(self) -> str:
        return f"{self._subject_prefix} Notification"

    # --------------------------------------------------------
    # CHANNEL API
    # --------------------------------------------------------

    async def send(self, message: str) -> ChannelResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._send_blocking, message))

    async def health_check(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._smtp_check_blocking)

    # --------------------------------------------------------
    # BLOCKING SMTP
    # --------------------------------------------------------

    def build_message(self, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = self.subject
        msg["From"] = self._from
        msg["To"] = self._to
        msg.set_content(body)
        return msg

    def _connect(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self._smtp_host, self._smtp_port, timeout=self._timeout)
        try:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(self._username, self._password)
        except Exception:
            server.close()
            raise
        return server

    def _send_blocking(self, body: str) -> ChannelResult:
        try:
            msg = self.build_message(body)
        except (ValueError, TypeError) as e:
            return ChannelResult.failed(f"Failed to build email message: {e}")

        try:
            with self._connect() as server:
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email delivery to {self._to} failed: {e}")
            return ChannelResult.failed(f"Failed to send email: {e}")

        logger.debug(f"Email delivered to {self._to}")
        return ChannelResult.success()

    def _smtp_check_blocking(self) -> bool:
        try:
            with self._connect() as server:
                code, _ = server.noop()
        except (smtplib.SMTPException, OSError) as e:
            logger.debug(f"Email health check failed: {e}")
            return False
        return code == 250


__all__ = [
    "DEFAULT_SUBJECT_PREFIX",
    "EmailChannel",
]
