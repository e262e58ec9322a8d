"""
Bidirectional Email Channel (SMTP + IMAP).

============================================================
PURPOSE
============================================================
Email channel that also treats replies to its own
notifications as check-ins.

- Sends exactly like EmailChannel
- Polls the INBOX over IMAP/SSL for
  'RE: <subject_prefix> Notification'
- Replies at or before the watermark are dropped
- Marking remembers the newest consumed reply date, so a
  reply dated in the future is not found again after its
  check-in time was capped at now

============================================================
"""

from datetime import datetime
from email.parser import BytesHeaderParser
from email.utils import parsedate_to_datetime
from functools import partial
from typing import List, Optional
import asyncio
import imaplib
import logging

from lastsignal.channels.base import CheckinResponse, ReplyCapableChannel
from lastsignal.channels.email_channel import (
    DEFAULT_SUBJECT_PREFIX,
    DEFAULT_TIMEOUT_SECONDS,
    EmailChannel,
)
from lastsignal.core.clock import ensure_utc
from lastsignal.core.exceptions import ChannelAuthError, ChannelError


logger = logging.getLogger(__name__)

DEFAULT_IMAP_PORT = 993

# IMAP dates are always English, independent of the process locale.
_IMAP_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)

_HEADER_FETCH = "(BODY.PEEK[HEADER.FIELDS (DATE SUBJECT FROM)])"


# ============================================================
# HELPERS
# ============================================================

def default_imap_host(smtp_host: str) -> str:
    """smtp.example.com -> imap.example.com"""
    return smtp_host.replace("smtp", "imap")


def imap_date(moment: datetime) -> str:
    moment = ensure_utc(moment)
    return f"{moment.day:02d}-{_IMAP_MONTHS[moment.month - 1]}-{moment.year}"


def build_search_criteria(subject_prefix: str, since: Optional[datetime]) -> str:
    criteria = f'SUBJECT "RE: {subject_prefix} Notification"'
    if since is not None:
        criteria = f"SINCE {imap_date(since)} {criteria}"
    return criteria


def parse_reply_headers(
    raw_headers: bytes,
    since: Optional[datetime],
) -> Optional[CheckinResponse]:
    """
    Turn fetched Date/Subject/From headers into a check-in.

    Returns None for messages without a parseable date, or
    dated at or before the watermark.
    """
    headers = BytesHeaderParser().parsebytes(raw_headers)

    date_value = headers.get("Date")
    if not date_value:
        return None
    try:
        timestamp = ensure_utc(parsedate_to_datetime(str(date_value)))
    except (TypeError, ValueError):
        logger.debug(f"Skipping reply with unparseable date: {date_value!r}")
        return None

    if since is not None and timestamp <= ensure_utc(since):
        return None

    return CheckinResponse.found_at(
        timestamp=timestamp,
        subject=str(headers.get("Subject", "")),
        sender=str(headers.get("From", "Unknown")),
    )


# ============================================================
# CHANNEL
# ============================================================

class BidirectionalEmailChannel(EmailChannel, ReplyCapableChannel):
    """Email channel whose replies count as check-ins."""

    def __init__(
        self,
        to: str,
        smtp_host: str,
        smtp_port: int,
        username: str,
        password: str,
        from_address: Optional[str] = None,
        subject_prefix: str = DEFAULT_SUBJECT_PREFIX,
        imap_host: Optional[str] = None,
        imap_port: int = DEFAULT_IMAP_PORT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(
            to=to,
            smtp_host=smtp_host,
            smtp_port=smtp_port,
            username=username,
            password=password,
            from_address=from_address,
            subject_prefix=subject_prefix,
            timeout=timeout,
        )
        self._imap_host = imap_host or default_imap_host(smtp_host)
        self._imap_port = int(imap_port)
        self._consumed_until: Optional[datetime] = None

    @property
    def name(self) -> str:
        return "bidirectional_email"

    @property
    def imap_host(self) -> str:
        return self._imap_host

    @property
    def imap_port(self) -> int:
        return self._imap_port

    # --------------------------------------------------------
    # CHANNEL API
    # --------------------------------------------------------

    async def health_check(self) -> bool:
        if not await super().health_check():
            return False
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._imap_check_blocking)

    async def poll_for_replies(self, since: Optional[datetime]) -> List[CheckinResponse]:
        loop = asyncio.get_running_loop()
        responses = await loop.run_in_executor(None, partial(self._poll_blocking, since))
        if self._consumed_until is None:
            return responses
        return [r for r in responses if r.timestamp > self._consumed_until]

    async def mark_consumed_until(self, timestamp: datetime) -> None:
        # The mailbox is opened read-only; consumption is tracked locally.
        timestamp = ensure_utc(timestamp)
        if self._consumed_until is None or timestamp > self._consumed_until:
            self._consumed_until = timestamp

    # --------------------------------------------------------
    # BLOCKING IMAP
    # --------------------------------------------------------

    def _imap_login(self) -> imaplib.IMAP4_SSL:
        imap = imaplib.IMAP4_SSL(self._imap_host, self._imap_port, timeout=self._timeout)
        try:
            imap.login(self._username, self._password)
        except Exception:
            imap.shutdown()
            raise
        return imap

    def _imap_check_blocking(self) -> bool:
        try:
            imap = self._imap_login()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP health check failed: {e}")
            return False
        try:
            status, _ = imap.select("INBOX", readonly=True)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP health check failed: {e}")
            return False
        finally:
            self._logout(imap)

    def _poll_blocking(self, since: Optional[datetime]) -> List[CheckinResponse]:
        criteria = build_search_criteria(self._subject_prefix, since)
        logger.debug(f"Searching {self._imap_host} INBOX with: {criteria}")

        try:
            imap = self._imap_login()
        except imaplib.IMAP4.error as e:
            raise ChannelAuthError(
                f"IMAP login rejected: {e}", channel=self.name, operation="poll", cause=e
            ) from e
        except OSError as e:
            raise ChannelError(
                f"IMAP connection failed: {e}", channel=self.name, operation="poll", cause=e
            ) from e

        try:
            status, _ = imap.select("INBOX", readonly=True)
            if status != "OK":
                raise ChannelError("Failed to select INBOX", channel=self.name, operation="poll")

            status, data = imap.search(None, criteria)
            if status != "OK":
                raise ChannelError("IMAP search failed", channel=self.name, operation="poll")

            message_ids = data[0].split() if data and data[0] else []
            if not message_ids:
                logger.debug("No reply messages found")
                return []

            status, fetched = imap.fetch(b",".join(message_ids).decode(), _HEADER_FETCH)
            if status != "OK":
                raise ChannelError("IMAP fetch failed", channel=self.name, operation="poll")
        except (imaplib.IMAP4.error, OSError) as e:
            raise ChannelError(
                f"IMAP polling failed: {e}", channel=self.name, operation="poll", cause=e
            ) from e
        finally:
            self._logout(imap)

        responses = []
        for item in fetched:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            response = parse_reply_headers(item[1], since)
            if response is not None:
                responses.append(response)

        logger.debug(f"Found {len(responses)} email check-in replies")
        return responses

    @staticmethod
    def _logout(imap: imaplib.IMAP4_SSL) -> None:
        try:
            imap.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")


__all__ = [
    "DEFAULT_IMAP_PORT",
    "BidirectionalEmailChannel",
    "build_search_criteria",
    "default_imap_host",
    "parse_reply_headers",
]
