"""
# OTP Fetcher for Axiom Trade Authentication

This module retrieves OTP (One-Time Password) codes for Axiom Trade login
from an IMAP mailbox. The mailbox is opened read-only: messages are read
with `BODY.PEEK[]`, so no flag (not even `\\Seen`) is ever changed.

## Key Features:
- **IMAP over TLS**: Connects to inbox.lv (or any IMAP server) on port 993
- **Automatic OTP Extraction**: Subject first, then body patterns in order
- **Time-based Filtering**: Only messages inside a lookback window count
- **Async Polling**: `wait_for_otp` polls in a worker thread until a timeout

## Distinct failure modes:
- `EmailAuthenticationError`: the IMAP server rejected the credentials
- `EmailConnectionError`: the server could not be reached or the session broke
- `None`: the mailbox was read fine but holds no matching email

## Usage:
```python
from axiom_session.email.otp_fetcher import OtpFetcher, from_env

fetcher = from_env()

# Single poll (blocking)
otp = fetcher.fetch_otp_recent(minutes_ago=3)

# Poll until a code arrives or the timeout elapses
otp = await fetcher.wait_for_otp(timeout_seconds=120, poll_interval_seconds=5)
```
"""

import asyncio
import email
import logging
import os
import re
import ssl
from datetime import datetime, timedelta
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parsedate_to_datetime
from typing import List, Optional

# imapclient: Modern, easy-to-use IMAP client library
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from shared_lib.utils.date import ensure_utc, utc_now

from axiom_session.exceptions import EmailAuthenticationError, EmailConnectionError


logger = logging.getLogger(__name__)

# IMAP server configuration for inbox.lv
IMAP_DOMAIN = "mail.inbox.lv"
IMAP_PORT = 993
IMAP_TIMEOUT_SECONDS = 30

OTP_EMAIL_SUBJECT = "Your Axiom security code"
DEFAULT_LOOKBACK_MINUTES = 3
DEFAULT_MAX_MESSAGES = 5

SUBJECT_PATTERN = re.compile(r"Your Axiom security code is[:\s]+(\d{6})", re.IGNORECASE)

# Ordered by specificity
BODY_PATTERNS: List[re.Pattern] = [
    re.compile(r"Your Axiom security code is[:\s]+(\d{6})", re.IGNORECASE),
    re.compile(r"Your security code is[:\s]+(\d{6})", re.IGNORECASE),
    re.compile(r"security code[:\s]+(\d{6})", re.IGNORECASE),
    re.compile(r"<span[^>]*>(\d{6})</span>", re.IGNORECASE),
    re.compile(r"<b>(\d{6})</b>", re.IGNORECASE),
    re.compile(r"<strong>(\d{6})</strong>", re.IGNORECASE),
]
FALLBACK_PATTERN = re.compile(r"\b(\d{6})\b")


class OtpFetcher:
    """
    # OTP Fetcher for Email-Based Authentication

    Connects to an IMAP server and extracts the latest Axiom security code.

    ## Design Decisions:
    - A fresh connection per poll avoids stale IMAP sessions
    - The folder is selected read-only and bodies are fetched with PEEK
    - Recency comes from the `Date` header, since IMAP `SINCE` only has
      day granularity
    - Subject is checked before the body since it is the cheapest match

    ## Example:
    ```python
    fetcher = OtpFetcher("user@inbox.lv", "password")
    otp = fetcher.fetch_otp_recent()
    ```
    """

    def __init__(
        self,
        email_address: str,
        password: str,
        host: str = IMAP_DOMAIN,
        port: int = IMAP_PORT,
        timeout: float = IMAP_TIMEOUT_SECONDS,
    ) -> None:
        """
        ## Args:
        - `email_address` (str): Full email address (e.g., "user@inbox.lv")
        - `password` (str): Email account password or app-specific password
        - `host` (str): IMAP server host
        - `port` (int): IMAP server port (implicit TLS)
        - `timeout` (float): Socket timeout in seconds

        No connection is opened until the first poll.
        """
        self.email = email_address
        self.password = password
        self.host = host
        self.port = port
        self.timeout = timeout

    def _connect(self) -> IMAPClient:
        """
        Open a TLS connection and log in.

        ## Raises:
        - `EmailConnectionError`: Server unreachable, TLS or protocol failure
        - `EmailAuthenticationError`: Credentials rejected
        """
        ctx = ssl.create_default_context()
        try:
            client = IMAPClient(
                self.host,
                port=self.port,
                ssl=True,
                ssl_context=ctx,
                timeout=self.timeout,
            )
        except (OSError, IMAPClientError) as e:
            raise EmailConnectionError(
                f"Cannot connect to {self.host}:{self.port}: {e}"
            ) from e

        try:
            client.login(self.email, self.password)
        except LoginError as e:
            self._safe_logout(client)
            raise EmailAuthenticationError(
                f"IMAP login rejected for {self.email}: {e}"
            ) from e
        except (OSError, IMAPClientError) as e:
            self._safe_logout(client)
            raise EmailConnectionError(f"IMAP login failed: {e}") from e

        return client

    @staticmethod
    def _safe_logout(client: IMAPClient) -> None:
        try:
            client.logout()
        except (OSError, IMAPClientError) as e:
            logger.debug(f"IMAP logout failed: {e}")

    def fetch_otp_recent(
        self,
        minutes_ago: int = DEFAULT_LOOKBACK_MINUTES,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> Optional[str]:
        """
        Fetch the OTP from the most recent Axiom security email.

        ## Process:
        1. Connect and log in
        2. Select INBOX read-only
        3. Search security-code emails since the cutoff day
        4. Look at the `max_messages` newest ids, newest first
        5. Skip messages whose `Date` is older than `minutes_ago`
        6. Extract from the subject, then from the body

        ## Args:
        - `minutes_ago` (int): Lookback window in minutes (default: 3)
        - `max_messages` (int): How many recent messages to inspect (default: 5)

        ## Returns:
        - `str`: 6-digit OTP code if found
        - `None`: If no recent matching email exists

        ## Raises:
        - `EmailAuthenticationError` / `EmailConnectionError`
        """
        cutoff = utc_now() - timedelta(minutes=minutes_ago)
        client = self._connect()

        try:
            client.select_folder("INBOX", readonly=True)

            # SINCE has day granularity in the server's own time zone, so look
            # one day further back; the Date header refines it below
            since = (cutoff - timedelta(days=1)).date()
            message_ids = client.search(["SUBJECT", OTP_EMAIL_SUBJECT, "SINCE", since])
            if not message_ids:
                logger.debug("No security code emails found")
                return None

            recent_ids = sorted(message_ids, reverse=True)[:max_messages]
            messages = client.fetch(recent_ids, ["BODY.PEEK[]"])

            for message_id in recent_ids:
                data = messages.get(message_id, {})
                raw = data.get(b"BODY[]")
                if not raw:
                    continue

                email_message = email.message_from_bytes(raw)
                received_at = self._get_message_date(email_message)
                if received_at is not None and received_at < cutoff:
                    continue

                otp = self._extract_otp_from_subject(self._get_subject(email_message))
                if otp is None:
                    otp = self._extract_otp_from_email_body(email_message)
                if otp:
                    logger.info(f"✅ Found OTP in message {message_id}")
                    return otp

            return None

        except (OSError, IMAPClientError) as e:
            raise EmailConnectionError(f"IMAP session failed: {e}") from e

        finally:
            self._safe_logout(client)

    @staticmethod
    def _get_subject(email_message: Message) -> str:
        subject = email_message.get("Subject", "")
        try:
            return str(make_header(decode_header(subject)))
        except (UnicodeDecodeError, LookupError, ValueError):
            return str(subject)

    @staticmethod
    def _get_message_date(email_message: Message) -> Optional[datetime]:
        value = email_message.get("Date")
        if not value:
            return None
        try:
            return ensure_utc(parsedate_to_datetime(value))
        except (TypeError, ValueError):
            return None

    def _extract_otp_from_subject(self, subject: str) -> Optional[str]:
        """
        Extract the code from a subject like "Your Axiom security code is 280296".
        """
        match = SUBJECT_PATTERN.search(subject)
        return match.group(1) if match else None

    def _extract_otp_from_email_body(self, email_message: Message) -> Optional[str]:
        """
        Extract the code from plain text or HTML body content.

        ## Algorithm:
        1. Try `BODY_PATTERNS` in order (specific wording, then HTML markup)
        2. Fallback: the first standalone 6-digit number, only when the body
           mentions "security code" or "Your Axiom"
        """
        body_text = self._get_email_body(email_message)

        for pattern in BODY_PATTERNS:
            match = pattern.search(body_text)
            if match:
                return match.group(1)

        if "security code" in body_text.lower() or "Your Axiom" in body_text:
            match = FALLBACK_PATTERN.search(body_text)
            if match:
                return match.group(1)

        return None

    def _get_email_body(self, email_message: Message) -> str:
        """
        Concatenate the decoded text/plain and text/html parts of a message.
        """
        parts = email_message.walk() if email_message.is_multipart() else [email_message]
        body_text = ""

        for part in parts:
            if part.get_content_type() not in ("text/plain", "text/html"):
                continue
            payload = part.get_payload(decode=True)
            if payload and isinstance(payload, bytes):
                charset = part.get_content_charset() or "utf-8"
                try:
                    body_text += payload.decode(charset, errors="ignore")
                except LookupError:
                    body_text += payload.decode("utf-8", errors="ignore")

        return body_text

    async def wait_for_otp(
        self,
        timeout_seconds: float = 120,
        poll_interval_seconds: float = 5,
        minutes_ago: int = DEFAULT_LOOKBACK_MINUTES,
    ) -> Optional[str]:
        """
        Poll the mailbox until an OTP arrives or `timeout_seconds` elapses.

        Each poll runs in a worker thread, and the wait between polls is an
        `asyncio.sleep`, so the event loop is never blocked. A poll still
        running at the deadline is abandoned; its thread finishes on its own.

        ## Returns:
        - `str`: 6-digit OTP code when found
        - `None`: If the timeout elapsed without a matching email

        ## Raises:
        - `EmailAuthenticationError` / `EmailConnectionError`: immediately,
          polling again would not help
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        check_count = 0

        logger.info(f"Waiting up to {timeout_seconds}s for an OTP email...")

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            check_count += 1
            try:
                otp = await asyncio.wait_for(
                    asyncio.to_thread(self.fetch_otp_recent, minutes_ago), remaining
                )
            except asyncio.TimeoutError:
                logger.warning(f"Check #{check_count} still running at the deadline")
                break
            if otp:
                return otp

            remaining = max(deadline - loop.time(), 0)
            logger.debug(
                f"Check #{check_count}: no OTP yet, {remaining:.0f}s remaining"
            )
            await asyncio.sleep(min(poll_interval_seconds, remaining))

        logger.warning(f"❌ No OTP received within {timeout_seconds} seconds")
        return None


def from_env() -> Optional[OtpFetcher]:
    """
    # Create OTP Fetcher from Environment Variables

    ## Environment Variables:
    - `INBOX_LV_EMAIL`: Email address (e.g., "user@inbox.lv")
    - `INBOX_LV_PASSWORD`: Email password or app-specific password

    ## Returns:
    - `OtpFetcher`: If both variables are set
    - `None`: If either one is missing
    """
    email_address = os.environ.get("INBOX_LV_EMAIL")
    password = os.environ.get("INBOX_LV_PASSWORD")

    if email_address and password:
        return OtpFetcher(email_address, password)

    return None
