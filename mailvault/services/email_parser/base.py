"""Header-level message metadata and parsing errors."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class EmailParseError(Exception):
    """Base exception for email parsing errors."""

    pass


class HeaderParseError(EmailParseError):
    """Raised when a message's header block cannot be read."""

    pass


@dataclass
class HeaderSummary:
    """
    Fields recovered from a message's header block only.

    Attributes:
        message_id: Raw Message-ID header value, or None if missing
        subject: Decoded Subject header
        sender: Decoded From header
        to: Decoded To header
        date: Date header as an aware datetime, or None if missing/invalid
        has_attachments: Top-level Content-Type is multipart/mixed
    """

    message_id: Optional[str]
    subject: Optional[str]
    sender: Optional[str]
    to: Optional[str]
    date: Optional[datetime]
    has_attachments: bool = False
