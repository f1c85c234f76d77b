"""Header-only parsing of archived message files."""

from datetime import datetime, timezone
from email.message import Message
from email.parser import BytesHeaderParser
from email.policy import compat32
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import BinaryIO, Optional

from mailvault.utils.unicode_utils import decode_email_header, unfold_header
from .base import EmailParseError, HeaderParseError, HeaderSummary

# Header blocks larger than this are truncated before parsing
MAX_HEADER_BYTES = 1024 * 1024


def read_header_block(fp: BinaryIO, limit: int = MAX_HEADER_BYTES) -> bytes:
    """
    Read bytes up to and including the blank line that ends the headers.

    The body is never read, so large attachments stay on disk.

    Args:
        fp: Binary file positioned at the start of the message
        limit: Maximum number of bytes to read

    Returns:
        Raw header block
    """
    lines = []
    total = 0
    while total < limit:
        line = fp.readline(limit - total)
        if not line:
            break
        lines.append(line)
        total += len(line)
        if line in (b"\r\n", b"\n"):
            break
    return b"".join(lines)


class HeaderParser:
    """Extract Message-ID and sidecar fields from a message's header block."""

    def parse_file(self, file_path: Path) -> HeaderSummary:
        """
        Parse the header block of a message file.

        Args:
            file_path: Path to an RFC 5322 message file

        Returns:
            HeaderSummary with the extracted fields

        Raises:
            FileNotFoundError: If the file doesn't exist
            HeaderParseError: If the header block cannot be read
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Email file not found: {file_path}")

        try:
            with open(file_path, "rb") as f:
                return self.parse_bytes(read_header_block(f))
        except EmailParseError:
            raise
        except OSError as e:
            raise HeaderParseError(f"Error reading headers of {file_path}: {e}") from e

    def parse_bytes(self, header_block: bytes) -> HeaderSummary:
        """
        Parse a raw header block.

        Raises:
            HeaderParseError: If the bytes cannot be parsed as headers
        """
        try:
            # compat32 keeps malformed headers as plain strings instead of raising
            message = BytesHeaderParser(policy=compat32).parsebytes(header_block)
        except Exception as e:
            raise HeaderParseError(f"Error parsing header block: {e}") from e

        return HeaderSummary(
            message_id=self.get_message_id(message),
            subject=self._text(message, "Subject"),
            sender=self._text(message, "From"),
            to=self._text(message, "To"),
            date=self._date(message),
            has_attachments=message.get_content_type() == "multipart/mixed",
        )

    def get_message_id(self, message: Message) -> Optional[str]:
        """
        Extract the raw Message-ID header value.

        Returns:
            Unfolded Message-ID string, or None if missing or blank
        """
        message_id = unfold_header(message.get("Message-ID"))
        return message_id or None

    def _text(self, message: Message, name: str) -> Optional[str]:
        value = message.get(name)
        if value is None:
            return None
        text = decode_email_header(str(value))
        # Undecodable 8-bit header bytes arrive as surrogate escapes
        text = text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
        return text or None

    def _date(self, message: Message) -> Optional[datetime]:
        date_header = unfold_header(message.get("Date"))
        if not date_header:
            return None

        try:
            sent_date = parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            return None

        if sent_date.tzinfo is None:
            # "-0000" means the zone is unknown; treat it as UTC
            sent_date = sent_date.replace(tzinfo=timezone.utc)
        return sent_date
