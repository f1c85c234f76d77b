"""Unicode and email header decoding utilities."""

import re
from email.header import decode_header
from typing import Optional

_FOLDING_WHITESPACE = re.compile(r"\r?\n[ \t]+")


def unfold_header(header_value: Optional[str]) -> str:
    """
    Join a folded header value back onto one line (RFC 5322 section 2.2.3).

    Examples:
        >>> unfold_header("Quarterly\\r\\n report")
        'Quarterly report'
    """
    if not header_value:
        return ""
    return _FOLDING_WHITESPACE.sub(" ", str(header_value)).strip()


def decode_email_header(header_value: Optional[str]) -> str:
    """
    Decode an RFC 2047 encoded-word header to a Unicode string.

    Args:
        header_value: Raw header value (may be encoded or folded)

    Returns:
        Decoded Unicode string, "" for a missing header

    Examples:
        >>> decode_email_header("=?UTF-8?B?5Lit5paH?=")
        '中文'
    """
    header_value = unfold_header(header_value)
    if not header_value:
        return ""

    decoded_parts = []
    for content, encoding in decode_header(header_value):
        if isinstance(content, bytes):
            try:
                decoded_parts.append(content.decode(encoding or "ascii"))
            except (UnicodeDecodeError, LookupError):
                # Unknown or lying charset
                decoded_parts.append(content.decode("utf-8", errors="replace"))
        else:
            decoded_parts.append(content)

    return "".join(decoded_parts)


def truncate_subject(subject: Optional[str], max_length: int = 80) -> str:
    """
    Shorten a subject line for log output, marking the cut with '...'.

    Examples:
        >>> truncate_subject("Short subject")
        'Short subject'
    """
    if not subject:
        return ""

    if len(subject) <= max_length:
        return subject

    return subject[: max_length - 3] + "..."
