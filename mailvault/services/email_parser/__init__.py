"""Email parsing services."""

from .base import EmailParseError, HeaderParseError, HeaderSummary
from .header_parser import HeaderParser, read_header_block

__all__ = [
    "EmailParseError",
    "HeaderParseError",
    "HeaderSummary",
    "HeaderParser",
    "read_header_block",
]
