"""Path, filename and message identity normalization utilities."""

import hashlib
import re
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

MAX_IDENTITY_LENGTH = 100
HASH_SUFFIX_LENGTH = 8
CONTENT_HASH_LENGTH = 16

# Characters that are unsafe in a Maildir filename, plus whitespace
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f\s]')


def compute_hash(value: str) -> str:
    """
    Compute a SHA-256 hex digest of a string.

    Args:
        value: Input string (UTF-8 encoded before hashing)

    Returns:
        Lower-case hex digest
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def sanitize_for_filename(value: str, max_length: int) -> str:
    """
    Reduce a string to characters safe for a single path component.

    Letters, digits, '-', '_' and '.' are kept; any other run of characters
    collapses to a single '_'. Leading and trailing '_' are trimmed.

    Args:
        value: Raw string (folder name, host name, ...)
        max_length: Maximum length of the result in UTF-8 bytes

    Returns:
        Sanitized string, or "unknown" if nothing usable remains

    Examples:
        >>> sanitize_for_filename("INBOX/Sub Folder", 100)
        'INBOX_Sub_Folder'
    """
    chars: list[str] = []
    size = 0
    for char in value or "":
        if char.isalnum() or char in "-_.":
            piece = char
        elif chars and chars[-1] != "_":
            piece = "_"
        else:
            continue
        # Limit is in UTF-8 bytes
        size += len(piece.encode("utf-8"))
        if size > max_length:
            break
        chars.append(piece)

    result = "".join(chars).strip("_")
    # ".." and "." are not valid directory names
    if not result.strip("."):
        return "unknown"
    return result


def normalize_identity(raw_id: str, max_length: int = MAX_IDENTITY_LENGTH) -> str:
    """
    Normalize a message identifier into a stable, filesystem-safe key.

    Args:
        raw_id: Raw Message-ID (with or without angle brackets)
        max_length: Maximum UTF-8 byte length of the normalized identity

    Returns:
        Lower-case identity without brackets or unsafe characters

    Raises:
        ValueError: If raw_id is empty or nothing usable remains

    Examples:
        >>> normalize_identity("<ABC@Example.com>")
        'abc@example.com'
        >>> normalize_identity("<test/path:id@example.com>")
        'test_path_id@example.com'
    """
    if not raw_id or not raw_id.strip():
        raise ValueError("Message-ID is empty")

    clean_id = raw_id.strip()

    # Remove enclosing angle brackets
    if clean_id.startswith("<"):
        clean_id = clean_id[1:]
    if clean_id.endswith(">"):
        clean_id = clean_id[:-1]

    clean_id = _UNSAFE_CHARS.sub("_", clean_id).strip("_").lower()

    if not clean_id:
        raise ValueError(f"Message-ID has no usable characters: {raw_id!r}")

    if len(clean_id.encode("utf-8")) > max_length:
        suffix = compute_hash(clean_id)[:HASH_SUFFIX_LENGTH]
        prefix = truncate_utf8(clean_id, max_length - HASH_SUFFIX_LENGTH - 1)
        clean_id = f"{prefix}_{suffix}"

    return clean_id


def truncate_utf8(value: str, max_bytes: int) -> str:
    """
    Cut a string to at most max_bytes of UTF-8 without splitting a character.

    Examples:
        >>> truncate_utf8("中文abc", 4)
        '中'
    """
    return value.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")


def synthesize_identity(
    internal_date: Optional[datetime] = None, content_hash: Optional[str] = None
) -> str:
    """
    Build an identifier for a message that has no usable Message-ID.

    With a content hash the result is stable for the same message, so a
    refetch after recovery or an epoch reset still deduplicates. Without one
    a random suffix keeps it unique.

    Args:
        internal_date: Server-side arrival date, if known
        content_hash: Hex digest of the raw message bytes

    Returns:
        Identifier of the form no-id-<epoch-microseconds>-<suffix>
    """
    moment = internal_date or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    micros = int(moment.timestamp() * 1_000_000)
    suffix = content_hash[:CONTENT_HASH_LENGTH] if content_hash else uuid4().hex
    return f"no-id-{micros}-{suffix}"


def identity_for(
    raw_id: Optional[str],
    internal_date: Optional[datetime] = None,
    content_hash: Optional[str] = None,
) -> str:
    """
    Normalize raw_id, or synthesize an identity when it is unusable.

    Args:
        raw_id: Raw Message-ID from the server or the message headers
        internal_date: Server-side arrival date, used for the fallback
        content_hash: Digest of the raw message, used for the fallback

    Returns:
        Normalized identity; distinct messages never share a fallback
    """
    try:
        return normalize_identity(raw_id or "")
    except ValueError:
        return normalize_identity(synthesize_identity(internal_date, content_hash))
