"""IMAP implementation of the mailbox source, built on imapclient."""

import io
from datetime import date, timezone
from typing import BinaryIO, Callable, Optional

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from ...utils.path_utils import normalize_identity
from ...utils.unicode_utils import decode_email_header
from .mailbox_source import (
    MailboxAuthenticationError,
    MailboxSource,
    MailboxSourceError,
    MessageSummary,
)

log = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 180.0
FETCH_CHUNK_SIZE = 1024 * 1024
NOSELECT_FLAG = b"\\Noselect"


def _decode_bytes(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class _ChunkedBodyReader(io.RawIOBase):
    """Raw stream over a message body served in fixed-size partial fetches."""

    def __init__(self, fetch_chunk: Callable[[int], bytes], first: bytes, chunk_size: int):
        self._fetch_chunk = fetch_chunk
        self._chunk_size = chunk_size
        self._buffer = first
        self._offset = len(first)
        # A short chunk is the last one
        self._eof = len(first) < chunk_size

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if not self._buffer and not self._eof:
            chunk = self._fetch_chunk(self._offset)
            self._offset += len(chunk)
            self._eof = len(chunk) < self._chunk_size
            self._buffer = chunk

        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


class ImapMailboxSource(MailboxSource):
    """
    Read-only IMAP access.

    Folders are always selected read-only and bodies are fetched with partial
    BODY.PEEK[] requests, so archiving never changes the \\Seen flag and a
    large message is never held in memory whole. UIDs are the cursors and
    UIDVALIDITY is the cursor epoch.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 993,
        use_ssl: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        fetch_chunk_size: int = FETCH_CHUNK_SIZE,
    ):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.fetch_chunk_size = fetch_chunk_size

        self._client: Optional[IMAPClient] = None
        self._selected: Optional[str] = None

    def connect(self) -> None:
        """
        Raises:
            MailboxAuthenticationError: If the server rejects the login
            MailboxSourceError: On network or protocol failure
        """
        try:
            client = IMAPClient(self.host, port=self.port, ssl=self.use_ssl, timeout=self.timeout)
        except (OSError, IMAPClientError) as e:
            raise MailboxSourceError(f"Cannot connect to {self.host}:{self.port}: {e}") from e

        # Keep INTERNALDATE timezone-aware
        client.normalise_times = False

        try:
            client.login(self.username, self.password)
        except LoginError as e:
            self._safe_shutdown(client)
            raise MailboxAuthenticationError(f"Login failed for {self.username}: {e}") from e
        except (OSError, IMAPClientError) as e:
            self._safe_shutdown(client)
            raise MailboxSourceError(f"Login to {self.host} failed: {e}") from e

        self._client = client
        self._selected = None
        log.info("imap_connected", host=self.host, port=self.port, username=self.username)

    def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        self._selected = None
        try:
            client.logout()
        except (OSError, IMAPClientError) as e:
            log.debug("imap_logout_failed", error=str(e))
            self._safe_shutdown(client)

    def list_folders(self) -> list[str]:
        client = self._require_client()
        try:
            entries = client.list_folders()
        except (OSError, IMAPClientError) as e:
            raise MailboxSourceError(f"LIST failed: {e}") from e

        folders = []
        for flags, _delimiter, name in entries:
            if any(flag.lower() == NOSELECT_FLAG.lower() for flag in flags):
                continue
            folders.append(_decode_bytes(name))
        return folders

    def get_cursor_epoch(self, folder: str) -> int:
        info = self._select(folder, force=True)
        return int(info[b"UIDVALIDITY"])

    def get_folder_cursor_range(
        self,
        folder: str,
        since_cursor: int,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> list[int]:
        client = self._require_client()
        self._select(folder, force=True)

        criteria: list = ["UID", f"{since_cursor + 1}:*"]
        if since is not None:
            criteria += ["SINCE", since]
        if before is not None:
            criteria += ["BEFORE", before]

        try:
            uids = client.search(criteria)
        except (OSError, IMAPClientError) as e:
            raise MailboxSourceError(f"SEARCH failed in {folder}: {e}") from e

        # "n:*" always matches the highest UID, even when it is below n
        return sorted(uid for uid in uids if uid > since_cursor)

    def fetch_summaries(self, folder: str, cursors: list[int]) -> list[MessageSummary]:
        if not cursors:
            return []

        client = self._require_client()
        self._select(folder)
        try:
            response = client.fetch(cursors, ["ENVELOPE", "INTERNALDATE"])
        except (OSError, IMAPClientError) as e:
            raise MailboxSourceError(f"FETCH ENVELOPE failed in {folder}: {e}") from e

        summaries = []
        for uid in sorted(response):
            data = response[uid]
            envelope = data.get(b"ENVELOPE")
            internal_date = data.get(b"INTERNALDATE")
            if internal_date is not None and internal_date.tzinfo is None:
                internal_date = internal_date.replace(tzinfo=timezone.utc)

            summaries.append(
                MessageSummary(
                    cursor=uid,
                    identity=self._identity(envelope),
                    internal_date=internal_date,
                    subject=decode_email_header(_decode_bytes(getattr(envelope, "subject", None))),
                )
            )
        return summaries

    def open_message_stream(self, folder: str, cursor: int) -> BinaryIO:
        """
        Stream a message body in partial fetches of fetch_chunk_size bytes.

        The first chunk is fetched here so a vanished message or a dead
        connection fails inside the caller's retry. Later chunks are fetched
        as the stream is read.

        Raises:
            MailboxSourceError: If the message is gone or the fetch fails
        """
        first = self._fetch_body_chunk(folder, cursor, 0)
        if first is None:
            raise MailboxSourceError(f"Message UID {cursor} vanished from {folder}")

        def fetch_next(offset: int) -> bytes:
            chunk = self._fetch_body_chunk(folder, cursor, offset)
            if chunk is None:
                raise MailboxSourceError(f"Message UID {cursor} vanished from {folder} while reading")
            return chunk

        reader = _ChunkedBodyReader(fetch_next, first, self.fetch_chunk_size)
        return io.BufferedReader(reader, buffer_size=self.fetch_chunk_size)

    def _fetch_body_chunk(self, folder: str, cursor: int, offset: int) -> Optional[bytes]:
        """Return body bytes from offset, b"" past the end, or None if the UID is gone."""
        client = self._require_client()
        self._select(folder)
        try:
            response = client.fetch([cursor], [f"BODY.PEEK[]<{offset}.{self.fetch_chunk_size}>"])
        except (OSError, IMAPClientError) as e:
            raise MailboxSourceError(f"FETCH BODY failed for UID {cursor} in {folder}: {e}") from e

        data = response.get(cursor)
        if not data:
            return None
        # The server answers BODY[]<offset>
        for key, value in data.items():
            if isinstance(key, bytes) and key.startswith(b"BODY[]"):
                return value or b""
        return None

    def _identity(self, envelope) -> Optional[str]:
        raw = _decode_bytes(getattr(envelope, "message_id", None))
        if not raw or not raw.strip():
            return None
        try:
            return normalize_identity(raw)
        except ValueError:
            return None

    def _select(self, folder: str, force: bool = False) -> Optional[dict]:
        client = self._require_client()
        if not force and self._selected == folder:
            return None
        try:
            info = client.select_folder(folder, readonly=True)
        except (OSError, IMAPClientError) as e:
            raise MailboxSourceError(f"SELECT {folder} failed: {e}") from e
        self._selected = folder
        return info

    def _require_client(self) -> IMAPClient:
        if self._client is None:
            raise MailboxSourceError("Not connected")
        return self._client

    @staticmethod
    def _safe_shutdown(client: IMAPClient) -> None:
        try:
            client.shutdown()
        except OSError as e:
            log.debug("imap_shutdown_failed", error=str(e))
