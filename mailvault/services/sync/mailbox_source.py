"""Read-only access to a remote mailbox."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import BinaryIO, Optional


class MailboxSourceError(Exception):
    """Transient failure talking to the mailbox (network, timeout, server)."""
    pass


class MailboxAuthenticationError(Exception):
    """The server rejected the credentials. Never retried."""
    pass


class SyncCancelledError(Exception):
    """Raised when the cancellation event is set during a wait."""
    pass


@dataclass(frozen=True)
class MessageSummary:
    """
    Envelope data for one message, fetched without its body.

    Attributes:
        cursor: Monotonic per-folder cursor (IMAP UID)
        identity: Normalized identity, or None if the server had no Message-ID
        internal_date: Server-side arrival date
        subject: Decoded subject for logging
    """

    cursor: int
    identity: Optional[str]
    internal_date: Optional[datetime]
    subject: Optional[str] = None


class MailboxSource(ABC):
    """
    Abstract base class for mailbox backends.

    Cursors are positive integers that only grow within a folder for as long
    as the folder's cursor epoch stays the same.
    """

    @abstractmethod
    def connect(self) -> None:
        """Connect and authenticate."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def list_folders(self) -> list[str]:
        """Return every selectable folder name."""
        pass

    @abstractmethod
    def get_cursor_epoch(self, folder: str) -> int:
        """Return the folder's cursor validity token (IMAP UIDVALIDITY)."""
        pass

    @abstractmethod
    def get_folder_cursor_range(
        self,
        folder: str,
        since_cursor: int,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> list[int]:
        """
        Return cursors strictly greater than since_cursor, ascending.

        Args:
            folder: Folder name
            since_cursor: Last checkpointed cursor (0 for a full scan)
            since: Only messages on or after this date
            before: Only messages before this date
        """
        pass

    @abstractmethod
    def fetch_summaries(self, folder: str, cursors: list[int]) -> list[MessageSummary]:
        """Return summaries for the cursors that still exist."""
        pass

    @abstractmethod
    def open_message_stream(self, folder: str, cursor: int) -> BinaryIO:
        """Return a binary stream over the raw RFC 5322 message."""
        pass

    def __enter__(self) -> "MailboxSource":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
