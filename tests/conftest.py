"""Shared fixtures: an in-memory mailbox source and message builders."""

import io
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from mailvault.services.sync.mailbox_source import (
    MailboxSource,
    MailboxSourceError,
    MessageSummary,
)
from mailvault.storage.archive_writer import ArchiveWriter
from mailvault.storage.database import DedupIndex
from mailvault.telemetry.stats import SyncStats
from mailvault.utils.path_utils import normalize_identity


def make_message(
    message_id: Optional[str] = "<test@example.com>",
    subject: str = "Test Subject",
    sender: str = "John Doe <john@example.com>",
    to: str = "jane@example.com",
    date: str = "Mon, 13 Jan 2025 10:30:00 +0000",
    body: str = "Hello.\r\n",
    content_type: str = "text/plain; charset=utf-8",
) -> bytes:
    """Build a raw RFC 5322 message."""
    headers = []
    if message_id is not None:
        headers.append(f"Message-ID: {message_id}")
    headers += [
        f"From: {sender}",
        f"To: {to}",
        f"Subject: {subject}",
        f"Date: {date}",
        "MIME-Version: 1.0",
        f"Content-Type: {content_type}",
    ]
    return ("\r\n".join(headers) + "\r\n\r\n" + body).encode("utf-8")


class FakeMailboxSource(MailboxSource):
    """
    Mailbox held in memory.

    Messages are added per folder with explicit cursors. Cursors listed in
    ``failing`` raise MailboxSourceError when their body is opened.
    """

    def __init__(self, epoch: int = 1):
        self.default_epoch = epoch
        self.epochs: dict[str, int] = {}
        self.messages: dict[str, dict[int, tuple[bytes, Optional[str], datetime]]] = {}
        self.failing: set[tuple[str, int]] = set()
        self.opened: list[tuple[str, int]] = []
        self.on_open: Optional[Callable[[str, int], None]] = None
        self.connected = False

    def add(
        self,
        folder: str,
        cursor: int,
        raw: Optional[bytes] = None,
        message_id: Optional[str] = None,
        internal_date: Optional[datetime] = None,
    ) -> None:
        if raw is None:
            message_id = message_id or f"<msg{cursor}@{folder.lower()}.example.com>"
            raw = make_message(message_id=message_id, subject=f"Message {cursor}")
        internal_date = internal_date or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.messages.setdefault(folder, {})[cursor] = (raw, message_id, internal_date)

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    def list_folders(self) -> list[str]:
        return sorted(self.messages)

    def get_cursor_epoch(self, folder: str) -> int:
        return self.epochs.get(folder, self.default_epoch)

    def get_folder_cursor_range(self, folder, since_cursor, since=None, before=None) -> list[int]:
        cursors = []
        for cursor, (_raw, _mid, internal_date) in self.messages.get(folder, {}).items():
            if cursor <= since_cursor:
                continue
            if since is not None and internal_date.date() < since:
                continue
            if before is not None and internal_date.date() >= before:
                continue
            cursors.append(cursor)
        return sorted(cursors)

    def fetch_summaries(self, folder: str, cursors: list[int]) -> list[MessageSummary]:
        summaries = []
        for cursor in cursors:
            entry = self.messages.get(folder, {}).get(cursor)
            if entry is None:
                continue
            _raw, message_id, internal_date = entry
            identity = normalize_identity(message_id) if message_id else None
            summaries.append(MessageSummary(cursor, identity, internal_date, f"Message {cursor}"))
        return summaries

    def open_message_stream(self, folder: str, cursor: int):
        self.opened.append((folder, cursor))
        if self.on_open is not None:
            self.on_open(folder, cursor)
        if (folder, cursor) in self.failing:
            raise MailboxSourceError(f"Simulated failure for {folder}:{cursor}")
        return io.BytesIO(self.messages[folder][cursor][0])


@pytest.fixture
def stats():
    return SyncStats()


@pytest.fixture
def archive_root(tmp_path):
    root = tmp_path / "archive"
    root.mkdir()
    return root


@pytest.fixture
def index(archive_root, stats):
    """Open dedup index in the archive root."""
    index = DedupIndex(archive_root, stats=stats).open()
    yield index
    index.close()


@pytest.fixture
def writer(archive_root, index, stats):
    return ArchiveWriter(archive_root, index, hostname="testhost", stats=stats)


@pytest.fixture
def source():
    return FakeMailboxSource()
