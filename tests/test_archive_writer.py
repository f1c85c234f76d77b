"""Tests for atomic Maildir writes."""

import io
import json
import sqlite3
from datetime import datetime, timezone

import pytest

from mailvault.models.results import StoreOutcome
from mailvault.storage.archive_writer import ArchiveWriter
from tests.conftest import make_message

INTERNAL_DATE = datetime(2025, 1, 13, 10, 30, tzinfo=timezone.utc)


class ExplodingStream(io.RawIOBase):
    """Stream that fails the test if anything reads it."""

    def readable(self):
        return True

    def readinto(self, b):
        raise AssertionError("stream must not be read")


class FailingStream(io.RawIOBase):
    """Yields some bytes, then raises like a dropped connection."""

    def __init__(self):
        self.calls = 0

    def readable(self):
        return True

    def readinto(self, b):
        self.calls += 1
        if self.calls > 1:
            raise ConnectionResetError("connection dropped")
        data = b"Message-ID: <partial@example.com>\r\n"
        b[: len(data)] = data
        return len(data)


def _files(directory):
    return sorted(p.name for p in directory.iterdir())


class TestArchiveWriter:
    """Test storing messages in the Maildir layout."""

    def test_store_writes_message_and_sidecar(self, writer, index, archive_root):
        """Test a new message lands in cur/ with its sidecar and record."""
        raw = make_message(message_id="<ABC@Example.com>", subject="Quarterly report")

        result = writer.store(io.BytesIO(raw), "abc@example.com", INTERNAL_DATE, "INBOX")

        assert result.outcome is StoreOutcome.STORED
        assert result.identity == "abc@example.com"
        assert result.path.name == "1736764200.abc@example.com.testhost:2,S.eml"
        assert result.path.read_bytes() == raw
        assert result.path.parent == archive_root / "INBOX" / "cur"
        assert _files(archive_root / "INBOX" / "tmp") == []
        assert index.exists("abc@example.com")

        sidecar = json.loads((result.path.parent / (result.path.name + ".meta.json")).read_text())
        assert sidecar["message_id"] == "abc@example.com"
        assert sidecar["subject"] == "Quarterly report"
        assert sidecar["from"] == "John Doe <john@example.com>"
        assert sidecar["to"] == "jane@example.com"
        assert sidecar["folder"] == "INBOX"
        assert sidecar["has_attachments"] is False

    def test_creates_maildir_subdirectories(self, writer, archive_root):
        """Test cur/, new/ and tmp/ exist after the first store."""
        writer.store(io.BytesIO(make_message()), None, INTERNAL_DATE, "Sent Items")

        folder = archive_root / "Sent_Items"
        assert (folder / "cur").is_dir()
        assert (folder / "new").is_dir()
        assert (folder / "tmp").is_dir()

    def test_known_duplicate_does_not_read_stream(self, writer, index):
        """Test a known identity short-circuits before touching the stream."""
        writer.store(io.BytesIO(make_message()), "test@example.com", INTERNAL_DATE, "INBOX")

        result = writer.store(ExplodingStream(), "test@example.com", INTERNAL_DATE, "Archive")

        assert result.outcome is StoreOutcome.DUPLICATE
        assert index.count() == 1

    def test_identity_derived_from_headers(self, writer, index):
        """Test a missing identity is taken from the Message-ID header."""
        raw = make_message(message_id="<Derived@Example.com>")

        result = writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")

        assert result.identity == "derived@example.com"
        assert index.exists("derived@example.com")

    def test_duplicate_found_after_header_parse(self, writer, archive_root):
        """Test a duplicate detected from headers leaves no temp file."""
        raw = make_message(message_id="<same@example.com>")
        writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")

        result = writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")

        assert result.outcome is StoreOutcome.DUPLICATE
        assert _files(archive_root / "INBOX" / "tmp") == []
        assert len([p for p in (archive_root / "INBOX" / "cur").iterdir() if p.suffix == ".eml"]) == 1

    def test_messages_without_message_id_get_distinct_identities(self, writer, index):
        """Test two different unidentifiable messages are both archived."""
        first = writer.store(
            io.BytesIO(make_message(message_id=None, body="First.\r\n")), None, INTERNAL_DATE, "INBOX"
        )
        second = writer.store(
            io.BytesIO(make_message(message_id=None, body="Second.\r\n")), None, INTERNAL_DATE, "INBOX"
        )

        assert first.outcome is StoreOutcome.STORED
        assert second.outcome is StoreOutcome.STORED
        assert first.identity != second.identity
        assert first.identity.startswith("no-id-")
        assert index.count() == 2

    def test_refetched_message_without_message_id_is_duplicate(self, writer, archive_root):
        """Test the fallback identity is stable for the same bytes."""
        raw = make_message(message_id=None)

        first = writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")
        second = writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")

        assert first.outcome is StoreOutcome.STORED
        assert second.outcome is StoreOutcome.DUPLICATE
        assert second.identity == first.identity
        assert len([p for p in (archive_root / "INBOX" / "cur").iterdir() if p.suffix == ".eml"]) == 1

    def test_filename_collision_adds_suffix(self, writer, archive_root):
        """Test an occupied final name falls back to <identity>_1."""
        cur = archive_root / "INBOX" / "cur"
        cur.mkdir(parents=True)
        taken = ArchiveWriter.generate_filename(INTERNAL_DATE, "test@example.com", "testhost")
        (cur / taken).write_bytes(b"someone else")

        result = writer.store(io.BytesIO(make_message()), "test@example.com", INTERNAL_DATE, "INBOX")

        assert result.outcome is StoreOutcome.STORED
        assert result.path.name == "1736764200.test@example.com_1.testhost:2,S.eml"
        assert (cur / taken).read_bytes() == b"someone else"

    def test_collision_exhaustion(self, writer, index, archive_root):
        """Test every candidate taken returns COLLISION and inserts nothing."""
        cur = archive_root / "INBOX" / "cur"
        cur.mkdir(parents=True)
        for n in range(ArchiveWriter.MAX_COLLISION_ATTEMPTS + 1):
            identity = "test@example.com" if n == 0 else f"test@example.com_{n}"
            (cur / ArchiveWriter.generate_filename(INTERNAL_DATE, identity, "testhost")).write_bytes(b"x")

        result = writer.store(io.BytesIO(make_message()), "test@example.com", INTERNAL_DATE, "INBOX")

        assert result.outcome is StoreOutcome.COLLISION
        assert not result.accounted_for
        assert not index.exists("test@example.com")
        assert _files(archive_root / "INBOX" / "tmp") == []

    def test_stream_failure_removes_temp_file(self, writer, index, archive_root):
        """Test a dropped download leaves nothing behind."""
        with pytest.raises(ConnectionResetError):
            writer.store(FailingStream(), None, INTERNAL_DATE, "INBOX")

        assert _files(archive_root / "INBOX" / "tmp") == []
        assert _files(archive_root / "INBOX" / "cur") == []
        assert index.count() == 0

    def test_record_failure_rolls_back_files(self, writer, index, archive_root, monkeypatch):
        """Test a failed insert removes the final file and sidecar."""

        def _fail(record):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(index, "insert_if_absent", _fail)

        with pytest.raises(sqlite3.OperationalError):
            writer.store(io.BytesIO(make_message()), "test@example.com", INTERNAL_DATE, "INBOX")

        assert _files(archive_root / "INBOX" / "cur") == []
        assert _files(archive_root / "INBOX" / "tmp") == []

    def test_nothing_visible_in_cur_while_downloading(self, writer, archive_root):
        """Test partial bytes only ever exist in tmp/."""
        raw = make_message(body="x" * (3 * ArchiveWriter.CHUNK_SIZE))
        cur = archive_root / "INBOX" / "cur"
        observed = []

        class WatchingStream(io.BytesIO):
            def read(self, size=-1):
                observed.append(sorted(p.name for p in cur.iterdir()) if cur.exists() else [])
                return super().read(size)

        result = writer.store(WatchingStream(raw), "big@example.com", INTERNAL_DATE, "INBOX")

        assert len(observed) > 1
        assert all(names == [] for names in observed)
        assert result.path.stat().st_size == len(raw)

    def test_multipart_mixed_sets_has_attachments(self, writer):
        """Test has_attachments comes from the top-level Content-Type."""
        raw = make_message(content_type='multipart/mixed; boundary="b1"')

        result = writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")

        sidecar = json.loads(result.path.with_name(result.path.name + ".meta.json").read_text())
        assert sidecar["has_attachments"] is True

    def test_records_write_stats(self, writer, stats):
        """Test counters are recorded in the injected collector."""
        raw = make_message()
        writer.store(io.BytesIO(raw), None, INTERNAL_DATE, "INBOX")
        writer.store(io.BytesIO(raw), "test@example.com", INTERNAL_DATE, "INBOX")

        assert stats.get("storage.files_written") == 1
        assert stats.get("storage.bytes_written") == len(raw)
        assert stats.get("storage.duplicates") == 1
        assert stats.snapshot()["latencies"]["storage.write_latency_ms"]["count"] == 1


class TestGenerateFilename:
    """Test Maildir file naming."""

    def test_format(self):
        """Test <epoch>.<identity>.<host>:2,S.eml."""
        name = ArchiveWriter.generate_filename(
            datetime(2024, 1, 1, tzinfo=timezone.utc), "abc@example.com", "host"
        )
        assert name == "1704067200.abc@example.com.host:2,S.eml"
