"""Tests for database operations."""

import io
import sqlite3
from datetime import datetime, timezone

import pytest

from mailvault.models.message_record import MessageRecord
from mailvault.models.sidecar import SidecarMetadata
from mailvault.storage.database import (
    DatabaseConnection,
    DedupIndex,
    MessageRecordRepository,
    SyncStateRepository,
    is_corruption_error,
)
from mailvault.storage.errors import IndexCorruptedError, StorageError
from tests.conftest import make_message


class TestDatabaseConnection:
    """Test database connection and schema."""

    @pytest.fixture
    def db(self, tmp_path):
        """Create database for testing."""
        db = DatabaseConnection(tmp_path / "test.db")
        db.execute_schema()
        yield db
        db.close()

    def test_execute_schema(self, db):
        """Test schema execution creates tables."""
        cursor = db.connect().execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = [row[0] for row in cursor.fetchall()]

        assert "messages" in tables
        assert "sync_state" in tables

    def test_wal_mode(self, db):
        """Test the database uses write-ahead logging."""
        mode = db.connect().execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_check_integrity_passes(self, db):
        """Test a healthy database passes quick_check."""
        db.check_integrity()

    def test_transaction_rolls_back(self, db):
        """Test a raising block discards its writes."""
        repo = MessageRecordRepository(db)

        with pytest.raises(RuntimeError):
            with db.transaction():
                repo.insert_if_absent(MessageRecord("a@example.com", "INBOX"))
                raise RuntimeError("boom")

        assert repo.count() == 0


class TestMessageRecordRepository:
    """Test message record repository."""

    @pytest.fixture
    def repo(self, tmp_path):
        """Create repository with test database."""
        db = DatabaseConnection(tmp_path / "test.db")
        db.execute_schema()
        yield MessageRecordRepository(db)
        db.close()

    def test_insert_if_absent(self, repo):
        """Test the first insert writes and the second is ignored."""
        record = MessageRecord("test@example.com", "INBOX")

        assert repo.insert_if_absent(record) is True
        assert repo.insert_if_absent(MessageRecord("test@example.com", "Archive")) is False

        assert repo.count_by_folder() == {"INBOX": 1}

    def test_exists(self, repo):
        """Test existence checks."""
        assert not repo.exists("test@example.com")
        repo.insert_if_absent(MessageRecord("test@example.com", "INBOX"))
        assert repo.exists("test@example.com")
        assert not repo.exists("")

    def test_counts(self, repo):
        """Test totals and per-folder counts."""
        repo.insert_if_absent(MessageRecord("a@example.com", "INBOX"))
        repo.insert_if_absent(MessageRecord("b@example.com", "INBOX"))
        repo.insert_if_absent(MessageRecord("c@example.com", "Sent"))

        assert repo.count() == 3
        assert repo.count_by_folder() == {"INBOX": 2, "Sent": 1}


class TestSyncStateRepository:
    """Test folder checkpoint persistence."""

    @pytest.fixture
    def repo(self, tmp_path):
        db = DatabaseConnection(tmp_path / "test.db")
        db.execute_schema()
        yield SyncStateRepository(db)
        db.close()

    def test_advance_is_monotonic(self, repo):
        """Test a lower cursor under the same epoch is ignored."""
        assert repo.advance("INBOX", 5, 100) is True
        assert repo.advance("INBOX", 3, 100) is False
        assert repo.advance("INBOX", 5, 100) is False

        checkpoint = repo.get("INBOX")
        assert checkpoint.last_cursor == 5
        assert checkpoint.cursor_epoch == 100

    def test_new_epoch_replaces_checkpoint(self, repo):
        """Test a different epoch resets the stored cursor."""
        repo.advance("INBOX", 50, 100)

        assert repo.advance("INBOX", 2, 200) is True

        checkpoint = repo.get("INBOX")
        assert checkpoint.last_cursor == 2
        assert checkpoint.cursor_epoch == 200

    def test_get_missing(self, repo):
        """Test an unknown folder has no checkpoint."""
        assert repo.get("Nowhere") is None


class TestCorruptionDetection:
    """Test which errors count as a damaged database."""

    def test_bare_database_error_is_corruption(self):
        assert is_corruption_error(sqlite3.DatabaseError("database disk image is malformed"))
        assert is_corruption_error(IndexCorruptedError("quick_check failed"))

    def test_lock_errors_are_not_corruption(self):
        assert not is_corruption_error(sqlite3.OperationalError("database is locked"))
        assert not is_corruption_error(sqlite3.DatabaseError("database is busy"))

    def test_other_errors_are_not_corruption(self):
        assert not is_corruption_error(sqlite3.IntegrityError("UNIQUE constraint failed"))
        assert not is_corruption_error(ValueError("nope"))


class TestDedupIndex:
    """Test the per-run index facade."""

    def test_open_creates_database(self, archive_root):
        """Test open() creates index.v1.db in the archive root."""
        with DedupIndex(archive_root) as index:
            assert index.is_open
            assert index.count() == 0
        assert (archive_root / "index.v1.db").exists()
        assert not index.is_open

    def test_checkpoint_round_trip(self, index):
        """Test checkpoints persist and advance monotonically."""
        assert index.set_checkpoint("INBOX", 10, 7) is True
        assert index.set_checkpoint("INBOX", 9, 7) is False

        checkpoint = index.get_checkpoint("INBOX")
        assert checkpoint.last_cursor == 10
        assert [c.folder for c in index.checkpoints()] == ["INBOX"]

    def test_calls_after_close_raise(self, archive_root):
        """Test a closed index refuses queries."""
        index = DedupIndex(archive_root).open()
        index.close()

        with pytest.raises(StorageError):
            index.exists("a@example.com")

    def test_corrupt_file_is_quarantined_and_rebuilt(self, archive_root, stats):
        """Test a garbage database file is moved aside and rebuilt from sidecars."""
        cur = archive_root / "INBOX" / "cur"
        cur.mkdir(parents=True)
        metadata = SidecarMetadata(
            message_id="kept@example.com",
            folder="INBOX",
            date=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        (cur / "1.kept@example.com.host:2,S.eml.meta.json").write_text(metadata.to_json())

        db_path = archive_root / "index.v1.db"
        db_path.write_bytes(b"this is not an sqlite database" * 200)

        with DedupIndex(archive_root, stats=stats) as index:
            assert index.exists("kept@example.com")
            assert index.last_recovery.restored == 1
            quarantined = index.last_recovery.quarantined_path

        assert quarantined.exists()
        assert quarantined.name.startswith("index.v1.db.corrupt.")
        assert quarantined.read_bytes().startswith(b"this is not an sqlite database")
        assert stats.get("index.recoveries") == 1

    def test_recover_keeps_records_and_drops_checkpoints(self, archive_root, index, writer):
        """Test a forced rebuild restores identities but not checkpoints."""
        writer.store(io.BytesIO(make_message()), None, None, "INBOX")
        index.set_checkpoint("INBOX", 42, 1)

        report = index.recover()

        assert report.restored == 1
        assert index.exists("test@example.com")
        assert index.get_checkpoint("INBOX") is None
