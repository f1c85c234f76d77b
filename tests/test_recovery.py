"""Tests for rebuilding the index from sidecars."""

from datetime import datetime, timezone

import pytest

from mailvault.models.sidecar import SidecarMetadata
from mailvault.storage.database import DatabaseConnection, MessageRecordRepository
from mailvault.storage.errors import RecoveryError
from mailvault.storage.recovery import CrashRecoveryScanner


def write_sidecar(directory, identity, folder="INBOX"):
    directory.mkdir(parents=True, exist_ok=True)
    metadata = SidecarMetadata(
        message_id=identity,
        subject="Subject",
        folder=folder,
        date=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    path = directory / f"1735689600.{identity}.host:2,S.eml.meta.json"
    path.write_text(metadata.to_json(), encoding="utf-8")
    return path


class TestCrashRecoveryScanner:
    """Test sidecar scanning and quarantine."""

    @pytest.fixture
    def messages(self, tmp_path):
        db = DatabaseConnection(tmp_path / "fresh.db")
        db.execute_schema()
        yield MessageRecordRepository(db)
        db.close()

    def test_rebuild_restores_every_identity(self, archive_root, messages):
        """Test each valid sidecar becomes one record with its folder."""
        write_sidecar(archive_root / "INBOX" / "cur", "a@example.com")
        write_sidecar(archive_root / "INBOX" / "cur", "b@example.com")
        write_sidecar(archive_root / "Sent" / "cur", "c@example.com", folder="Sent")

        report = CrashRecoveryScanner(archive_root).rebuild(messages)

        assert report.scanned == 3
        assert report.restored == 3
        assert report.skipped == 0
        assert messages.count_by_folder() == {"INBOX": 2, "Sent": 1}

    def test_malformed_sidecars_are_skipped(self, archive_root, messages, stats):
        """Test broken JSON and missing fields are logged and skipped."""
        cur = archive_root / "INBOX" / "cur"
        write_sidecar(cur, "good@example.com")
        (cur / "2.bad.host:2,S.eml.meta.json").write_text("{not json")
        (cur / "3.partial.host:2,S.eml.meta.json").write_text('{"message_id": "x@example.com"}')

        report = CrashRecoveryScanner(archive_root, stats=stats).rebuild(messages)

        assert report.scanned == 3
        assert report.restored == 1
        assert report.skipped == 2
        assert stats.get("recovery.sidecars_skipped") == 2
        assert messages.exists("good@example.com")

    def test_tmp_directories_are_ignored(self, archive_root, messages):
        """Test uncommitted files in tmp/ are never restored."""
        write_sidecar(archive_root / "INBOX" / "tmp", "uncommitted@example.com")

        report = CrashRecoveryScanner(archive_root).rebuild(messages)

        assert report.scanned == 0
        assert not messages.exists("uncommitted@example.com")

    def test_missing_archive_root_is_fatal(self, tmp_path, messages):
        """Test an unreadable archive root raises RecoveryError."""
        scanner = CrashRecoveryScanner(tmp_path / "does-not-exist")

        with pytest.raises(RecoveryError):
            scanner.rebuild(messages)

    def test_quarantine_moves_database_and_companions(self, tmp_path):
        """Test the database and its WAL files are renamed, not deleted."""
        db_path = tmp_path / "index.v1.db"
        db_path.write_bytes(b"damaged")
        (tmp_path / "index.v1.db-wal").write_bytes(b"wal")

        backup = CrashRecoveryScanner(tmp_path).quarantine(db_path)

        assert not db_path.exists()
        assert backup.read_bytes() == b"damaged"
        assert backup.with_name(backup.name + "-wal").read_bytes() == b"wal"
        assert not (tmp_path / "index.v1.db-wal").exists()

    def test_quarantine_without_database(self, tmp_path):
        """Test quarantining a missing file is a no-op."""
        assert CrashRecoveryScanner(tmp_path).quarantine(tmp_path / "index.v1.db") is None
