"""Rebuild the dedup index from the sidecar files on disk."""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

import structlog
from pydantic import ValidationError

from ..models.message_record import MessageRecord
from ..models.results import RecoveryReport
from ..models.sidecar import SIDECAR_SUFFIX, SidecarMetadata
from ..telemetry.stats import SyncStats
from .errors import RecoveryError

if TYPE_CHECKING:
    from .database import MessageRecordRepository

log = structlog.get_logger(__name__)

# Files that travel with an SQLite database in WAL mode
_DATABASE_COMPANIONS = ("-wal", "-shm")


class CrashRecoveryScanner:
    """
    Walks an archive and restores one message record per valid sidecar.

    The archive files are the ground truth; the database is only an index over
    them. Folder checkpoints cannot be derived from the files and are left
    empty.
    """

    def __init__(self, archive_root: Path, stats: Optional[SyncStats] = None):
        """
        Args:
            archive_root: Root directory of the Maildir archive
            stats: Stats collector for scanned/skipped counters
        """
        self.archive_root = archive_root
        self.stats = stats or SyncStats()

    def quarantine(self, db_path: Path) -> Optional[Path]:
        """
        Move a damaged database aside instead of deleting it.

        The WAL and shared-memory files move with it so the set can still be
        opened for inspection.

        Args:
            db_path: Path to the database file

        Returns:
            The new path of the database, or None if there was no file
        """
        if not db_path.exists():
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        backup_path = db_path.with_name(f"{db_path.name}.corrupt.{stamp}")

        for companion in _DATABASE_COMPANIONS:
            companion_path = db_path.with_name(db_path.name + companion)
            if companion_path.exists():
                os.replace(companion_path, backup_path.with_name(backup_path.name + companion))

        os.replace(db_path, backup_path)
        log.warning("index_quarantined", path=str(db_path), backup=str(backup_path))
        return backup_path

    def iter_sidecars(self) -> Iterator[Path]:
        """
        Yield every sidecar file under the archive root.

        Raises:
            RecoveryError: If the archive root or a directory in it is unreadable
        """
        if not self.archive_root.is_dir():
            raise RecoveryError(f"Archive root is not a directory: {self.archive_root}")

        def _raise(error: OSError) -> None:
            raise RecoveryError(f"Cannot scan archive: {error}") from error

        for dirpath, dirnames, filenames in os.walk(self.archive_root, onerror=_raise):
            # tmp/ only ever holds files that were never committed
            dirnames[:] = sorted(d for d in dirnames if d != "tmp")
            for filename in sorted(filenames):
                if filename.endswith(SIDECAR_SUFFIX):
                    yield Path(dirpath) / filename

    def rebuild(self, messages: "MessageRecordRepository") -> RecoveryReport:
        """
        Insert a message record for every valid sidecar.

        Args:
            messages: Repository of the freshly created database

        Returns:
            RecoveryReport with scanned/restored/skipped counts
        """
        report = RecoveryReport(quarantined_path=None)
        log.info("index_rebuild_started", archive_root=str(self.archive_root))

        for sidecar_path in self.iter_sidecars():
            report.scanned += 1
            try:
                metadata = SidecarMetadata.from_json(sidecar_path.read_bytes())
            except (OSError, ValidationError, UnicodeDecodeError) as e:
                report.skipped += 1
                self.stats.increment("recovery.sidecars_skipped")
                log.warning("sidecar_skipped", path=str(sidecar_path), error=str(e))
                continue

            record = MessageRecord(
                identity=metadata.message_id,
                folder=metadata.folder,
                imported_at=metadata.archived_at,
            )
            if messages.insert_if_absent(record):
                report.restored += 1

        self.stats.increment("recovery.sidecars_restored", report.restored)
        log.info(
            "index_rebuild_finished",
            scanned=report.scanned,
            restored=report.restored,
            skipped=report.skipped,
        )
        return report
