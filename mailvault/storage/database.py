"""Dedup index: database schema, repositories and the per-run facade."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

import structlog

from ..models.checkpoint import FolderCheckpoint
from ..models.message_record import MessageRecord
from ..models.results import RecoveryReport
from ..telemetry.stats import SyncStats
from .errors import IndexCorruptedError, StorageError
from .recovery import CrashRecoveryScanner

T = TypeVar("T")
log = structlog.get_logger(__name__)

DEFAULT_INDEX_FILENAME = "index.v1.db"

# sqlite3 subclasses of DatabaseError that never mean the file is damaged
_NON_CORRUPTION_ERRORS = (
    sqlite3.OperationalError,
    sqlite3.IntegrityError,
    sqlite3.ProgrammingError,
    sqlite3.InterfaceError,
    sqlite3.DataError,
    sqlite3.NotSupportedError,
)


def _is_lock_error(error_msg: str) -> bool:
    """Check if an error message indicates lock contention."""
    lower_msg = error_msg.lower()
    return "database is locked" in lower_msg or "database is busy" in lower_msg


def is_corruption_error(exc: BaseException) -> bool:
    """
    Decide whether an exception means the database file itself is damaged.

    SQLITE_CORRUPT and SQLITE_NOTADB surface as a bare ``sqlite3.DatabaseError``;
    locks, full disks and constraint violations use subclasses and are not
    repaired by rebuilding the index.
    """
    if isinstance(exc, IndexCorruptedError):
        return True
    if not isinstance(exc, sqlite3.DatabaseError):
        return False
    if isinstance(exc, _NON_CORRUPTION_ERRORS):
        return False
    return not _is_lock_error(str(exc))


class DatabaseConnection:
    """Database connection and schema management."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

    def connect(self) -> sqlite3.Connection:
        """
        Establish database connection.

        Returns:
            SQLite connection object
        """
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            # Callers serialize access through DedupIndex's lock
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row

        return self._conn

    def execute_schema(self) -> None:
        """Create database tables if they don't exist."""
        conn = self.connect()

        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT NOT NULL PRIMARY KEY,
                folder TEXT NOT NULL,
                imported_at TEXT NOT NULL
            )
        """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_messages_folder
            ON messages(folder)
        """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                folder TEXT NOT NULL PRIMARY KEY,
                last_uid INTEGER NOT NULL,
                uid_validity INTEGER NOT NULL
            )
        """
        )

        conn.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
        conn.commit()

    def check_integrity(self) -> None:
        """
        Run SQLite's quick integrity check.

        Raises:
            IndexCorruptedError: If the check reports any problem
        """
        row = self.connect().execute("PRAGMA quick_check").fetchone()
        if row is None or row[0] != "ok":
            detail = row[0] if row is not None else "no result"
            raise IndexCorruptedError(f"Integrity check failed for {self.db_path}: {detail}")

    def commit(self) -> None:
        """Commit unless an enclosing transaction() will commit later."""
        if self._tx_depth == 0:
            self.connect().commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Group writes into one commit; rolls back if the block raises.

        Nested use joins the outermost transaction.
        """
        conn = self.connect()
        self._tx_depth += 1
        try:
            yield conn
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._tx_depth = 0


class MessageRecordRepository:
    """Repository for MessageRecord entities."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def exists(self, identity: str) -> bool:
        """
        Check whether an identity has already been archived.

        Args:
            identity: Normalized message identity

        Returns:
            True if a record exists
        """
        if not identity or not identity.strip():
            return False

        cursor = self.db.connect().execute(
            "SELECT 1 FROM messages WHERE message_id = ? LIMIT 1", (identity,)
        )
        return cursor.fetchone() is not None

    def insert_if_absent(self, record: MessageRecord) -> bool:
        """
        Insert a record unless its identity is already present.

        Args:
            record: MessageRecord instance

        Returns:
            True if a new row was written
        """
        cursor = self.db.connect().execute(
            """
            INSERT OR IGNORE INTO messages (message_id, folder, imported_at)
            VALUES (?, ?, ?)
        """,
            (record.identity, record.folder, record.imported_at.isoformat()),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def count(self) -> int:
        """Return the number of archived identities."""
        return self.db.connect().execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def count_by_folder(self) -> dict[str, int]:
        """Return archived identity counts keyed by folder."""
        cursor = self.db.connect().execute(
            "SELECT folder, COUNT(*) FROM messages GROUP BY folder ORDER BY folder"
        )
        return {row[0]: row[1] for row in cursor.fetchall()}


class SyncStateRepository:
    """Repository for FolderCheckpoint entities."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get(self, folder: str) -> Optional[FolderCheckpoint]:
        """
        Load the stored checkpoint for a folder.

        Returns:
            FolderCheckpoint if one was recorded, None otherwise
        """
        cursor = self.db.connect().execute(
            "SELECT * FROM sync_state WHERE folder = ?", (folder,)
        )
        row = cursor.fetchone()

        if row is None:
            return None

        return self._row_to_checkpoint(row)

    def advance(self, folder: str, cursor_value: int, cursor_epoch: int) -> bool:
        """
        Store a checkpoint if it moves forward.

        Under the same epoch the row only changes when cursor_value is greater
        than the stored cursor. A different epoch replaces the row, because the
        old cursor values no longer mean anything.

        Returns:
            True if the stored checkpoint changed
        """
        cursor = self.db.connect().execute(
            """
            INSERT INTO sync_state (folder, last_uid, uid_validity)
            VALUES (?, ?, ?)
            ON CONFLICT(folder) DO UPDATE SET
                last_uid = excluded.last_uid,
                uid_validity = excluded.uid_validity
            WHERE sync_state.last_uid < excluded.last_uid
               OR sync_state.uid_validity != excluded.uid_validity
        """,
            (folder, cursor_value, cursor_epoch),
        )
        self.db.commit()
        return cursor.rowcount == 1

    def find_all(self) -> Iterator[FolderCheckpoint]:
        """
        Yield every stored checkpoint ordered by folder.
        """
        cursor = self.db.connect().execute("SELECT * FROM sync_state ORDER BY folder")

        for row in cursor.fetchall():
            yield self._row_to_checkpoint(row)

    def _row_to_checkpoint(self, row: sqlite3.Row) -> FolderCheckpoint:
        return FolderCheckpoint(
            folder=row["folder"],
            last_cursor=row["last_uid"],
            cursor_epoch=row["uid_validity"],
        )


class DedupIndex:
    """
    The single source of truth for "have we archived this already".

    Opened once per run against ``<archive_root>/index.v1.db``. Every call is
    serialized through one lock so worker threads can share the handle. A
    damaged database file is quarantined and rebuilt from the sidecar files on
    disk, either while opening or on the first query that trips over it.
    """

    def __init__(
        self,
        archive_root: Path,
        db_filename: str = DEFAULT_INDEX_FILENAME,
        stats: Optional[SyncStats] = None,
    ):
        """
        Initialize the index (does not touch the disk until open()).

        Args:
            archive_root: Root directory of the Maildir archive
            db_filename: Database file name inside archive_root
            stats: Stats collector for recovery counters
        """
        self.archive_root = archive_root
        self.db_path = archive_root / db_filename
        self.stats = stats or SyncStats()
        self.last_recovery: Optional[RecoveryReport] = None

        self._lock = threading.RLock()
        self._db: Optional[DatabaseConnection] = None
        self._messages: Optional[MessageRecordRepository] = None
        self._sync_state: Optional[SyncStateRepository] = None

    def open(self) -> "DedupIndex":
        """
        Open the database, recovering it from disk if it is damaged.

        Returns:
            self, for chaining

        Raises:
            RecoveryError: If the archive cannot be scanned during recovery
            sqlite3.OperationalError: For lock or disk errors (not corruption)
        """
        with self._lock:
            self.archive_root.mkdir(parents=True, exist_ok=True)
            try:
                self._open_and_migrate()
            except (sqlite3.DatabaseError, IndexCorruptedError) as e:
                if not is_corruption_error(e):
                    raise
                log.error("index_corruption_detected", path=str(self.db_path), error=str(e))
                self.recover()
        return self

    def recover(self) -> RecoveryReport:
        """
        Quarantine the current database and rebuild records from sidecars.

        Checkpoints are not rebuilt; every folder resyncs from the start and
        relies on per-message dedup.

        Returns:
            RecoveryReport for the pass
        """
        with self._lock:
            self._close_connection()

            scanner = CrashRecoveryScanner(self.archive_root, stats=self.stats)
            quarantined = scanner.quarantine(self.db_path)

            self._open_and_migrate()
            with self._db.transaction():
                report = scanner.rebuild(self._messages)

            report.quarantined_path = quarantined
            self.last_recovery = report
            self.stats.increment("index.recoveries")
            return report

    def exists(self, identity: str) -> bool:
        return self._guarded(lambda: self._messages.exists(identity))

    def insert_if_absent(self, record: MessageRecord) -> bool:
        return self._guarded(lambda: self._messages.insert_if_absent(record))

    def get_checkpoint(self, folder: str) -> Optional[FolderCheckpoint]:
        return self._guarded(lambda: self._sync_state.get(folder))

    def set_checkpoint(self, folder: str, cursor_value: int, cursor_epoch: int) -> bool:
        """
        Persist a folder checkpoint on monotonic advance.

        Returns:
            True if the stored checkpoint changed
        """
        return self._guarded(lambda: self._sync_state.advance(folder, cursor_value, cursor_epoch))

    def checkpoints(self) -> list[FolderCheckpoint]:
        return self._guarded(lambda: list(self._sync_state.find_all()))

    def count(self) -> int:
        return self._guarded(lambda: self._messages.count())

    def count_by_folder(self) -> dict[str, int]:
        return self._guarded(lambda: self._messages.count_by_folder())

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def close(self) -> None:
        """Close the database handle."""
        with self._lock:
            self._close_connection()

    def __enter__(self) -> "DedupIndex":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _guarded(self, operation: Callable[[], T]) -> T:
        """Run a repository call, recovering once if the file is damaged."""
        with self._lock:
            self._require_open()
            try:
                return operation()
            except sqlite3.DatabaseError as e:
                if not is_corruption_error(e):
                    raise
                log.error("index_corruption_detected", path=str(self.db_path), error=str(e))
                self.recover()
                return operation()

    def _open_and_migrate(self) -> None:
        db = DatabaseConnection(self.db_path)
        try:
            db.execute_schema()
            db.check_integrity()
        except BaseException:
            db.close()
            raise

        self._db = db
        self._messages = MessageRecordRepository(db)
        self._sync_state = SyncStateRepository(db)

    def _close_connection(self) -> None:
        if self._db is not None:
            self._db.close()
        self._db = None
        self._messages = None
        self._sync_state = None

    def _require_open(self) -> None:
        if self._db is None:
            raise StorageError(f"Dedup index is not open: {self.db_path}")
