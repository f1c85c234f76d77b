"""Data persistence layer"""

from .archive_writer import ArchiveWriter
from .database import (
    DEFAULT_INDEX_FILENAME,
    DatabaseConnection,
    DedupIndex,
    MessageRecordRepository,
    SyncStateRepository,
    is_corruption_error,
)
from .errors import IndexCorruptedError, RecoveryError, StorageError
from .recovery import CrashRecoveryScanner

__all__ = [
    "ArchiveWriter",
    "DEFAULT_INDEX_FILENAME",
    "DatabaseConnection",
    "DedupIndex",
    "MessageRecordRepository",
    "SyncStateRepository",
    "is_corruption_error",
    "IndexCorruptedError",
    "RecoveryError",
    "StorageError",
    "CrashRecoveryScanner",
]
