"""Data models for the archive and its bookkeeping"""

from .checkpoint import FolderCheckpoint
from .message_record import MessageRecord
from .results import (
    BatchResult,
    FolderSyncResult,
    RecoveryReport,
    StoreOutcome,
    StoreResult,
    SyncReport,
)
from .sidecar import SIDECAR_SUFFIX, SidecarMetadata

__all__ = [
    "FolderCheckpoint",
    "MessageRecord",
    "BatchResult",
    "FolderSyncResult",
    "RecoveryReport",
    "StoreOutcome",
    "StoreResult",
    "SyncReport",
    "SIDECAR_SUFFIX",
    "SidecarMetadata",
]
