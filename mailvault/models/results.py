"""Result values passed between the writer, the orchestrator and callers."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class StoreOutcome(Enum):
    """What the archive writer did with one message."""

    STORED = "stored"
    DUPLICATE = "duplicate"
    COLLISION = "collision"


@dataclass(frozen=True)
class StoreResult:
    """
    Outcome of storing one message.

    Attributes:
        outcome: Stored, duplicate, or collision exhaustion
        identity: Definitive normalized identity used for the decision
        path: Final message path (stored only)
    """

    outcome: StoreOutcome
    identity: str
    path: Optional[Path] = None

    @property
    def accounted_for(self) -> bool:
        """True if the message is durably in the archive after this call."""
        return self.outcome in (StoreOutcome.STORED, StoreOutcome.DUPLICATE)


@dataclass
class BatchResult:
    """Checkpoint bookkeeping for one batch of cursors."""

    safe_checkpoint: int
    failed_cursors: list[int] = field(default_factory=list)
    stored: int = 0
    duplicates: int = 0
    cancelled: bool = False


@dataclass
class FolderSyncResult:
    """Summary of one folder synchronization."""

    folder: str
    cursor_epoch: int
    start_cursor: int
    checkpoint: int
    stored: int = 0
    duplicates: int = 0
    failed_cursors: list[int] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class SyncReport:
    """Summary of a synchronization run across folders."""

    folders: list[FolderSyncResult] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return sum(f.stored for f in self.folders)

    @property
    def duplicates(self) -> int:
        return sum(f.duplicates for f in self.folders)

    @property
    def failed(self) -> int:
        return sum(len(f.failed_cursors) for f in self.folders)

    @property
    def cancelled(self) -> bool:
        return any(f.cancelled for f in self.folders)


@dataclass
class RecoveryReport:
    """Summary of a crash recovery pass."""

    quarantined_path: Optional[Path]
    scanned: int = 0
    restored: int = 0
    skipped: int = 0
