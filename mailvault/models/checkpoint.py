"""Folder checkpoint data model."""

from dataclasses import dataclass


@dataclass(frozen=True)
class FolderCheckpoint:
    """
    Last cursor proven durably archived for one folder.

    Attributes:
        folder: Remote folder name
        last_cursor: Highest cursor (IMAP UID) safe to resume after
        cursor_epoch: Validity token the cursor belongs to (IMAP UIDVALIDITY)
    """

    folder: str
    last_cursor: int
    cursor_epoch: int

    def __post_init__(self):
        if self.last_cursor < 0:
            raise ValueError("last_cursor must not be negative")

    def is_valid_for(self, cursor_epoch: int) -> bool:
        """Return True if this checkpoint was recorded under cursor_epoch."""
        return self.cursor_epoch == cursor_epoch
