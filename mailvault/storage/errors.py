"""Storage layer exceptions."""


class StorageError(Exception):
    """Base exception for archive and index storage errors."""

    pass


class IndexCorruptedError(StorageError):
    """Raised when the dedup index fails an integrity check."""

    pass


class RecoveryError(StorageError):
    """Raised when the dedup index cannot be rebuilt from the archive."""

    pass
