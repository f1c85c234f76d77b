"""Message record data model."""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MessageRecord:
    """
    Marks one message identity as durably archived.

    Attributes:
        identity: Normalized message identity (unique key)
        folder: Remote folder the message was archived from
        imported_at: When the record was created
    """

    identity: str
    folder: str
    imported_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        """Validate fields after initialization."""
        if not self.identity:
            raise ValueError("identity is required")
        if not self.folder:
            raise ValueError("folder is required")
