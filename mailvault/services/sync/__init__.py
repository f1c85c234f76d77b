"""Mailbox synchronization: sources, resilience and the folder orchestrator."""

from .imap_source import ImapMailboxSource
from .mailbox_source import (
    MailboxAuthenticationError,
    MailboxSource,
    MailboxSourceError,
    MessageSummary,
    SyncCancelledError,
)
from .orchestrator import DEFAULT_BATCH_SIZE, FolderSyncOrchestrator
from .resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ResilientMailboxSource,
    RetryPolicy,
)

__all__ = [
    "ImapMailboxSource",
    "MailboxAuthenticationError",
    "MailboxSource",
    "MailboxSourceError",
    "MessageSummary",
    "SyncCancelledError",
    "DEFAULT_BATCH_SIZE",
    "FolderSyncOrchestrator",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ResilientMailboxSource",
    "RetryPolicy",
]
