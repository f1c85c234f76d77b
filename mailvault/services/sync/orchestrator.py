"""
Folder synchronization with checkpoint safety.

The persisted checkpoint of a folder never moves past a message that was not
durably archived. Messages after a failure are still downloaded (they are
deduplicated cheaply next time), but the checkpoint stays frozen just below
the first failed cursor for the rest of the folder run.
"""

import threading
import time
from datetime import date
from typing import Optional

import structlog

from ...models.results import BatchResult, FolderSyncResult, StoreOutcome, StoreResult, SyncReport
from ...storage.archive_writer import ArchiveWriter
from ...storage.database import DedupIndex
from ...storage.errors import RecoveryError
from ...telemetry.stats import SyncStats
from ...utils.unicode_utils import truncate_subject
from .mailbox_source import (
    MailboxAuthenticationError,
    MailboxSource,
    MessageSummary,
    SyncCancelledError,
)

log = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 50


class FolderSyncOrchestrator:
    """
    Pulls new messages folder by folder into the archive.

    Example:
        orchestrator = FolderSyncOrchestrator(source, index, writer)
        report = orchestrator.sync_all(["INBOX", "Sent"])
        print(report.stored, report.failed)
    """

    def __init__(
        self,
        source: MailboxSource,
        index: DedupIndex,
        writer: ArchiveWriter,
        batch_size: int = DEFAULT_BATCH_SIZE,
        stats: Optional[SyncStats] = None,
        cancel_event: Optional[threading.Event] = None,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ):
        """
        Args:
            source: Mailbox to read (normally a ResilientMailboxSource)
            index: Open dedup index
            writer: Archive writer sharing the same index
            batch_size: Cursors per batch; the checkpoint is persisted per batch
            stats: Stats collector
            cancel_event: Checked between batches and between messages
            since: Only messages on or after this date
            before: Only messages before this date
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.source = source
        self.index = index
        self.writer = writer
        self.batch_size = batch_size
        self.stats = stats or SyncStats()
        self.cancel_event = cancel_event or threading.Event()
        self.since = since
        self.before = before

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def sync_all(self, folders: Optional[list[str]] = None) -> SyncReport:
        """
        Sync the given folders, or every folder the source lists.

        Folders are processed one at a time. Cancellation stops after the
        folder that observed it.

        Raises:
            MailboxAuthenticationError: If the server rejects the credentials
            RecoveryError: If the index cannot be rebuilt
        """
        report = SyncReport()
        if folders is None:
            try:
                folders = self.source.list_folders()
            except SyncCancelledError:
                log.warning("sync_cancelled")
                return report

        log.info("sync_started", folders=len(folders))
        for folder in folders:
            if self.cancelled:
                break
            result = self.sync_folder(folder)
            report.folders.append(result)
            if result.cancelled:
                break

        log.info(
            "sync_finished",
            folders=len(report.folders),
            stored=report.stored,
            duplicates=report.duplicates,
            failed=report.failed,
            cancelled=report.cancelled or self.cancelled,
        )
        return report

    def sync_folder(self, folder: str) -> FolderSyncResult:
        """
        Archive every message after the folder's checkpoint.

        Returns:
            FolderSyncResult with the final persisted checkpoint
        """
        folder_log = log.bind(folder=folder)
        result = FolderSyncResult(folder=folder, cursor_epoch=0, start_cursor=0, checkpoint=0)

        try:
            epoch = self.source.get_cursor_epoch(folder)
            result.cursor_epoch = epoch

            stored = self.index.get_checkpoint(folder)
            if stored is not None and stored.is_valid_for(epoch):
                result.start_cursor = result.checkpoint = stored.last_cursor
            elif stored is not None:
                folder_log.warning(
                    "checkpoint_reset",
                    stored_epoch=stored.cursor_epoch,
                    current_epoch=epoch,
                    stored_cursor=stored.last_cursor,
                )
                self.stats.increment("sync.checkpoint_resets")
                self.index.set_checkpoint(folder, 0, epoch)

            cursors = self.source.get_folder_cursor_range(
                folder, result.start_cursor, self.since, self.before
            )
            folder_log.info("folder_sync_started", start_cursor=result.start_cursor, pending=len(cursors))

            failure_seen = False
            for offset in range(0, len(cursors), self.batch_size):
                if self.cancelled:
                    result.cancelled = True
                    break

                batch = self._process_batch(
                    folder, cursors[offset:offset + self.batch_size], result.checkpoint, failure_seen
                )
                result.stored += batch.stored
                result.duplicates += batch.duplicates
                result.failed_cursors.extend(batch.failed_cursors)
                failure_seen = failure_seen or bool(batch.failed_cursors)

                if batch.safe_checkpoint > result.checkpoint:
                    self.index.set_checkpoint(folder, batch.safe_checkpoint, epoch)
                    result.checkpoint = batch.safe_checkpoint

                if batch.cancelled:
                    result.cancelled = True
                    break
        except SyncCancelledError:
            result.cancelled = True

        if result.failed_cursors:
            folder_log.warning("folder_sync_failures", failed_cursors=result.failed_cursors)
        if result.cancelled:
            folder_log.warning("folder_sync_cancelled", checkpoint=result.checkpoint)

        self.stats.increment("sync.folders")
        folder_log.info(
            "folder_sync_finished",
            checkpoint=result.checkpoint,
            stored=result.stored,
            duplicates=result.duplicates,
            failed=len(result.failed_cursors),
        )
        return result

    def _process_batch(
        self,
        folder: str,
        cursors: list[int],
        prior_checkpoint: int,
        failure_seen: bool = False,
    ) -> BatchResult:
        """
        Archive one batch of ascending cursors.

        Args:
            folder: Folder name
            cursors: Ascending cursors, all greater than prior_checkpoint
            prior_checkpoint: Checkpoint persisted before this batch
            failure_seen: An earlier batch of this folder run already failed

        Returns:
            BatchResult whose safe_checkpoint never passes a failed cursor
        """
        started = time.perf_counter()
        batch = BatchResult(safe_checkpoint=prior_checkpoint)
        summaries = {s.cursor: s for s in self.source.fetch_summaries(folder, cursors)}

        for cursor in cursors:
            if self.cancelled:
                batch.cancelled = True
                break

            summary = summaries.get(cursor)
            if summary is None:
                # Expunged between SEARCH and FETCH; nothing left to archive
                log.info("message_vanished", folder=folder, cursor=cursor)
                if not failure_seen:
                    batch.safe_checkpoint = cursor
                continue

            try:
                outcome = self._archive_message(folder, cursor, summary)
            except (MailboxAuthenticationError, RecoveryError):
                raise
            except SyncCancelledError:
                batch.cancelled = True
                break
            except Exception as e:
                outcome = None
                log.error(
                    "message_sync_failed",
                    folder=folder,
                    cursor=cursor,
                    subject=truncate_subject(summary.subject),
                    error=f"{type(e).__name__}: {e}",
                )

            if outcome is not None and outcome.accounted_for:
                if outcome.outcome is StoreOutcome.STORED:
                    batch.stored += 1
                    self.stats.increment("sync.messages_stored")
                elif outcome.outcome is StoreOutcome.DUPLICATE:
                    batch.duplicates += 1
                    self.stats.increment("sync.duplicates")
                if not failure_seen:
                    batch.safe_checkpoint = cursor
                continue

            batch.failed_cursors.append(cursor)
            self.stats.increment("sync.failures")
            if not failure_seen:
                batch.safe_checkpoint = min(batch.safe_checkpoint, cursor - 1)
                failure_seen = True

        self.stats.observe("sync.batch_latency_ms", (time.perf_counter() - started) * 1000)
        log.debug(
            "batch_finished",
            folder=folder,
            first_cursor=cursors[0] if cursors else None,
            last_cursor=cursors[-1] if cursors else None,
            safe_checkpoint=batch.safe_checkpoint,
            failed=len(batch.failed_cursors),
        )
        return batch

    def _archive_message(self, folder: str, cursor: int, summary: MessageSummary) -> StoreResult:
        if summary.identity and self.index.exists(summary.identity):
            return StoreResult(StoreOutcome.DUPLICATE, summary.identity)

        stream = self.source.open_message_stream(folder, cursor)
        try:
            return self.writer.store(stream, summary.identity, summary.internal_date, folder)
        finally:
            stream.close()
