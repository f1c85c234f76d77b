"""Main CLI entry point for mailvault."""

import argparse
import signal
import sys
import threading
from datetime import date
from pathlib import Path
from typing import Optional

import structlog

from mailvault.config.app_config import AppConfig
from mailvault.config.config_loader import ConfigError, ConfigLoader
from mailvault.models.results import SyncReport
from mailvault.services.sync.imap_source import ImapMailboxSource
from mailvault.services.sync.mailbox_source import (
    MailboxAuthenticationError,
    MailboxSource,
    SyncCancelledError,
)
from mailvault.services.sync.orchestrator import FolderSyncOrchestrator
from mailvault.services.sync.resilience import CircuitBreaker, ResilientMailboxSource, RetryPolicy
from mailvault.storage.archive_writer import ArchiveWriter
from mailvault.storage.database import DatabaseConnection, DedupIndex
from mailvault.storage.errors import RecoveryError, StorageError
from mailvault.telemetry.stats import PeriodicFlusher, StatsWriter, SyncStats
from mailvault.utils.log import configure_logging

log = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AUTH_FAILED = 2
EXIT_CANCELLED = 130


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"Must be positive, got {value}")
    return number


def load_config(args: argparse.Namespace) -> AppConfig:
    """
    Load the config file and apply command-line overrides.

    Raises:
        ConfigError: If the file or the resulting settings are invalid
    """
    config = ConfigLoader(args.config).load_app_config()

    overrides = {
        "server": ("imap", "server"),
        "port": ("imap", "port"),
        "username": ("imap", "username"),
        "password": ("imap", "password"),
        "output": ("archive", "output_path"),
        "start_date": ("sync", "start_date"),
        "end_date": ("sync", "end_date"),
        "batch_size": ("sync", "batch_size"),
    }
    for arg_name, (section, field) in overrides.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            setattr(getattr(config, section), field, str(value) if arg_name == "output" else value)

    if getattr(args, "folder", None):
        config.sync.folders = list(args.folder)
    if getattr(args, "all_folders", False):
        config.sync.all_folders = True
    if getattr(args, "verbose", False):
        config.logging.level = "DEBUG"
    if getattr(args, "json_logs", False):
        config.logging.json_output = True

    if config.sync.start_date and config.sync.end_date and config.sync.end_date <= config.sync.start_date:
        raise ConfigError("--end-date must be after --start-date")
    return config


def create_source(config: AppConfig) -> MailboxSource:
    """Build the IMAP source for the configured account."""
    if not config.imap.server or not config.imap.username:
        raise ConfigError("IMAP server and username are required (--server, --username)")
    if not config.imap.password:
        raise ConfigError("IMAP password is required (--password or MAILVAULT_PASSWORD)")

    return ImapMailboxSource(
        host=config.imap.server,
        username=config.imap.username,
        password=config.imap.password,
        port=config.imap.port,
        use_ssl=config.imap.use_ssl,
        timeout=config.imap.timeout_seconds,
    )


def run_sync(
    config: AppConfig,
    source: MailboxSource,
    cancel_event: threading.Event,
    stats: Optional[SyncStats] = None,
) -> SyncReport:
    """
    Wire the engine together and synchronize.

    Args:
        config: Effective configuration
        source: Raw mailbox source (wrapped with retry here)
        cancel_event: Set to stop after the current message
        stats: Stats collector shared by every component

    Returns:
        SyncReport for the run
    """
    stats = stats or SyncStats()
    archive_root = config.archive.get_output_path()

    policy = RetryPolicy(
        base_delay=config.resilience.base_delay_seconds,
        max_delay=config.resilience.max_delay_seconds,
        breaker=CircuitBreaker(
            failure_threshold=config.resilience.failure_threshold,
            reset_timeout=config.resilience.reset_timeout_seconds,
            stats=stats,
        ),
        cancel_event=cancel_event,
        stats=stats,
    )
    resilient = ResilientMailboxSource(
        source, policy, per_message_attempts=config.resilience.per_message_attempts
    )

    flusher = None
    if config.telemetry.enabled:
        writer = StatsWriter(
            config.telemetry.get_output_path(archive_root),
            max_buffered_events=config.telemetry.max_buffered_events,
        )
        flusher = PeriodicFlusher(writer, interval=config.telemetry.flush_interval_seconds, stats=stats)
        flusher.start()

    try:
        with DedupIndex(archive_root, config.archive.index_filename, stats=stats) as index:
            archive_writer = ArchiveWriter(
                archive_root, index, hostname=config.archive.hostname, stats=stats
            )
            orchestrator = FolderSyncOrchestrator(
                resilient,
                index,
                archive_writer,
                batch_size=config.sync.batch_size,
                stats=stats,
                cancel_event=cancel_event,
                since=config.sync.start_date,
                before=config.sync.end_date,
            )

            resilient.connect()
            try:
                folders = None if config.sync.all_folders else config.sync.folders
                return orchestrator.sync_all(folders)
            finally:
                resilient.close()
    finally:
        if flusher is not None:
            flusher.stop()


def cmd_sync(args: argparse.Namespace) -> int:
    """Synchronize the mailbox into the archive."""
    config = load_config(args)
    configure_logging(config.logging.level, config.logging.json_output)
    source = create_source(config)

    cancel_event = threading.Event()

    def _on_sigint(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        log.warning("cancellation_requested")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    try:
        report = run_sync(config, source, cancel_event)
    except MailboxAuthenticationError as e:
        log.error("authentication_failed", error=str(e))
        print(f"Authentication failed: {e}", file=sys.stderr)
        return EXIT_AUTH_FAILED
    except SyncCancelledError:
        log.warning("sync_cancelled")
        return EXIT_CANCELLED
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print(
        f"Synced {len(report.folders)} folder(s): {report.stored} stored, "
        f"{report.duplicates} duplicates, {report.failed} failed"
    )
    for folder in report.folders:
        if folder.failed_cursors:
            print(f"  {folder.folder}: retry next run for {len(folder.failed_cursors)} message(s)")

    if report.cancelled or cancel_event.is_set():
        return EXIT_CANCELLED
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    """Show per-folder checkpoints and archived message counts."""
    config = load_config(args)
    configure_logging(config.logging.level, config.logging.json_output)
    archive_root = config.archive.get_output_path()

    with DedupIndex(archive_root, config.archive.index_filename) as index:
        checkpoints = index.checkpoints()
        counts = index.count_by_folder()
        total = index.count()

    print(f"Archive: {archive_root}")
    print(f"Messages: {total}")
    folders = sorted(set(counts) | {c.folder for c in checkpoints})
    by_folder = {c.folder: c for c in checkpoints}
    for folder in folders:
        checkpoint = by_folder.get(folder)
        cursor = f"cursor {checkpoint.last_cursor} (epoch {checkpoint.cursor_epoch})" if checkpoint else "no checkpoint"
        print(f"  {folder}: {counts.get(folder, 0)} messages, {cursor}")
    return EXIT_OK


def cmd_rebuild_index(args: argparse.Namespace) -> int:
    """Quarantine the index and rebuild it from the sidecar files."""
    config = load_config(args)
    configure_logging(config.logging.level, config.logging.json_output)
    archive_root = config.archive.get_output_path()

    index = DedupIndex(archive_root, config.archive.index_filename)
    try:
        report = index.recover()
    finally:
        index.close()

    print(
        f"Index rebuilt: {report.restored} records restored from {report.scanned} sidecars "
        f"({report.skipped} skipped)"
    )
    if report.quarantined_path:
        print(f"Previous index preserved at: {report.quarantined_path}")
    return EXIT_OK


def cmd_init_db(args: argparse.Namespace) -> int:
    """Initialize database command."""
    config = load_config(args)
    archive_root = config.archive.get_output_path()
    archive_root.mkdir(parents=True, exist_ok=True)

    db_path = archive_root / config.archive.index_filename
    db = DatabaseConnection(db_path)
    try:
        db.execute_schema()
    finally:
        db.close()

    print(f"Database initialized at: {db_path}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="mailvault - incremental IMAP archiver")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, help="Custom config file path")
    common.add_argument("-o", "--output", type=Path, help="Archive root directory")
    common.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    common.add_argument("--json-logs", action="store_true", help="Log JSON lines to stderr")

    sync_parser = subparsers.add_parser("sync", parents=[common], help="Download new messages")
    sync_parser.add_argument("-s", "--server", help="IMAP server host")
    sync_parser.add_argument("-r", "--port", type=int, help="IMAP server port")
    sync_parser.add_argument("-u", "--username", help="Account user name")
    sync_parser.add_argument("-p", "--password", help="Account password")
    sync_parser.add_argument("--start-date", type=_iso_date, help="Only messages on or after YYYY-MM-DD")
    sync_parser.add_argument("--end-date", type=_iso_date, help="Only messages before YYYY-MM-DD")
    sync_parser.add_argument("--all-folders", action="store_true", help="Sync every selectable folder")
    sync_parser.add_argument(
        "--folder", action="append", help="Folder to sync (repeatable, default INBOX)"
    )
    sync_parser.add_argument("--batch-size", type=_positive_int, help="Messages per checkpoint batch")

    subparsers.add_parser("status", parents=[common], help="Show checkpoints and counts")
    subparsers.add_parser("rebuild-index", parents=[common], help="Rebuild the index from sidecars")
    subparsers.add_parser("init-db", parents=[common], help="Initialize database")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "sync": cmd_sync,
        "status": cmd_status,
        "rebuild-index": cmd_rebuild_index,
        "init-db": cmd_init_db,
    }
    if args.command is None:
        parser.print_help()
        return EXIT_ERROR

    try:
        return commands[args.command](args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except (RecoveryError, StorageError) as e:
        log.error("storage_failed", error=str(e))
        print(f"Storage error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
