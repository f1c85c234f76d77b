"""Atomic Maildir writes of downloaded messages and their sidecars."""

import hashlib
import os
import socket
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional
from uuid import uuid4

import structlog

from ..models.message_record import MessageRecord
from ..models.results import StoreOutcome, StoreResult
from ..models.sidecar import SIDECAR_SUFFIX, SidecarMetadata
from ..services.email_parser import HeaderParseError, HeaderParser, HeaderSummary
from ..telemetry.stats import SyncStats
from ..utils.path_utils import identity_for, sanitize_for_filename
from .database import DedupIndex

log = structlog.get_logger(__name__)

MAILDIR_SUBDIRS = ("cur", "new", "tmp")
MAX_FOLDER_NAME_LENGTH = 100
MAX_HOSTNAME_LENGTH = 20


def _as_utc(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class ArchiveWriter:
    """
    Streams one message into ``<archive_root>/<folder>/cur/`` with a sidecar.

    Bytes land in ``tmp/`` first and reach ``cur/`` through a single rename,
    so a file at its final name is always complete. The sidecar follows the
    same pattern, and the message record is inserted last. If anything fails
    before the record is committed, every file this call created is removed
    and the error propagates.
    """

    MAX_COLLISION_ATTEMPTS = 10
    CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        archive_root: Path,
        index: DedupIndex,
        hostname: Optional[str] = None,
        stats: Optional[SyncStats] = None,
        header_parser: Optional[HeaderParser] = None,
    ):
        """
        Args:
            archive_root: Root directory of the Maildir archive
            index: Open dedup index
            hostname: Host name encoded in file names (default: this machine)
            stats: Stats collector for write counters and latency
            header_parser: Parser for the header block of stored files
        """
        self.archive_root = archive_root
        self.index = index
        self.hostname = sanitize_for_filename(hostname or socket.gethostname(), MAX_HOSTNAME_LENGTH)
        self.stats = stats or SyncStats()
        self.header_parser = header_parser or HeaderParser()

    def folder_path(self, folder: str) -> Path:
        """Return the Maildir directory for a remote folder name."""
        return self.archive_root / sanitize_for_filename(folder, MAX_FOLDER_NAME_LENGTH)

    @staticmethod
    def generate_filename(internal_date: datetime, identity: str, hostname: str) -> str:
        """
        Build the Maildir file name for a message.

        Examples:
            >>> from datetime import datetime, timezone
            >>> ArchiveWriter.generate_filename(
            ...     datetime(2024, 1, 1, tzinfo=timezone.utc), "abc@example.com", "host")
            '1704067200.abc@example.com.host:2,S.eml'
        """
        return f"{int(internal_date.timestamp())}.{identity}.{hostname}:2,S.eml"

    def store(
        self,
        stream: BinaryIO,
        identity: Optional[str],
        internal_date: Optional[datetime],
        folder: str,
    ) -> StoreResult:
        """
        Archive one message.

        Args:
            stream: Binary stream of the raw RFC 5322 message
            identity: Normalized identity if the caller knows it, else None
            internal_date: Server-side arrival date
            folder: Remote folder name

        Returns:
            StoreResult (stored, duplicate, or collision exhaustion)

        Raises:
            OSError: If the archive cannot be written
            sqlite3.Error: If the record cannot be inserted
        """
        started = time.perf_counter()
        internal_date = _as_utc(internal_date)

        # Fast path: do not touch the stream for a known message
        if identity and self.index.exists(identity):
            self.stats.increment("storage.duplicates")
            return StoreResult(StoreOutcome.DUPLICATE, identity)

        folder_path = self.folder_path(folder)
        self._ensure_maildir(folder_path)

        temp_path = folder_path / "tmp" / f"{int(internal_date.timestamp())}.{uuid4().hex}.tmp"
        final_path: Optional[Path] = None
        sidecar_path: Optional[Path] = None
        committed = False

        try:
            bytes_written, content_hash = self._stream_to_file(stream, temp_path)
            headers = self._read_headers(temp_path)

            if not identity:
                identity = identity_for(headers.message_id, internal_date, content_hash)
                if self.index.exists(identity):
                    temp_path.unlink()
                    self.stats.increment("storage.duplicates")
                    log.debug("duplicate_after_header_parse", identity=identity, folder=folder)
                    return StoreResult(StoreOutcome.DUPLICATE, identity)

            metadata = SidecarMetadata(
                message_id=identity,
                subject=headers.subject,
                sender=headers.sender,
                to=headers.to,
                date=(headers.date or internal_date).astimezone(timezone.utc),
                folder=folder,
                has_attachments=headers.has_attachments,
            )

            final_path = self._move_into_cur(temp_path, folder_path, internal_date, identity)
            if final_path is None:
                temp_path.unlink()
                self.stats.increment("storage.collisions")
                log.warning(
                    "filename_collisions_exhausted",
                    identity=identity,
                    folder=folder,
                    attempts=self.MAX_COLLISION_ATTEMPTS,
                )
                return StoreResult(StoreOutcome.COLLISION, identity)

            sidecar_path = self._write_sidecar(final_path, metadata, folder_path / "tmp")
            self.index.insert_if_absent(MessageRecord(identity=identity, folder=folder))
            committed = True
        except BaseException as e:
            temp_path.unlink(missing_ok=True)
            if not committed:
                for path in (sidecar_path, final_path):
                    if path is not None:
                        path.unlink(missing_ok=True)
            log.error("store_failed", identity=identity, folder=folder, error=str(e))
            raise

        self.stats.increment("storage.files_written")
        self.stats.increment("storage.bytes_written", bytes_written)
        self.stats.observe("storage.write_latency_ms", (time.perf_counter() - started) * 1000)
        return StoreResult(StoreOutcome.STORED, identity, final_path)

    def _ensure_maildir(self, folder_path: Path) -> None:
        for subdir in MAILDIR_SUBDIRS:
            (folder_path / subdir).mkdir(parents=True, exist_ok=True)

    def _stream_to_file(self, stream: BinaryIO, temp_path: Path) -> tuple[int, str]:
        """
        Copy the stream to disk chunk by chunk and fsync it.

        Returns:
            (bytes written, SHA-256 hex digest of the content)
        """
        digest = hashlib.sha256()
        size = 0
        with open(temp_path, "xb") as f:
            while True:
                chunk = stream.read(self.CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
                f.write(chunk)
                size += len(chunk)
            f.flush()
            os.fsync(f.fileno())
        return size, digest.hexdigest()

    def _read_headers(self, temp_path: Path) -> HeaderSummary:
        try:
            return self.header_parser.parse_file(temp_path)
        except HeaderParseError as e:
            # Keep the message; it just gets an empty sidecar
            log.warning("header_parse_failed", path=str(temp_path), error=str(e))
            return HeaderSummary(
                message_id=None, subject=None, sender=None, to=None, date=None
            )

    def _move_into_cur(
        self, temp_path: Path, folder_path: Path, internal_date: datetime, identity: str
    ) -> Optional[Path]:
        """
        Rename the temp file to its final name, adding _N on collision.

        Returns:
            The final path, or None when every candidate name is taken
        """
        for attempt in range(self.MAX_COLLISION_ATTEMPTS + 1):
            candidate_id = identity if attempt == 0 else f"{identity}_{attempt}"
            candidate = folder_path / "cur" / self.generate_filename(
                internal_date, candidate_id, self.hostname
            )
            sidecar = candidate.with_name(candidate.name + SIDECAR_SUFFIX)
            if candidate.exists() or sidecar.exists():
                continue

            try:
                os.rename(temp_path, candidate)
            except FileExistsError:
                # Windows refuses to rename over an existing file
                continue
            return candidate

        return None

    def _write_sidecar(self, final_path: Path, metadata: SidecarMetadata, tmp_dir: Path) -> Path:
        """Write the sidecar in tmp/ and rename it next to the message."""
        sidecar_path = final_path.with_name(final_path.name + SIDECAR_SUFFIX)
        temp_sidecar = tmp_dir / f"{uuid4().hex}.meta.tmp"

        try:
            with open(temp_sidecar, "x", encoding="utf-8") as f:
                f.write(metadata.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_sidecar, sidecar_path)
        except BaseException:
            temp_sidecar.unlink(missing_ok=True)
            raise

        return sidecar_path
