"""Configuration models for the mail archiver."""

from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class ImapConfig(BaseModel):
    """IMAP server connection settings."""

    server: str = ""
    port: int = 993
    username: str = ""
    password: str = ""
    use_ssl: bool = True
    timeout_seconds: float = 180.0

    @field_validator("port")
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("timeout_seconds")
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class ArchiveConfig(BaseModel):
    """Archive location settings."""

    output_path: str = "EmailArchive"
    index_filename: str = "index.v1.db"
    hostname: Optional[str] = None

    def get_output_path(self) -> Path:
        """Get expanded archive root."""
        return Path(self.output_path).expanduser()


class SyncConfig(BaseModel):
    """Which folders and messages to synchronize."""

    folders: list[str] = Field(default_factory=lambda: ["INBOX"])
    all_folders: bool = False
    batch_size: int = 50
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("batch_size")
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch_size must be positive")
        return v

    @field_validator("end_date")
    def validate_end_date(cls, v: Optional[date], info: ValidationInfo) -> Optional[date]:
        start = info.data.get("start_date")
        if v is not None and start is not None and v <= start:
            raise ValueError("end_date must be after start_date")
        return v


class ResilienceConfig(BaseModel):
    """Retry and circuit breaker settings for mailbox calls."""

    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    failure_threshold: int = 5
    reset_timeout_seconds: float = 120.0
    per_message_attempts: int = 3

    @field_validator("base_delay_seconds", "max_delay_seconds", "reset_timeout_seconds")
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delays must not be negative")
        return v

    @field_validator("failure_threshold", "per_message_attempts")
    def validate_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Counts must be positive")
        return v


class TelemetryConfig(BaseModel):
    """Stats export settings."""

    enabled: bool = True
    output_path: Optional[str] = None
    flush_interval_seconds: float = 30.0
    max_buffered_events: int = 10_000

    def get_output_path(self, archive_root: Path) -> Path:
        """Get expanded stats directory (defaults to <archive_root>/stats)."""
        if self.output_path:
            return Path(self.output_path).expanduser()
        return archive_root / "stats"

    @field_validator("flush_interval_seconds")
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("flush_interval_seconds must be positive")
        return v


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: str = "INFO"
    json_output: bool = False

    @field_validator("level")
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class AppConfig(BaseModel):
    """Main application configuration."""

    schema_version: str = "1.0"
    imap: ImapConfig = Field(default_factory=ImapConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("schema_version")
    def validate_schema_version(cls, v: str) -> str:
        if not v:
            raise ValueError("schema_version is required")
        return v
