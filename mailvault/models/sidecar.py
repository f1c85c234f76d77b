"""Sidecar metadata stored beside every archived message."""

from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

SIDECAR_SUFFIX = ".meta.json"


class SidecarMetadata(BaseModel):
    """
    Structured fields extracted from a message's headers.

    Serialized as ``<message file>.meta.json``. Together with the message file
    this is the ground truth the dedup index is rebuilt from.
    """

    model_config = ConfigDict(populate_by_name=True)

    message_id: str
    subject: Optional[str] = None
    sender: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    date: datetime
    folder: str
    archived_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    has_attachments: bool = False

    @field_validator("message_id", "folder")
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    def to_json(self) -> str:
        """Serialize using the on-disk field names."""
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "SidecarMetadata":
        """
        Parse a sidecar file's contents.

        Raises:
            pydantic.ValidationError: If the JSON is malformed or incomplete
        """
        return cls.model_validate_json(data)
