"""Data models for the safe-delete subsystem."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def isoformat_utc(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


class DeleteStatus(str, Enum):
    """Outcome of a safe-delete call."""

    CONFIRMATION_REQUIRED = "confirmation_required"
    SUCCESS = "success"


class DeleteOperation(str, Enum):
    """Which kind of deletion was executed."""

    SOFT_DELETE = "soft_delete"
    PERMANENT_DELETE = "permanent_delete"


class DeleteRecord(BaseModel):
    """One accepted delete, kept in memory for the rolling quota window."""

    timestamp: datetime
    path: str
    user_id: str


class VersionMetadata(BaseModel):
    """Describes an item moved to the recycle bin.

    Written to the audit log at soft-delete time; the item itself lives at
    ``{recycle_bin_path}/{id}_{basename}`` until a retention sweeper purges it.
    """

    id: str
    original_path: str = Field(..., alias="originalPath")
    deleted_at: datetime = Field(..., alias="deletedAt")
    expires_at: datetime = Field(..., alias="expiresAt")
    user_id: str = Field(..., alias="userId")
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    def to_audit_fields(self) -> dict[str, Any]:
        """Serialize with camelCase keys and ISO timestamps for the audit log."""
        return {
            "id": self.id,
            "originalPath": self.original_path,
            "deletedAt": isoformat_utc(self.deleted_at),
            "expiresAt": isoformat_utc(self.expires_at),
            "userId": self.user_id,
            "reason": self.reason,
            "metadata": self.metadata,
        }


class DeleteOutcome(BaseModel):
    """Result of ``SafeDeleteEngine.safe_delete``.

    Only the fields relevant to the status/operation pair are set; the rest
    stay None and are omitted from ``to_dict``.
    """

    status: DeleteStatus
    operation: DeleteOperation | None = None
    path: str
    message: str | None = None
    metadata: dict[str, Any] | None = None
    version_id: str | None = Field(default=None, alias="versionId")
    original_path: str | None = Field(default=None, alias="originalPath")
    recycle_path: str | None = Field(default=None, alias="recyclePath")
    deleted_at: datetime | None = Field(default=None, alias="deletedAt")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    model_config = {"populate_by_name": True}

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        for key, value in (("deletedAt", self.deleted_at), ("expiresAt", self.expires_at)):
            if value is not None:
                data[key] = isoformat_utc(value)
        return data
