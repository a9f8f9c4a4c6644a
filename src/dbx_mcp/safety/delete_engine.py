"""Confirmation-gated, rate-limited deletion with a recycle bin.

A delete request goes through four gates in order: path policy, the
per-user daily quota, a metadata lookup and the confirmation step. Only a
call with ``skip_confirmation=True`` reaches the provider's move/delete
endpoints. Soft deletes move the item to
``{recycle_bin_path}/{version_id}_{basename}``; purging it after the
retention window is left to an external sweeper.
"""

import asyncio
import logging
import secrets
import string
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Protocol

from dbx_mcp.config import AuditLog
from dbx_mcp.errors import DbxMcpError, ErrorKind, ProviderError
from dbx_mcp.safety.models import (
    DeleteOperation,
    DeleteOutcome,
    DeleteStatus,
    VersionMetadata,
)
from dbx_mcp.safety.path_policy import PathPolicy, format_dropbox_path
from dbx_mcp.safety.rate_limit import DeleteRateLimiter

if TYPE_CHECKING:
    from dbx_mcp.config import SafetySettings

logger = logging.getLogger(__name__)

LEGACY_USER_ID = "legacy_user"
_VERSION_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class StorageClient(Protocol):
    """The provider calls the deletion engine needs."""

    async def get_metadata(self, path: str) -> dict[str, Any]: ...

    async def delete(self, path: str) -> dict[str, Any]: ...

    async def move(self, from_path: str, to_path: str, autorename: bool = False) -> dict[str, Any]: ...

    async def create_folder(self, path: str, autorename: bool = False) -> dict[str, Any]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_version_id(now: datetime) -> str:
    """Build a version id: ``v{epoch ms}_{9 random base36 chars}``."""
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_VERSION_SUFFIX_ALPHABET) for _ in range(9))
    return f"v{millis}_{suffix}"


def _is_folder_conflict(error: ProviderError) -> bool:
    return (error.error_summary or "").startswith("path/conflict")


class SafeDeleteEngine:
    """Applies the deletion guard rails in front of a storage client.

    Calls are serialized with an asyncio.Lock so two concurrent deletes for
    the same user cannot both pass the quota check.

    Attributes:
        client: Provider client.
        policy: Allow/block list checks.
        limiter: Per-user rolling quota.
        audit: Audit sink.
        recycle_bin_path: Destination folder for soft deletes.
        retention_days: Default retention for soft-deleted items.
    """

    def __init__(
        self,
        client: StorageClient,
        policy: PathPolicy,
        limiter: DeleteRateLimiter,
        audit: AuditLog,
        recycle_bin_path: str = "/.recycle_bin",
        retention_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.client = client
        self.policy = policy
        self.limiter = limiter
        self.audit = audit
        self.recycle_bin_path = format_dropbox_path(recycle_bin_path)
        self.retention_days = retention_days
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: "SafetySettings",
        client: StorageClient,
        audit: AuditLog,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "SafeDeleteEngine":
        return cls(
            client=client,
            policy=PathPolicy(settings.allowed_paths, settings.blocked_paths),
            limiter=DeleteRateLimiter(settings.max_deletes_per_day, clock=clock),
            audit=audit,
            recycle_bin_path=settings.recycle_bin_path,
            retention_days=settings.retention_days,
            clock=clock,
        )

    async def safe_delete(
        self,
        path: str,
        user_id: str,
        skip_confirmation: bool = False,
        retention_days: int | None = None,
        reason: str = "",
        permanent: bool = False,
    ) -> DeleteOutcome:
        """Delete a file or folder under the configured guard rails.

        Args:
            path: Path to delete.
            user_id: Caller identity for quota and audit.
            skip_confirmation: Execute instead of returning confirmation_required.
            retention_days: Override the default retention for soft deletes.
            reason: Free-text reason recorded in the audit trail.
            permanent: Hard-delete instead of moving to the recycle bin.

        Raises:
            PathPolicyError: If the path is blocked or not allowed.
            RateLimitError: If the user's daily quota is used up.
            ProviderError: If a Dropbox call fails.
        """
        operation = (
            DeleteOperation.PERMANENT_DELETE if permanent else DeleteOperation.SOFT_DELETE
        )
        async with self._lock:
            try:
                return await self._safe_delete(
                    path, user_id, skip_confirmation, retention_days, reason, permanent
                )
            except DbxMcpError as e:
                self.audit.error(
                    "Deletion error",
                    path=path,
                    userId=user_id,
                    operation=operation.value,
                    error=e.message,
                    kind=e.kind.value,
                )
                raise
            except Exception as e:
                self.audit.error(
                    "Deletion error",
                    path=path,
                    userId=user_id,
                    operation=operation.value,
                    error=str(e),
                    kind="internal_error",
                )
                raise

    async def _safe_delete(
        self,
        path: str,
        user_id: str,
        skip_confirmation: bool,
        retention_days: int | None,
        reason: str,
        permanent: bool,
    ) -> DeleteOutcome:
        normalized = self.policy.check(path)
        self.limiter.check(user_id)

        if retention_days is None:
            retention_days = self.retention_days
        if retention_days < 0:
            raise DbxMcpError(
                f"retention_days must be zero or positive, got {retention_days}",
                kind=ErrorKind.INVALID_ARGUMENT,
            )

        metadata = await self.client.get_metadata(normalized)

        if not skip_confirmation:
            self.audit.info(
                "Delete confirmation required",
                path=normalized,
                userId=user_id,
                operation="delete_confirmation",
                metadata=metadata,
            )
            return DeleteOutcome(
                status=DeleteStatus.CONFIRMATION_REQUIRED,
                message="Please confirm deletion",
                path=normalized,
                metadata=metadata,
            )

        if permanent:
            return await self._permanent_delete(normalized, user_id, reason, metadata)
        return await self._soft_delete(normalized, user_id, reason, metadata, retention_days)

    async def _permanent_delete(
        self, path: str, user_id: str, reason: str, metadata: dict[str, Any]
    ) -> DeleteOutcome:
        await self.client.delete(path)
        self.limiter.record(path, user_id)
        self.audit.info(
            "Permanent deletion",
            path=path,
            userId=user_id,
            operation=DeleteOperation.PERMANENT_DELETE.value,
            reason=reason,
            metadata=metadata,
        )
        logger.info(f"Permanently deleted {path}")
        return DeleteOutcome(
            status=DeleteStatus.SUCCESS,
            operation=DeleteOperation.PERMANENT_DELETE,
            path=path,
        )

    async def _soft_delete(
        self,
        path: str,
        user_id: str,
        reason: str,
        metadata: dict[str, Any],
        retention_days: int,
    ) -> DeleteOutcome:
        now = self._clock()
        version_id = generate_version_id(now)
        basename = path.rsplit("/", 1)[-1]
        recycle_path = f"{self.recycle_bin_path}/{version_id}_{basename}"

        await self._ensure_recycle_bin()
        await self.client.move(path, recycle_path, autorename=True)

        version = VersionMetadata(
            id=version_id,
            original_path=path,
            deleted_at=now,
            expires_at=now + timedelta(days=retention_days),
            user_id=user_id,
            reason=reason,
            metadata=metadata,
        )
        self.limiter.record(path, user_id)
        self.audit.info(
            "Soft deletion",
            path=path,
            userId=user_id,
            operation=DeleteOperation.SOFT_DELETE.value,
            versionMetadata=version.to_audit_fields(),
            recyclePath=recycle_path,
        )
        logger.info(f"Moved {path} to {recycle_path}")
        return DeleteOutcome(
            status=DeleteStatus.SUCCESS,
            operation=DeleteOperation.SOFT_DELETE,
            path=path,
            version_id=version_id,
            original_path=path,
            recycle_path=recycle_path,
            deleted_at=version.deleted_at,
            expires_at=version.expires_at,
        )

    async def _ensure_recycle_bin(self) -> None:
        try:
            await self.client.create_folder(self.recycle_bin_path)
        except ProviderError as e:
            if not _is_folder_conflict(e):
                raise
            logger.debug(f"Recycle bin {self.recycle_bin_path} already exists")

    async def delete_item(self, path: str) -> DeleteOutcome:
        """Deprecated single-argument delete.

        Bypasses the confirmation gate and always hard-deletes.
        """
        return await self.safe_delete(
            path,
            user_id=LEGACY_USER_ID,
            skip_confirmation=True,
            permanent=True,
        )
