"""Rolling 24-hour per-user delete quota."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from dbx_mcp.errors import ErrorKind, RateLimitError
from dbx_mcp.safety.models import DeleteRecord

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeleteRateLimiter:
    """Counts accepted deletes per user over the last 24 hours.

    Records live only in process memory and are pruned whenever the quota is
    checked.
    """

    def __init__(
        self,
        max_deletes_per_day: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_deletes_per_day = max_deletes_per_day
        self._clock = clock
        self._records: list[DeleteRecord] = []

    @property
    def records(self) -> list[DeleteRecord]:
        return list(self._records)

    def _prune(self) -> None:
        cutoff = self._clock() - WINDOW
        self._records = [r for r in self._records if r.timestamp > cutoff]

    def count(self, user_id: str) -> int:
        """Deletes by ``user_id`` inside the current window."""
        self._prune()
        return sum(1 for r in self._records if r.user_id == user_id)

    def check(self, user_id: str) -> None:
        """Raise if the user has exhausted the daily quota.

        Raises:
            RateLimitError: When the count has reached max_deletes_per_day.
        """
        if self.count(user_id) >= self.max_deletes_per_day:
            logger.warning(f"Delete rate limit exceeded for user {user_id}")
            raise RateLimitError(
                f"Delete rate limit exceeded for user {user_id}",
                kind=ErrorKind.DELETE_RATE_LIMIT,
                retryable=True,
            )

    def record(self, path: str, user_id: str) -> DeleteRecord:
        """Append an accepted delete to the window."""
        entry = DeleteRecord(timestamp=self._clock(), path=path, user_id=user_id)
        self._records.append(entry)
        return entry
