"""
Per-identity monthly tool usage counters.

One document per caller and calendar month (``{caller_id}_{YYYYMM}``) in the
``userUsage`` collection. Counting only; quota enforcement is left to operators.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from loguru import logger

from .metadata_store import MetadataStore

USER_USAGE_COLLECTION = "userUsage"


@dataclass(frozen=True)
class UsageSnapshot:
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def to_dict(self) -> dict:
        return {"count": self.count, "limit": self.limit, "remaining": self.remaining}


class UsageTracker:
    def __init__(
        self,
        store: MetadataStore,
        monthly_limit: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.monthly_limit = monthly_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _doc_id(self, caller_id: str) -> tuple:
        year_month = self._clock().strftime("%Y%m")
        return f"{caller_id}_{year_month}", year_month

    async def increment(self, caller_id: str) -> UsageSnapshot:
        """Atomically count one tool call for ``caller_id`` in the current month"""
        doc_id, year_month = self._doc_id(caller_id)
        count = await self.store.increment(
            USER_USAGE_COLLECTION,
            doc_id,
            "count",
            defaults={"userId": caller_id, "yearMonth": year_month},
        )
        await self.store.update(
            USER_USAGE_COLLECTION, doc_id, {"updatedAt": self._clock().isoformat()}
        )
        snapshot = UsageSnapshot(count=count, limit=self.monthly_limit)
        if snapshot.remaining == 0:
            logger.info(f"User {caller_id} reached the monthly tool call limit ({self.monthly_limit})")
        return snapshot

    async def get(self, caller_id: str) -> UsageSnapshot:
        doc_id, _ = self._doc_id(caller_id)
        doc = await self.store.get(USER_USAGE_COLLECTION, doc_id)
        count = int((doc or {}).get("count", 0) or 0)
        return UsageSnapshot(count=count, limit=self.monthly_limit)
