"""
Entitlement engine for querykeeper.

Decides whether a user may submit another query and persists the updated
usage record. Blacklist beats whitelist; whitelisted users bypass the quota
but are still counted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from querykeeper.config import Settings
from querykeeper.formatting import format_relative
from querykeeper.locks import UserLocks
from querykeeper.models import UserUsageRecord
from querykeeper.storage import RecordStore

logger = logging.getLogger(__name__)

BLACKLISTED_MESSAGE = (
    "You are currently blacklisted from using this service. "
    "If you believe this is a mistake, please contact a member of staff."
)


def now_ms() -> int:
    return int(time.time() * 1000)


class DecisionKind(str, Enum):
    """Outcome of an entitlement check."""
    ALLOW = "allow"
    ALLOW_RESET = "allow_reset"  # Window had expired and was restarted
    DENY_BLACKLISTED = "deny_blacklisted"
    DENY_QUOTA_EXHAUSTED = "deny_quota_exhausted"


@dataclass
class Decision:
    """Result of EntitlementEngine.evaluate."""
    kind: DecisionKind
    record: UserUsageRecord
    reset_at: Optional[int] = None
    message: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.kind in (DecisionKind.ALLOW, DecisionKind.ALLOW_RESET)


def quota_exhausted_message(reset_at: int, now: int) -> str:
    return (
        "It looks like you've reached your query limit for now. "
        f"Don't worry, your queries will reset {format_relative(reset_at - now)}."
    )


class EntitlementEngine:
    """
    Quota engine over persisted UserUsageRecords.

    The read-decide-write sequence for a user runs under that user's lock,
    so concurrent requests from one user cannot lose updates.

    Example:
        ```python
        engine = EntitlementEngine(SQLiteStorage("usage.db"), Settings())
        decision = await engine.evaluate("1234")
        if not decision.allowed:
            return decision.message
        ```
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[Settings] = None,
        locks: Optional[UserLocks] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.locks = locks if locks is not None else UserLocks()
        self._clock = clock or now_ms

    async def evaluate(self, user_id: str, now: Optional[int] = None) -> Decision:
        """
        Check and consume one query for user_id.

        Args:
            user_id: The user making the request.
            now: Current time in ms since epoch. Defaults to the clock.

        Returns:
            The Decision. Allowed decisions have already been persisted.

        Raises:
            StorageError: If the record store fails.
        """
        async with self.locks.hold(user_id):
            if now is None:
                now = self._clock()
            record = await asyncio.to_thread(self.store.get, user_id)
            decision = self._decide(user_id, record, now)
            if decision.allowed:
                await asyncio.to_thread(self.store.commit, decision.record)
                logger.debug(
                    "Query %s for %s (%d remaining)",
                    decision.kind.value, user_id, decision.record.queries_remaining,
                )
            else:
                logger.info("Query denied for %s: %s", user_id, decision.kind.value)
            return decision

    def _decide(self, user_id: str, record: Optional[UserUsageRecord], now: int) -> Decision:
        limit = self.settings.max_queries_limit
        window = self.settings.query_window_ms

        if record is None:
            fresh = UserUsageRecord(
                user_id=user_id,
                total_queries=1,
                queries_remaining=limit - 1,
                expiration=now + window,
            )
            return Decision(DecisionKind.ALLOW, fresh)

        if record.blacklisted:
            return Decision(DecisionKind.DENY_BLACKLISTED, record, message=BLACKLISTED_MESSAGE)

        if record.whitelisted:
            updated = replace(
                record,
                total_queries=record.total_queries + 1,
                queries_remaining=limit,
                expiration=None,
            )
            return Decision(DecisionKind.ALLOW, updated)

        if record.queries_remaining <= 0:
            # An unset expiration means there is no window left to wait out
            if record.expiration is None or now > record.expiration:
                updated = replace(
                    record,
                    total_queries=record.total_queries + 1,
                    queries_remaining=limit - 1,
                    expiration=now + window,
                )
                return Decision(DecisionKind.ALLOW_RESET, updated)
            return Decision(
                DecisionKind.DENY_QUOTA_EXHAUSTED,
                record,
                reset_at=record.expiration,
                message=quota_exhausted_message(record.expiration, now),
            )

        updated = replace(
            record,
            total_queries=record.total_queries + 1,
            queries_remaining=min(record.queries_remaining, limit) - 1,
            expiration=record.expiration if record.expiration is not None else now + window,
        )
        return Decision(DecisionKind.ALLOW, updated)
