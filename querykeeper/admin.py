"""Staff overrides and usage statistics."""

import asyncio
import heapq
import logging
from dataclasses import replace
from typing import Optional

from querykeeper.config import Settings
from querykeeper.locks import UserLocks
from querykeeper.models import UsageStats, UsageSummary, UserUsageRecord
from querykeeper.storage import RecordStore

logger = logging.getLogger(__name__)


class AdminActionError(Exception):
    """Raised when an override does not apply to the user's current state."""
    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Cannot update '{user_id}': {reason}")


class UsageAdmin:
    """
    Whitelist, blacklist and reset operations on usage records.

    Shares the per-user locks with the entitlement engine so an override
    never races a query being counted.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[Settings] = None,
        locks: Optional[UserLocks] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.locks = locks if locks is not None else UserLocks()

    def _blank(self, user_id: str) -> UserUsageRecord:
        return UserUsageRecord(
            user_id=user_id,
            total_queries=0,
            queries_remaining=self.settings.max_queries_limit,
        )

    async def get_usage(self, user_id: str) -> Optional[UsageSummary]:
        """Summarize a user's usage, or None if they never queried."""
        record = await asyncio.to_thread(self.store.get, user_id)
        if record is None:
            return None
        limit = self.settings.max_queries_limit
        used = max(0, limit - record.queries_remaining)
        reset_at = None
        if used and not record.whitelisted:
            reset_at = record.expiration
        return UsageSummary(
            user_id=user_id,
            total_queries=record.total_queries,
            queries_used=used,
            limit=limit,
            reset_at=reset_at,
            whitelisted=record.whitelisted,
            blacklisted=record.blacklisted,
        )

    async def reset_usage(self, user_id: str) -> UserUsageRecord:
        """Give a user their full allowance back."""
        async with self.locks.hold(user_id):
            record = await asyncio.to_thread(self.store.get, user_id)
            if record is None:
                raise AdminActionError(user_id, "no usage data to reset")
            if record.whitelisted:
                raise AdminActionError(user_id, "user is whitelisted")
            if record.blacklisted:
                raise AdminActionError(user_id, "user is blacklisted")
            if record.queries_remaining >= self.settings.max_queries_limit:
                raise AdminActionError(user_id, "user has not used any queries")

            updated = replace(
                record,
                queries_remaining=self.settings.max_queries_limit,
                expiration=None,
            )
            await asyncio.to_thread(self.store.commit, updated)
        logger.info("Reset usage for %s", user_id)
        return updated

    async def set_blacklisted(self, user_id: str, blacklisted: bool) -> UserUsageRecord:
        """Add a user to, or remove them from, the blacklist."""
        async with self.locks.hold(user_id):
            record = await asyncio.to_thread(self.store.get, user_id)
            if blacklisted:
                if record is not None and record.blacklisted:
                    raise AdminActionError(user_id, "user is already blacklisted")
                base = record or self._blank(user_id)
                updated = replace(
                    base,
                    queries_remaining=self.settings.max_queries_limit,
                    expiration=None,
                    whitelisted=False,
                    blacklisted=True,
                )
            else:
                if record is None or not record.blacklisted:
                    raise AdminActionError(user_id, "user is not blacklisted")
                updated = replace(
                    record,
                    queries_remaining=self.settings.max_queries_limit,
                    expiration=None,
                    blacklisted=False,
                )
            await asyncio.to_thread(self.store.commit, updated)
        logger.info("Blacklist for %s set to %s", user_id, blacklisted)
        return updated

    async def set_whitelisted(self, user_id: str, whitelisted: bool) -> UserUsageRecord:
        """Add a user to, or remove them from, the whitelist."""
        async with self.locks.hold(user_id):
            record = await asyncio.to_thread(self.store.get, user_id)
            if whitelisted:
                if record is not None and record.whitelisted:
                    raise AdminActionError(user_id, "user is already whitelisted")
                base = record or self._blank(user_id)
                updated = replace(
                    base,
                    queries_remaining=self.settings.max_queries_limit,
                    expiration=None,
                    whitelisted=True,
                    blacklisted=False,
                )
            else:
                if record is None or not record.whitelisted:
                    raise AdminActionError(user_id, "user is not whitelisted")
                updated = replace(
                    record,
                    queries_remaining=self.settings.max_queries_limit,
                    expiration=None,
                    whitelisted=False,
                )
            await asyncio.to_thread(self.store.commit, updated)
        logger.info("Whitelist for %s set to %s", user_id, whitelisted)
        return updated

    async def stats(self, top_n: int = 10) -> UsageStats:
        """Total queries across all users plus the top_n heaviest users."""
        return await asyncio.to_thread(self._collect_stats, top_n)

    def _collect_stats(self, top_n: int) -> UsageStats:
        stats = UsageStats()
        totals = []
        for record in self.store.iterate_all():
            stats.total_queries_sum += record.total_queries
            stats.user_count += 1
            totals.append((record.user_id, record.total_queries))
        stats.top_users = heapq.nlargest(top_n, totals, key=lambda item: item[1])
        return stats
