"""Tests for staff overrides and usage statistics."""

import pytest

from querykeeper.admin import AdminActionError, UsageAdmin
from querykeeper.config import Settings
from querykeeper.entitlement import DecisionKind, EntitlementEngine
from querykeeper.locks import UserLocks
from querykeeper.models import UserUsageRecord
from querykeeper.storage import InMemoryStorage

NOW = 1_700_000_000_000


def _admin(limit=4):
    store = InMemoryStorage()
    locks = UserLocks()
    settings = Settings(max_queries_limit=limit)
    return UsageAdmin(store, settings, locks=locks), EntitlementEngine(store, settings, locks=locks), store


class TestUsage:

    @pytest.mark.asyncio
    async def test_no_data(self):
        admin, _, _ = _admin()
        assert await admin.get_usage("user_1") is None

    @pytest.mark.asyncio
    async def test_summary_after_queries(self):
        admin, engine, _ = _admin(limit=4)
        await engine.evaluate("user_1", now=NOW)
        await engine.evaluate("user_1", now=NOW)

        summary = await admin.get_usage("user_1")

        assert summary.total_queries == 2
        assert summary.queries_used == 2
        assert summary.used_display == "2/4"
        assert summary.reset_at is not None

    @pytest.mark.asyncio
    async def test_whitelisted_summary_has_no_reset(self):
        admin, _, store = _admin()
        store.commit(UserUsageRecord("user_1", total_queries=50, queries_remaining=4, whitelisted=True))

        summary = await admin.get_usage("user_1")

        assert summary.whitelisted is True
        assert summary.queries_used == 0
        assert summary.reset_at is None


class TestReset:

    @pytest.mark.asyncio
    async def test_reset_restores_allowance(self):
        admin, engine, store = _admin(limit=2)
        await engine.evaluate("user_1", now=NOW)
        await engine.evaluate("user_1", now=NOW)
        assert (await engine.evaluate("user_1", now=NOW)).kind == DecisionKind.DENY_QUOTA_EXHAUSTED

        await admin.reset_usage("user_1")

        record = store.get("user_1")
        assert record.queries_remaining == 2
        assert record.expiration is None
        assert record.total_queries == 2
        assert (await engine.evaluate("user_1", now=NOW)).kind == DecisionKind.ALLOW

    @pytest.mark.asyncio
    async def test_reset_without_data(self):
        admin, _, _ = _admin()
        with pytest.raises(AdminActionError) as exc_info:
            await admin.reset_usage("user_1")
        assert "no usage data" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_reset_unused(self):
        admin, _, store = _admin(limit=4)
        store.commit(UserUsageRecord("user_1", total_queries=3, queries_remaining=4))
        with pytest.raises(AdminActionError):
            await admin.reset_usage("user_1")

    @pytest.mark.asyncio
    async def test_reset_overridden_user(self):
        admin, _, store = _admin()
        store.commit(UserUsageRecord("user_1", queries_remaining=0, blacklisted=True))
        with pytest.raises(AdminActionError) as exc_info:
            await admin.reset_usage("user_1")
        assert "blacklisted" in exc_info.value.reason


class TestLists:

    @pytest.mark.asyncio
    async def test_blacklist_unknown_user_creates_record(self):
        admin, engine, store = _admin()

        await admin.set_blacklisted("user_1", True)

        record = store.get("user_1")
        assert record.blacklisted is True
        assert record.total_queries == 0
        assert (await engine.evaluate("user_1", now=NOW)).kind == DecisionKind.DENY_BLACKLISTED

    @pytest.mark.asyncio
    async def test_blacklist_preserves_thread_and_clears_whitelist(self):
        admin, _, store = _admin()
        store.commit(UserUsageRecord("user_1", total_queries=5, queries_remaining=4,
                                     whitelisted=True, thread_id="thread_1"))

        await admin.set_blacklisted("user_1", True)

        record = store.get("user_1")
        assert record.whitelisted is False
        assert record.thread_id == "thread_1"
        assert record.total_queries == 5

    @pytest.mark.asyncio
    async def test_blacklist_twice_raises(self):
        admin, _, _ = _admin()
        await admin.set_blacklisted("user_1", True)
        with pytest.raises(AdminActionError):
            await admin.set_blacklisted("user_1", True)

    @pytest.mark.asyncio
    async def test_unblacklist(self):
        admin, engine, _ = _admin()
        await admin.set_blacklisted("user_1", True)
        await admin.set_blacklisted("user_1", False)

        assert (await engine.evaluate("user_1", now=NOW)).kind == DecisionKind.ALLOW
        with pytest.raises(AdminActionError):
            await admin.set_blacklisted("user_1", False)

    @pytest.mark.asyncio
    async def test_whitelist_toggle(self):
        admin, engine, store = _admin(limit=1)
        await admin.set_whitelisted("user_1", True)

        for _ in range(3):
            assert (await engine.evaluate("user_1", now=NOW)).kind == DecisionKind.ALLOW
        assert store.get("user_1").total_queries == 3

        await admin.set_whitelisted("user_1", False)
        assert store.get("user_1").whitelisted is False
        with pytest.raises(AdminActionError):
            await admin.set_whitelisted("user_1", False)


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_sum_and_top(self):
        admin, _, store = _admin()
        for i, total in enumerate([5, 40, 12, 0, 7]):
            store.commit(UserUsageRecord(f"user_{i}", total_queries=total, queries_remaining=4))

        stats = await admin.stats(top_n=3)

        assert stats.total_queries_sum == 64
        assert stats.user_count == 5
        assert stats.top_users == [("user_1", 40), ("user_2", 12), ("user_4", 7)]

    @pytest.mark.asyncio
    async def test_stats_empty(self):
        admin, _, _ = _admin()
        stats = await admin.stats()
        assert stats.total_queries_sum == 0
        assert stats.top_users == []
