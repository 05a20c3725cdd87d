"""
Basic usage examples for querykeeper.

Runs against the mock assistant, so no API key is needed.
"""

import asyncio

from querykeeper import (
    BusyNotice,
    ErrorNotice,
    InMemoryStorage,
    MockAssistantProvider,
    RequestOrchestrator,
    Settings,
    UsageAdmin,
)


def _show(result):
    if isinstance(result, (BusyNotice, ErrorNotice)):
        print(f"  [{type(result).__name__}] {result.message}")
    elif isinstance(result, list):
        for page in result:
            print(f"  {page[:60]}... ({len(page)} chars)")
    else:
        print(f"  {result}")


async def example_quota():
    """A user runs out of queries."""
    print("=" * 60)
    print("Example 1: Quota")
    print("=" * 60)

    settings = Settings(max_queries_limit=2, poll_interval=0.01)
    orchestrator = RequestOrchestrator.build(
        InMemoryStorage(),
        MockAssistantProvider(answer=lambda q: f"You asked: {q}"),
        settings,
    )

    for query in ["How do I pair?", "How do I reset?", "How do I charge?"]:
        _show(await orchestrator.handle("user_1", query))
    print()


async def example_long_answer():
    """Long answers come back as labelled pages."""
    print("=" * 60)
    print("Example 2: Paged answers")
    print("=" * 60)

    orchestrator = RequestOrchestrator.build(
        InMemoryStorage(),
        MockAssistantProvider(answer="Step. " * 800),
        Settings(poll_interval=0.01),
    )
    _show(await orchestrator.handle("user_1", "Explain every step"))
    print()


async def example_staff():
    """Staff overrides and stats."""
    print("=" * 60)
    print("Example 3: Staff overrides")
    print("=" * 60)

    store = InMemoryStorage()
    settings = Settings(max_queries_limit=1, poll_interval=0.01)
    orchestrator = RequestOrchestrator.build(store, MockAssistantProvider(), settings)
    admin = UsageAdmin(store, settings, locks=orchestrator.engine.locks)

    await admin.set_whitelisted("vip", True)
    for _ in range(3):
        await orchestrator.handle("vip", "Unlimited questions")
    await admin.set_blacklisted("spammer", True)
    _show(await orchestrator.handle("spammer", "Let me in please"))

    stats = await admin.stats()
    print(f"  Total queries: {stats.total_queries_sum}, top: {stats.top_users}")
    print()


if __name__ == "__main__":
    asyncio.run(example_quota())
    asyncio.run(example_long_answer())
    asyncio.run(example_staff())
