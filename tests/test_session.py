"""Tests for conversation session management."""

import asyncio

import pytest

from querykeeper.config import Settings
from querykeeper.models import UserUsageRecord
from querykeeper.provider import ImagePart, MockAssistantProvider, RemoteProviderError, TextPart
from querykeeper.session import OutcomeKind, SessionManager, strip_mentions
from querykeeper.storage import InMemoryStorage, StorageError


def _settings(**overrides):
    fields = dict(max_queries_limit=4, poll_interval=0.001, run_timeout=5.0)
    fields.update(overrides)
    return Settings(**fields)


def _manager(provider=None, store=None, **settings):
    store = store if store is not None else InMemoryStorage()
    provider = provider if provider is not None else MockAssistantProvider(answer="Hold the button for 15 seconds.")
    return SessionManager(store, provider, _settings(**settings)), store, provider


class BrokenStorage(InMemoryStorage):
    def get(self, user_id):
        raise StorageError("database is locked")


class TestValidation:

    @pytest.mark.asyncio
    async def test_short_message_rejected_without_side_effects(self):
        manager, store, provider = _manager()

        outcome = await manager.submit("user_1", "hi")

        assert outcome.kind == OutcomeKind.REJECTED
        assert "minimum length of 4" in outcome.reason
        assert provider.calls == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_mentions_do_not_count_towards_length(self):
        manager, _, provider = _manager()

        outcome = await manager.submit("user_1", "<@123456> <@!98765> hi")

        assert outcome.kind == OutcomeKind.REJECTED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_minimum_length_is_inclusive(self):
        manager, _, _ = _manager()
        outcome = await manager.submit("user_1", "why?")
        assert outcome.kind == OutcomeKind.ANSWER

    def test_strip_mentions(self):
        assert strip_mentions("<@123> how do I pair <@!45>") == "how do I pair"


class TestThreadAffinity:

    @pytest.mark.asyncio
    async def test_new_user_gets_thread_committed(self):
        manager, store, provider = _manager()

        outcome = await manager.submit("user_1", "How do I pair my case?")

        assert outcome.kind == OutcomeKind.ANSWER
        assert outcome.text == "Hold the button for 15 seconds."
        record = store.get("user_1")
        assert record.thread_id in provider.conversations
        assert provider.call_count("create_conversation") == 1

    @pytest.mark.asyncio
    async def test_existing_thread_is_reused(self):
        manager, store, provider = _manager()

        await manager.submit("user_1", "First question here")
        thread_id = store.get("user_1").thread_id
        await manager.submit("user_1", "Second question here")

        assert store.get("user_1").thread_id == thread_id
        assert provider.call_count("create_conversation") == 1
        assert provider.call_count("get_conversation") == 1

    @pytest.mark.asyncio
    async def test_invalid_thread_is_replaced_before_message(self):
        """A stale handle is replaced and committed before the message is appended."""
        store = InMemoryStorage()
        store.commit(UserUsageRecord("user_1", total_queries=2, queries_remaining=2,
                                     expiration=123, thread_id="abc"))
        seen = {}

        class CheckingProvider(MockAssistantProvider):
            async def append_message(self, handle, parts):
                seen["thread_at_append"] = store.get("user_1").thread_id
                await super().append_message(handle, parts)

        provider = CheckingProvider(handles=["xyz"])
        provider.invalid_handles.add("abc")
        manager, _, _ = _manager(provider=provider, store=store)

        outcome = await manager.submit("user_1", "Is my thread still there?")

        assert outcome.kind == OutcomeKind.ANSWER
        assert seen["thread_at_append"] == "xyz"
        record = store.get("user_1")
        assert record.thread_id == "xyz"
        assert record.total_queries == 2
        assert record.queries_remaining == 2
        assert record.expiration == 123

    @pytest.mark.asyncio
    async def test_image_is_sent_as_separate_part(self):
        manager, store, provider = _manager()

        await manager.submit("user_1", "What is in this picture?", image_url="https://cdn.example.com/a.png")

        history = provider.conversations[store.get("user_1").thread_id]
        user_message = history[-1]
        assert user_message.parts == [
            TextPart("What is in this picture?"),
            ImagePart("https://cdn.example.com/a.png"),
        ]

    @pytest.mark.asyncio
    async def test_answer_is_normalized(self):
        provider = MockAssistantProvider(answer="See [https://a.com](https://a.com)【4:0†source】 now")
        manager, _, _ = _manager(provider=provider)

        outcome = await manager.submit("user_1", "Where is the manual?")

        assert outcome.text == "See <https://a.com> now"


class TestBusy:

    @pytest.mark.asyncio
    async def test_concurrent_submits_collapse_to_busy(self):
        provider = MockAssistantProvider(status_delay=0.02)
        manager, _, _ = _manager(provider=provider)

        first, second = await asyncio.gather(
            manager.submit("user_1", "First question here"),
            manager.submit("user_1", "Second question here"),
        )

        kinds = sorted([first.kind, second.kind], key=lambda k: k.value)
        assert kinds == [OutcomeKind.ANSWER, OutcomeKind.BUSY]
        assert provider.call_count("start_run") == 1
        assert not manager.is_busy("user_1")

    @pytest.mark.asyncio
    async def test_different_users_run_in_parallel(self):
        provider = MockAssistantProvider(status_delay=0.01)
        manager, _, _ = _manager(provider=provider)

        a, b = await asyncio.gather(
            manager.submit("user_a", "First question here"),
            manager.submit("user_b", "Second question here"),
        )

        assert a.kind == OutcomeKind.ANSWER
        assert b.kind == OutcomeKind.ANSWER
        assert provider.call_count("start_run") == 2

    @pytest.mark.asyncio
    async def test_active_remote_run_reports_busy(self):
        store = InMemoryStorage()
        provider = MockAssistantProvider()
        handle = await provider.create_conversation()
        await provider.start_run(handle)
        store.commit(UserUsageRecord("user_1", total_queries=1, queries_remaining=3, thread_id=handle))
        manager, _, _ = _manager(provider=provider, store=store)

        outcome = await manager.submit("user_1", "Are you still there?")

        assert outcome.kind == OutcomeKind.BUSY
        assert provider.call_count("append_message") == 0
        assert provider.call_count("start_run") == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_failed_run_reports_status_and_code(self):
        provider = MockAssistantProvider(statuses=["queued", "failed"], last_error_code="rate_limit_exceeded")
        manager, _, _ = _manager(provider=provider)

        outcome = await manager.submit("user_1", "Will this work?")

        assert outcome.kind == OutcomeKind.FAILURE
        assert isinstance(outcome.error, RemoteProviderError)
        assert outcome.error.status == "failed"
        assert outcome.error.code == "rate_limit_exceeded"
        assert not manager.is_busy("user_1")

    @pytest.mark.asyncio
    async def test_unrecognized_status_is_failure(self):
        provider = MockAssistantProvider(statuses=["queued", "requires_action"])
        manager, _, _ = _manager(provider=provider)

        outcome = await manager.submit("user_1", "Will this work?")

        assert outcome.kind == OutcomeKind.FAILURE
        assert outcome.error.status == "requires_action"

    @pytest.mark.asyncio
    async def test_poll_timeout_cancels_run(self):
        provider = MockAssistantProvider(statuses=["queued", "in_progress"])
        manager, _, _ = _manager(provider=provider, run_timeout=0.02, poll_interval=0.005)

        outcome = await manager.submit("user_1", "This will take forever")

        assert outcome.kind == OutcomeKind.FAILURE
        assert "timed out" in str(outcome.error)
        assert provider.cancelled == ["run_2"]
        assert not manager.is_busy("user_1")

    @pytest.mark.asyncio
    async def test_provider_exception_is_contained(self):
        provider = MockAssistantProvider()
        provider.fail_on.add("start_run")
        manager, _, _ = _manager(provider=provider)

        outcome = await manager.submit("user_1", "Will this work?")

        assert outcome.kind == OutcomeKind.FAILURE
        assert not manager.is_busy("user_1")

        provider.fail_on.clear()
        retry = await manager.submit("user_1", "Will this work now?")
        assert retry.kind == OutcomeKind.ANSWER

    @pytest.mark.asyncio
    async def test_create_conversation_failure(self):
        provider = MockAssistantProvider()
        provider.fail_on.add("create_conversation")
        manager, store, _ = _manager(provider=provider)

        outcome = await manager.submit("user_1", "Will this work?")

        assert outcome.kind == OutcomeKind.FAILURE
        assert store.get("user_1") is None

    @pytest.mark.asyncio
    async def test_storage_error_is_failure(self):
        manager, _, provider = _manager(store=BrokenStorage())

        outcome = await manager.submit("user_1", "Will this work?")

        assert outcome.kind == OutcomeKind.FAILURE
        assert isinstance(outcome.error, StorageError)
        assert provider.calls == []
        assert not manager.is_busy("user_1")

    @pytest.mark.asyncio
    async def test_missing_assistant_reply_is_failure(self):
        class SilentProvider(MockAssistantProvider):
            def _reply(self, handle):
                pass

        manager, _, _ = _manager(provider=SilentProvider())

        outcome = await manager.submit("user_1", "Anyone home?")

        assert outcome.kind == OutcomeKind.FAILURE
        assert "No assistant reply" in str(outcome.error)
