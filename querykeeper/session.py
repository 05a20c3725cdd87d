"""
Conversation session management for querykeeper.

Maps each user to a durable remote conversation, repairs handles the remote
side no longer recognizes, and makes sure a user never has two runs going
at once.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from querykeeper.config import Settings
from querykeeper.formatting import normalize
from querykeeper.locks import UserLocks
from querykeeper.models import UserUsageRecord
from querykeeper.provider import (
    AssistantProvider,
    ContentPart,
    ImagePart,
    RemoteProviderError,
    RunState,
    TextPart,
)
from querykeeper.storage import RecordStore

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"<@!?\d+>")


class OutcomeKind(str, Enum):
    """Result categories for SessionManager.submit."""
    BUSY = "busy"
    ANSWER = "answer"
    REJECTED = "rejected"
    FAILURE = "failure"


@dataclass
class Outcome:
    """Result of submitting one message."""
    kind: OutcomeKind
    text: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @classmethod
    def busy(cls) -> "Outcome":
        return cls(OutcomeKind.BUSY)

    @classmethod
    def answer(cls, text: str) -> "Outcome":
        return cls(OutcomeKind.ANSWER, text=text)

    @classmethod
    def rejected(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.REJECTED, reason=reason)

    @classmethod
    def failure(cls, error: Exception) -> "Outcome":
        return cls(OutcomeKind.FAILURE, error=error)


def strip_mentions(text: str) -> str:
    return MENTION_PATTERN.sub("", text).strip()


class SessionManager:
    """
    Submits user messages to the remote assistant on the user's thread.

    Example:
        ```python
        manager = SessionManager(store, OpenAIAssistantProvider("asst_123"))
        outcome = await manager.submit("1234", "How do I reset my earbuds?")
        if outcome.kind == OutcomeKind.ANSWER:
            print(outcome.text)
        ```
    """

    def __init__(
        self,
        store: RecordStore,
        provider: AssistantProvider,
        settings: Optional[Settings] = None,
        locks: Optional[UserLocks] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings()
        self.locks = locks if locks is not None else UserLocks()
        self._in_flight: set[str] = set()

    def is_busy(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def validate(self, text: str) -> Optional[str]:
        """Return a rejection reason, or None if text is long enough."""
        query = strip_mentions(text)
        minimum = self.settings.min_query_length
        if len(query) < minimum:
            return (
                "Please enter a valid query, with a minimum length of "
                f"{minimum} characters."
            )
        return None

    async def submit(self, user_id: str, text: str, image_url: Optional[str] = None) -> Outcome:
        """
        Send one message to the user's conversation and wait for the answer.

        Never raises: provider and storage failures come back as FAILURE.
        """
        reason = self.validate(text)
        if reason:
            return Outcome.rejected(reason)

        # Check-and-mark happens before the first await
        if user_id in self._in_flight:
            logger.info("Request from %s collapsed: run already in flight", user_id)
            return Outcome.busy()
        self._in_flight.add(user_id)

        try:
            return await self._submit(user_id, strip_mentions(text), image_url)
        except Exception as exc:
            logger.exception("Assistant request failed for %s", user_id)
            return Outcome.failure(exc)
        finally:
            self._in_flight.discard(user_id)

    async def _submit(self, user_id: str, query: str, image_url: Optional[str]) -> Outcome:
        record = await asyncio.to_thread(self.store.get, user_id)
        stored = record.thread_id if record else ""

        handle = await self._resolve_handle(user_id, stored)
        if handle != stored:
            await self._commit_handle(user_id, handle)

        if await self.provider.has_active_run(handle):
            logger.info("Thread %s for %s already has an active run", handle, user_id)
            return Outcome.busy()

        parts: list[ContentPart] = [TextPart(query)]
        if image_url:
            parts.append(ImagePart(image_url))
        await self.provider.append_message(handle, parts)

        run_id = await self.provider.start_run(handle)
        logger.info("Queued query for %s on %s (run %s)", user_id, handle, run_id)
        await self._wait_for_run(handle, run_id)

        answer = await self._latest_answer(handle)
        logger.info("Completed query for %s", user_id)
        return Outcome.answer(normalize(answer, embed_links=self.settings.embed_links))

    async def _resolve_handle(self, user_id: str, stored: str) -> str:
        if stored:
            try:
                return await self.provider.get_conversation(stored)
            except RemoteProviderError as exc:
                logger.warning("Thread %s for %s is no longer valid (%s), recreating", stored, user_id, exc)
        return await self.provider.create_conversation()

    async def _commit_handle(self, user_id: str, handle: str) -> None:
        """Persist the new handle, preserving every other field of the record."""
        async with self.locks.hold(user_id):
            record = await asyncio.to_thread(self.store.get, user_id)
            if record is None:
                record = UserUsageRecord(
                    user_id=user_id,
                    queries_remaining=self.settings.max_queries_limit,
                )
            await asyncio.to_thread(self.store.commit, record.with_thread(handle))

    async def _wait_for_run(self, handle: str, run_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.run_timeout

        status = await self.provider.get_run_status(handle, run_id)
        while status.pending:
            logger.debug("Run %s status: %s", run_id, status.raw_status)
            if loop.time() >= deadline:
                try:
                    await self.provider.cancel_run(handle, run_id)
                except RemoteProviderError:
                    logger.warning("Could not cancel timed out run %s", run_id)
                raise RemoteProviderError(
                    f"Run {run_id} timed out after {self.settings.run_timeout:.0f}s",
                    status=status.raw_status,
                )
            await asyncio.sleep(self.settings.poll_interval)
            status = await self.provider.get_run_status(handle, run_id)

        if status.state != RunState.COMPLETED:
            raise RemoteProviderError(
                f"Run {run_id} ended with status '{status.raw_status}'"
                + (f" ({status.last_error_code})" if status.last_error_code else ""),
                status=status.raw_status,
                code=status.last_error_code,
            )

    async def _latest_answer(self, handle: str) -> str:
        messages = await self.provider.list_messages(handle)
        if not messages or messages[0].role != "assistant":
            raise RemoteProviderError(f"No assistant reply found on thread {handle}")
        text = messages[0].text
        if not text:
            raise RemoteProviderError(f"Assistant reply on thread {handle} has no text")
        return text
