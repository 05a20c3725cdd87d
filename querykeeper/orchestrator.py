"""
Request orchestration for querykeeper.

One call per user query: check entitlement, run the query on the user's
conversation, and shape the answer for a chat platform.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from querykeeper.config import Settings
from querykeeper.entitlement import EntitlementEngine
from querykeeper.formatting import ChunkLimitError, chunk
from querykeeper.locks import UserLocks
from querykeeper.provider import AssistantProvider
from querykeeper.session import OutcomeKind, SessionManager
from querykeeper.storage import RecordStore, StorageError

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = (
    "An error occurred, please report this to a member of our moderation team."
)
BUSY_MESSAGE = (
    "I'm still working on your previous question. "
    "Please wait for that answer before asking another."
)


@dataclass
class BusyNotice:
    """The user already has a query running."""
    message: str = BUSY_MESSAGE


class DenialText(str):
    """Entitlement denial message. Plain text to adapters that only send it."""


class RejectionText(str):
    """Validation rejection message for a query that was never submitted."""


@dataclass
class ErrorNotice:
    """A provider or storage failure. `detail` is for staff, not the user."""
    error: Exception
    message: str = GENERIC_ERROR_MESSAGE

    @property
    def detail(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


HandleResult = Union[str, list[str], BusyNotice, ErrorNotice]


class RequestOrchestrator:
    """
    Single entry point for platform adapters.

    Holds no state of its own; the store, locks and in-flight markers live
    in the engine and session manager it is built from.
    """

    def __init__(
        self,
        engine: EntitlementEngine,
        sessions: SessionManager,
        settings: Optional[Settings] = None,
    ):
        self.engine = engine
        self.sessions = sessions
        self.settings = settings or engine.settings

    @classmethod
    def build(
        cls,
        store: RecordStore,
        provider: AssistantProvider,
        settings: Optional[Settings] = None,
        locks: Optional[UserLocks] = None,
    ) -> "RequestOrchestrator":
        """Wire an engine and session manager that share one set of user locks."""
        settings = settings or Settings()
        locks = locks if locks is not None else UserLocks()
        engine = EntitlementEngine(store, settings, locks=locks)
        sessions = SessionManager(store, provider, settings, locks=locks)
        return cls(engine, sessions, settings)

    async def handle(
        self,
        user_id: str,
        text: str,
        image_url: Optional[str] = None,
    ) -> HandleResult:
        """
        Handle one user query.

        Returns:
            The answer text, a list of labelled pages for long answers, a
            DenialText or RejectionText, a BusyNotice, or an ErrorNotice.
        """
        try:
            decision = await self.engine.evaluate(user_id)
        except StorageError as exc:
            logger.exception("Entitlement check failed for %s", user_id)
            return ErrorNotice(exc)

        if not decision.allowed:
            return DenialText(decision.message)

        outcome = await self.sessions.submit(user_id, text, image_url)

        if outcome.kind == OutcomeKind.BUSY:
            return BusyNotice()
        if outcome.kind == OutcomeKind.REJECTED:
            return RejectionText(outcome.reason)
        if outcome.kind == OutcomeKind.FAILURE:
            return ErrorNotice(outcome.error)

        answer = outcome.text
        if len(answer) >= self.settings.chunk_threshold:
            try:
                return chunk(answer, self.settings.chunk_threshold, self.settings.max_pages)
            except ChunkLimitError as exc:
                logger.warning("Answer for %s too long: %s", user_id, exc)
                return ErrorNotice(exc)
        return answer
