"""
Remote assistant providers for querykeeper.

The session manager talks to a hosted assistant through the small async
interface defined here. Use OpenAIAssistantProvider in production and
MockAssistantProvider in tests or dry runs.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union


class RemoteProviderError(Exception):
    """Raised when the remote assistant fails or answers unexpectedly."""
    def __init__(self, message: str, status: Optional[str] = None, code: Optional[str] = None):
        self.status = status
        self.code = code
        super().__init__(message)


class RunState(str, Enum):
    """Lifecycle of a remote run."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"  # Any other terminal or unrecognized status


PENDING_STATES = (RunState.QUEUED, RunState.IN_PROGRESS)


@dataclass
class RunStatus:
    """Polled status of a run."""
    state: RunState
    raw_status: str
    last_error_code: Optional[str] = None

    @classmethod
    def from_raw(cls, status: str, last_error_code: Optional[str] = None) -> "RunStatus":
        try:
            state = RunState(status)
        except ValueError:
            state = RunState.FAILED
        return cls(state=state, raw_status=status, last_error_code=last_error_code)

    @property
    def pending(self) -> bool:
        return self.state in PENDING_STATES


@dataclass
class TextPart:
    text: str


@dataclass
class ImagePart:
    url: str


ContentPart = Union[TextPart, ImagePart]


@dataclass
class AssistantMessage:
    """A message in a remote conversation."""
    role: str
    parts: list[ContentPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))


class AssistantProvider(ABC):
    """Abstract base class for remote assistant backends."""

    @abstractmethod
    async def create_conversation(self) -> str:
        """Create a conversation and return its handle."""
        pass

    @abstractmethod
    async def get_conversation(self, handle: str) -> str:
        """Return handle if it is still valid. Raises RemoteProviderError otherwise."""
        pass

    @abstractmethod
    async def append_message(self, handle: str, parts: list[ContentPart]) -> None:
        pass

    @abstractmethod
    async def start_run(self, handle: str) -> str:
        """Start the assistant on the conversation and return the run id."""
        pass

    @abstractmethod
    async def get_run_status(self, handle: str, run_id: str) -> RunStatus:
        pass

    @abstractmethod
    async def list_messages(self, handle: str) -> list[AssistantMessage]:
        """Messages in the conversation, most recent first."""
        pass

    @abstractmethod
    async def has_active_run(self, handle: str) -> bool:
        """True if a queued or in-progress run exists on the conversation."""
        pass

    async def cancel_run(self, handle: str, run_id: str) -> None:
        """Cancel a run. Providers without cancellation may leave this as a no-op."""
        return None


class OpenAIAssistantProvider(AssistantProvider):
    """
    OpenAI Assistants API provider.

    Requires OPENAI_API_KEY and an assistant id.
    """

    def __init__(self, assistant_id: str, api_key: Optional[str] = None):
        self.assistant_id = assistant_id
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _call(self, operation: str, coro):
        from openai import OpenAIError
        try:
            return await coro
        except OpenAIError as exc:
            raise RemoteProviderError(f"{operation} failed: {exc}") from exc

    async def create_conversation(self) -> str:
        thread = await self._call("create thread", self.client.beta.threads.create())
        return thread.id

    async def get_conversation(self, handle: str) -> str:
        thread = await self._call("retrieve thread", self.client.beta.threads.retrieve(handle))
        return thread.id

    async def append_message(self, handle: str, parts: list[ContentPart]) -> None:
        content = []
        for part in parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            else:
                content.append({"type": "image_url", "image_url": {"url": part.url}})
        await self._call(
            "create message",
            self.client.beta.threads.messages.create(handle, role="user", content=content),
        )

    async def start_run(self, handle: str) -> str:
        run = await self._call(
            "create run",
            self.client.beta.threads.runs.create(handle, assistant_id=self.assistant_id),
        )
        return run.id

    async def get_run_status(self, handle: str, run_id: str) -> RunStatus:
        run = await self._call(
            "retrieve run",
            self.client.beta.threads.runs.retrieve(run_id, thread_id=handle),
        )
        code = run.last_error.code if run.last_error else None
        return RunStatus.from_raw(run.status, code)

    async def list_messages(self, handle: str) -> list[AssistantMessage]:
        page = await self._call(
            "list messages",
            self.client.beta.threads.messages.list(handle, order="desc", limit=10),
        )
        messages = []
        for message in page.data:
            parts: list[ContentPart] = []
            for block in message.content:
                if block.type == "text":
                    parts.append(TextPart(block.text.value))
                elif block.type == "image_url":
                    parts.append(ImagePart(block.image_url.url))
            messages.append(AssistantMessage(role=message.role, parts=parts))
        return messages

    async def has_active_run(self, handle: str) -> bool:
        page = await self._call(
            "list runs",
            self.client.beta.threads.runs.list(handle, order="desc", limit=5),
        )
        return any(RunStatus.from_raw(run.status).pending for run in page.data)

    async def cancel_run(self, handle: str, run_id: str) -> None:
        await self._call(
            "cancel run",
            self.client.beta.threads.runs.cancel(run_id, thread_id=handle),
        )


class MockAssistantProvider(AssistantProvider):
    """
    Mock provider for testing.

    Conversations live in memory. Each run walks through `statuses` (one
    entry per poll) and, on completion, appends `answer` as the assistant
    reply. `answer` may be a callable taking the last user text.
    """

    def __init__(
        self,
        answer: Union[str, Callable[[str], str]] = "Mock answer",
        statuses: Optional[list[str]] = None,
        status_delay: float = 0.0,
        handles: Optional[list[str]] = None,
        last_error_code: Optional[str] = None,
    ):
        self.answer = answer
        self.statuses = statuses or ["queued", "in_progress", "completed"]
        self.status_delay = status_delay
        self.last_error_code = last_error_code
        self.conversations: dict[str, list[AssistantMessage]] = {}
        self.invalid_handles: set[str] = set()
        self.fail_on: set[str] = set()
        self.calls: list[tuple[str, ...]] = []
        self.cancelled: list[str] = []
        self._handles = list(handles or [])
        self._runs: dict[str, dict] = {}
        self._counter = 0

    def _check(self, operation: str, *args: str) -> None:
        self.calls.append((operation, *args))
        if operation in self.fail_on:
            raise RemoteProviderError(f"{operation} failed (simulated)")

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def create_conversation(self) -> str:
        self._check("create_conversation")
        handle = self._handles.pop(0) if self._handles else self._next_id("thread")
        self.conversations[handle] = []
        return handle

    async def get_conversation(self, handle: str) -> str:
        self._check("get_conversation", handle)
        if handle in self.invalid_handles or handle not in self.conversations:
            raise RemoteProviderError(f"No thread found with id '{handle}'", status="404")
        return handle

    async def append_message(self, handle: str, parts: list[ContentPart]) -> None:
        self._check("append_message", handle)
        self.conversations[handle].insert(0, AssistantMessage(role="user", parts=list(parts)))

    async def start_run(self, handle: str) -> str:
        self._check("start_run", handle)
        run_id = self._next_id("run")
        self._runs[run_id] = {"handle": handle, "step": 0, "status": self.statuses[0]}
        return run_id

    async def get_run_status(self, handle: str, run_id: str) -> RunStatus:
        self._check("get_run_status", handle, run_id)
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        run = self._runs[run_id]
        run["step"] = min(run["step"] + 1, len(self.statuses) - 1)
        run["status"] = self.statuses[run["step"]]
        if run["status"] == "completed" and not run.get("answered"):
            run["answered"] = True
            self._reply(handle)
        code = self.last_error_code if run["status"] not in ("queued", "in_progress", "completed") else None
        return RunStatus.from_raw(run["status"], code)

    def _reply(self, handle: str) -> None:
        history = self.conversations[handle]
        last_user = next((m.text for m in history if m.role == "user"), "")
        text = self.answer(last_user) if callable(self.answer) else self.answer
        history.insert(0, AssistantMessage(role="assistant", parts=[TextPart(text)]))

    async def list_messages(self, handle: str) -> list[AssistantMessage]:
        self._check("list_messages", handle)
        return list(self.conversations.get(handle, []))

    async def has_active_run(self, handle: str) -> bool:
        self._check("has_active_run", handle)
        return any(
            run["handle"] == handle and run["status"] in ("queued", "in_progress")
            for run in self._runs.values()
        )

    async def cancel_run(self, handle: str, run_id: str) -> None:
        self._check("cancel_run", handle, run_id)
        self.cancelled.append(run_id)
        self._runs[run_id]["status"] = "cancelled"
