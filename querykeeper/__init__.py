"""
querykeeper - Quota and conversation core for assistant chat bots.

Usage:
    from querykeeper import RequestOrchestrator, SQLiteStorage, OpenAIAssistantProvider, Settings

    settings = Settings.from_env()
    orchestrator = RequestOrchestrator.build(
        SQLiteStorage(settings.db_path),
        OpenAIAssistantProvider(settings.assistant_id),
        settings,
    )

    reply = await orchestrator.handle("1234", "How do I pair my earbuds?")
    # str, list[str] of labelled pages, BusyNotice or ErrorNotice

Staff overrides:
    from querykeeper import UsageAdmin

    admin = UsageAdmin(store, settings, locks=orchestrator.engine.locks)
    await admin.set_whitelisted("1234", True)
    stats = await admin.stats(top_n=10)
"""

from querykeeper.admin import AdminActionError, UsageAdmin
from querykeeper.config import Settings
from querykeeper.entitlement import Decision, DecisionKind, EntitlementEngine
from querykeeper.formatting import ChunkLimitError, chunk, normalize, strip_page_label
from querykeeper.locks import UserLocks
from querykeeper.logs import configure_logging
from querykeeper.models import UsageStats, UsageSummary, UserUsageRecord
from querykeeper.orchestrator import (
    BusyNotice,
    DenialText,
    ErrorNotice,
    RejectionText,
    RequestOrchestrator,
)
from querykeeper.provider import (
    AssistantProvider,
    ImagePart,
    MockAssistantProvider,
    OpenAIAssistantProvider,
    RemoteProviderError,
    RunState,
    RunStatus,
    TextPart,
)
from querykeeper.session import Outcome, OutcomeKind, SessionManager
from querykeeper.storage import InMemoryStorage, RecordStore, SQLiteStorage, StorageError

__version__ = "1.0.0"
__all__ = [
    # Orchestration
    "RequestOrchestrator",
    "BusyNotice",
    "ErrorNotice",
    "DenialText",
    "RejectionText",
    "Settings",
    "configure_logging",
    # Quota
    "EntitlementEngine",
    "Decision",
    "DecisionKind",
    "UsageAdmin",
    "AdminActionError",
    "UserLocks",
    # Storage
    "UserUsageRecord",
    "UsageSummary",
    "UsageStats",
    "RecordStore",
    "InMemoryStorage",
    "SQLiteStorage",
    "StorageError",
    # Sessions
    "SessionManager",
    "Outcome",
    "OutcomeKind",
    "AssistantProvider",
    "OpenAIAssistantProvider",
    "MockAssistantProvider",
    "RemoteProviderError",
    "RunState",
    "RunStatus",
    "TextPart",
    "ImagePart",
    # Formatting
    "chunk",
    "normalize",
    "strip_page_label",
    "ChunkLimitError",
]
