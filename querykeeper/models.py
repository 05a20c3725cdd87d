"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple


@dataclass
class UserUsageRecord:
    """Persisted query usage for a single user."""
    user_id: str
    total_queries: int = 0
    queries_remaining: int = 0
    expiration: Optional[int] = None  # ms since epoch; None means no active window
    whitelisted: bool = False
    blacklisted: bool = False
    thread_id: str = ""

    def with_thread(self, thread_id: str) -> "UserUsageRecord":
        return replace(self, thread_id=thread_id)


@dataclass
class UsageSummary:
    """Read-only view of a user's usage, as shown to staff and the user."""
    user_id: str
    total_queries: int
    queries_used: int
    limit: int
    reset_at: Optional[int]
    whitelisted: bool
    blacklisted: bool

    @property
    def used_display(self) -> str:
        return f"{self.queries_used}/{self.limit}"


@dataclass
class UsageStats:
    """Aggregate usage across every stored user."""
    total_queries_sum: int = 0
    user_count: int = 0
    top_users: List[Tuple[str, int]] = field(default_factory=list)
