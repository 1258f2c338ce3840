"""
Data models for storage layer.

Defines usage events, computed metrics and persisted cache entries.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..core.token_counter import TokenUsage


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one transcript line's token consumption.

    Created per transcript line and folded into running totals; never
    retained individually.
    """
    timestamp: datetime
    model: str
    usage: TokenUsage
    cost_usd: Optional[float] = None
    web_search_requests: int = 0
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def dedupe_key(self) -> Optional[str]:
        """Identity of the API response this line reports, if known.

        The request id is preferred; the message id stands in without one.
        """
        if self.request_id is not None:
            return f"R:{self.request_id}"
        if self.message_id is not None:
            return f"M:{self.message_id}"
        return None


@dataclass(frozen=True)
class SessionMetrics:
    """Token totals and USD cost for one session identifier."""
    session_id: str
    tokens: TokenUsage
    cost: float
    event_count: int
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    today_cost: float = 0.0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "tokens": self.tokens.to_dict(),
            "cost": self.cost,
            "today_cost": self.today_cost,
            "event_count": self.event_count,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }


@dataclass(frozen=True)
class WindowMetrics:
    """Aggregate over the rolling 5-hour billing window.

    The boundary is derived on every run and never persisted.
    """
    start: datetime
    end: datetime
    cost: float
    tokens: TokenUsage
    tokens_per_minute: float
    cost_per_hour: float
    remaining_minutes: float
    utilization_percent: Optional[float] = None
    provider_anchored: bool = False
    anchor_source: str = "transcript"

    def __post_init__(self):
        """Validate time window is logical."""
        if self.start > self.end:
            raise ValueError("window start must be before window end")

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "cost": self.cost,
            "tokens": self.tokens.to_dict(),
            "tokens_per_minute": self.tokens_per_minute,
            "cost_per_hour": self.cost_per_hour,
            "remaining_minutes": self.remaining_minutes,
            "utilization_percent": self.utilization_percent,
            "provider_anchored": self.provider_anchored,
            "anchor_source": self.anchor_source,
        }


@dataclass(frozen=True)
class AggregateResult:
    """Everything one pass over a usage event sequence produces."""
    session: SessionMetrics
    window: WindowMetrics
    day_tokens: TokenUsage
    day_cost: float


@dataclass(frozen=True)
class DailyContribution:
    """One transcript file's share of today's cost.

    Persisted keyed by path; valid only while the file's mtime and the
    calendar day are unchanged.
    """
    path: str
    mtime_ns: int
    day: str
    cost: float
    tokens: int
    entry_count: int


@dataclass(frozen=True)
class DailyAggregate:
    """Cost across all sessions' transcripts for the current calendar day."""
    day: str
    total_cost: float
    sessions_count: int
    files_count: int

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "total_cost": self.total_cost,
            "sessions_count": self.sessions_count,
            "files_count": self.files_count,
        }
