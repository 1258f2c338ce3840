"""
Usage aggregation over session, window and day horizons.

Folds usage events into running totals in a single pass and derives burn
rate, cost per hour and the 5-hour window boundary.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

from ..storage.models import (
    AggregateResult,
    DailyAggregate,
    DailyContribution,
    SessionMetrics,
    UsageEvent,
    WindowMetrics,
)
from .pricing import PRICING_TABLE, PricingTable, calculate_cost, web_search_cost
from .token_counter import TokenUsage
from .transcripts import TranscriptReader

if TYPE_CHECKING:
    from ..storage.repository import PersistentCache

logger = logging.getLogger(__name__)

WINDOW_DURATION = timedelta(hours=5)
MIN_ELAPSED = timedelta(minutes=1)

ANCHOR_PROVIDER = "provider"
ANCHOR_LOG = "log"
ANCHOR_TRANSCRIPT = "transcript"


def local_day(ts: datetime) -> date:
    """Calendar date of a timestamp in the local timezone."""
    return ts.astimezone().date()


def event_cost(event: UsageEvent, pricing: Optional[PricingTable] = None) -> float:
    """USD cost of one event.

    A literal cost recorded in the transcript is used as-is; otherwise the
    tokens are priced and web searches are charged the flat per-request rate.
    """
    if event.cost_usd is not None:
        return event.cost_usd
    pricing = pricing or PRICING_TABLE
    return calculate_cost(event.model, event.usage, pricing) + web_search_cost(
        event.web_search_requests, pricing
    )


def normalize_reset_time(dt: datetime) -> datetime:
    """Round a provider reset time to the nearest whole hour."""
    if dt.minute == 0 and dt.second == 0 and dt.microsecond == 0:
        return dt
    floored = dt.replace(minute=0, second=0, microsecond=0)
    if dt.minute >= 30:
        return floored + timedelta(hours=1)
    return floored


def window_anchor(resets_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    """Window start implied by a reset time from the provider or the logs.

    Only a reset strictly in the future and at most one window away is
    trusted; anything else is stale and the next anchor source is used.
    """
    if resets_at is None:
        return None
    if not (now < resets_at <= now + WINDOW_DURATION):
        logger.debug(f"Ignoring reset time {resets_at.isoformat()}")
        return None
    return resets_at - WINDOW_DURATION


class UsageAggregator:
    """Single-pass fold of usage events into session, window and day totals.

    Only running totals are kept, so memory stays constant no matter how
    many events are folded.
    """

    def __init__(
        self,
        session_id: str,
        pricing: Optional[PricingTable] = None,
        now: Optional[datetime] = None,
        anchor_start: Optional[datetime] = None,
        anchor_source: str = ANCHOR_PROVIDER,
    ):
        self.session_id = session_id
        self.pricing = pricing or PRICING_TABLE
        self.now = now or datetime.now(timezone.utc)
        self.anchor_start = anchor_start
        self.anchor_source = anchor_source if anchor_start is not None else ANCHOR_TRANSCRIPT
        self.today = local_day(self.now)
        self._lower_bound = anchor_start if anchor_start is not None else self.now - WINDOW_DURATION

        self._session_tokens = TokenUsage()
        self._session_cost = 0.0
        self._session_today_cost = 0.0
        self._session_count = 0
        self._session_first: Optional[datetime] = None
        self._session_last: Optional[datetime] = None

        self._window_tokens = TokenUsage()
        self._window_cost = 0.0
        self._window_first: Optional[datetime] = None

        self._day_tokens = TokenUsage()
        self._day_cost = 0.0

    def add(self, event: UsageEvent) -> None:
        cost = event_cost(event, self.pricing)
        ts = event.timestamp

        if event.session_id == self.session_id:
            self._session_tokens += event.usage
            self._session_cost += cost
            self._session_count += 1
            if self._session_first is None or ts < self._session_first:
                self._session_first = ts
            if self._session_last is None or ts > self._session_last:
                self._session_last = ts

        if self._lower_bound <= ts <= self.now:
            self._window_tokens += event.usage
            self._window_cost += cost
            if self._window_first is None or ts < self._window_first:
                self._window_first = ts

        if local_day(ts) == self.today:
            self._day_tokens += event.usage
            self._day_cost += cost
            if event.session_id == self.session_id:
                self._session_today_cost += cost

    def add_all(self, events: Iterable[UsageEvent]) -> "UsageAggregator":
        for event in events:
            self.add(event)
        return self

    def session_metrics(self) -> SessionMetrics:
        return SessionMetrics(
            session_id=self.session_id,
            tokens=self._session_tokens,
            cost=self._session_cost,
            event_count=self._session_count,
            first_seen=self._session_first,
            last_seen=self._session_last,
            today_cost=self._session_today_cost,
        )

    def window_metrics(self, utilization_percent: Optional[float] = None) -> WindowMetrics:
        if self.anchor_start is not None:
            start = self.anchor_start
        elif self._window_first is not None:
            start = self._window_first
        else:
            start = self.now
        end = start + WINDOW_DURATION

        elapsed = max(self.now - start, MIN_ELAPSED)
        elapsed_minutes = elapsed.total_seconds() / 60.0
        remaining = max((end - self.now).total_seconds() / 60.0, 0.0)

        return WindowMetrics(
            start=start,
            end=end,
            cost=self._window_cost,
            tokens=self._window_tokens,
            tokens_per_minute=self._window_tokens.noncache_tokens / elapsed_minutes,
            cost_per_hour=self._window_cost / (elapsed_minutes / 60.0),
            remaining_minutes=remaining,
            utilization_percent=utilization_percent,
            provider_anchored=self.anchor_source == ANCHOR_PROVIDER,
            anchor_source=self.anchor_source,
        )

    def result(self, utilization_percent: Optional[float] = None) -> AggregateResult:
        return AggregateResult(
            session=self.session_metrics(),
            window=self.window_metrics(utilization_percent),
            day_tokens=self._day_tokens,
            day_cost=self._day_cost,
        )


def scan_daily_contribution(
    path: Path,
    day: date,
    pricing: Optional[PricingTable] = None,
    mtime_ns: int = 0,
) -> DailyContribution:
    """Rescan one transcript fully and total the events dated ``day``."""
    pricing = pricing or PRICING_TABLE
    cost = 0.0
    tokens = 0
    count = 0
    for event in TranscriptReader([path]):
        if local_day(event.timestamp) != day:
            continue
        cost += event_cost(event, pricing)
        tokens += event.usage.total_tokens
        count += 1
    return DailyContribution(
        path=str(path),
        mtime_ns=mtime_ns,
        day=day.isoformat(),
        cost=cost,
        tokens=tokens,
        entry_count=count,
    )


def aggregate_today(
    paths: Iterable[Path],
    store: "PersistentCache",
    pricing: Optional[PricingTable] = None,
    day: Optional[date] = None,
) -> DailyAggregate:
    """Sum every transcript's contribution to today across all sessions.

    Each file goes through the persistent cache: unchanged files reuse their
    stored contribution, new or modified files are rescanned.
    """
    day = day or date.today()
    pricing = pricing or PRICING_TABLE

    def compute(path: Path, mtime_ns: int) -> DailyContribution:
        return scan_daily_contribution(path, day, pricing, mtime_ns)

    total = 0.0
    sessions = 0
    files = 0
    for path in paths:
        contribution = store.get_or_compute(Path(path), compute, day.isoformat())
        if contribution is None:
            continue
        files += 1
        total += contribution.cost
        if contribution.entry_count > 0:
            sessions += 1
    return DailyAggregate(
        day=day.isoformat(),
        total_cost=total,
        sessions_count=sessions,
        files_count=files,
    )
