"""
Usage engine.

Wires transcripts, pricing, both cache tiers and the remote usage client
into one report per render.
"""

import logging
import os
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, List, Mapping, Optional, Tuple

import httpx

from ..config.loader import StatuslineConfig, WindowAnchor
from ..storage.models import AggregateResult, DailyAggregate, SessionMetrics, WindowMetrics
from ..storage.repository import PersistentCache
from .aggregator import (
    ANCHOR_LOG,
    ANCHOR_PROVIDER,
    ANCHOR_TRANSCRIPT,
    WINDOW_DURATION,
    UsageAggregator,
    aggregate_today,
    local_day,
    normalize_reset_time,
    window_anchor,
)
from .local_cache import LocalCache, get_local_cache
from .pricing import PricingTable, resolve_pricing_table
from .remote_usage import KeychainLookup, UsageSummary, get_usage_summary, read_keychain_token
from .transcripts import (
    TranscriptReader,
    claude_roots,
    discover_transcripts,
    parse_timestamp,
    session_transcripts,
    transcript_context_percent,
)

if TYPE_CHECKING:
    from ..cli.hook_input import HookInput

logger = logging.getLogger(__name__)

Snapshot = Tuple[AggregateResult, DailyAggregate]

LATEST_RESET_KEY = "latest_reset"


@dataclass(frozen=True)
class UsageReport:
    """Everything the statusline renders for one invocation."""
    model_id: str
    model_name: str
    session: SessionMetrics
    window: WindowMetrics
    today: DailyAggregate
    usage: Optional[UsageSummary] = None
    context_percent: Optional[float] = None
    pricing_source: str = "embedded"

    def to_dict(self) -> dict:
        return {
            "model": {"id": self.model_id, "display_name": self.model_name},
            "session": self.session.to_dict(),
            "window": self.window.to_dict(),
            "today": self.today.to_dict(),
            "usage": self.usage.to_dict() if self.usage is not None else None,
            "context_percent": self.context_percent,
            "pricing_source": self.pricing_source,
        }


def local_midnight(day: date) -> float:
    """POSIX time of the start of ``day`` in the local timezone."""
    return datetime.combine(day, datetime.min.time()).timestamp()


class UsageEngine:
    """Builds a UsageReport from a hook document.

    Every collaborator can be injected; by default they come from the
    configuration and the environment.
    """

    def __init__(
        self,
        config: Optional[StatuslineConfig] = None,
        pricing: Optional[PricingTable] = None,
        store: Optional[PersistentCache] = None,
        local_cache: Optional[LocalCache] = None,
        now: Optional[datetime] = None,
        env: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        keychain: KeychainLookup = read_keychain_token,
    ):
        self.config = config or StatuslineConfig()
        self.env = os.environ if env is None else env
        self.pricing = pricing or resolve_pricing_table(env=self.env, configured_path=self.config.pricing_path)
        self.store = store or PersistentCache(self.config.db_path, enabled=self.config.db_enabled)
        self.local_cache = local_cache if local_cache is not None else get_local_cache(self.config.local_ttl)
        self.now = now
        self.transport = transport
        self.keychain = keychain
        self.roots = claude_roots(self.config.roots_override)

    def report(self, hook: "HookInput") -> UsageReport:
        now = self.now or datetime.now(timezone.utc)
        summary = get_usage_summary(
            self.config,
            self.store,
            self.roots,
            version=hook.version,
            env=self.env,
            transport=self.transport,
            keychain=self.keychain,
        )
        provider_anchor, utilization = self._provider_window(summary, now)

        result, today = self.local_cache.get_or_compute(
            hook.session_id,
            hook.workspace_dir,
            lambda: self._compute(hook, now, provider_anchor, utilization),
        )
        # A cached snapshot keeps its boundary but shows the current utilization
        window = replace(result.window, utilization_percent=utilization)

        context = hook.context_percent
        if context is None:
            context = transcript_context_percent(hook.transcript_path, hook.model_id, hook.model_name, self.env)

        return UsageReport(
            model_id=hook.model_id,
            model_name=hook.model_name,
            session=result.session,
            window=window,
            today=today,
            usage=summary,
            context_percent=context,
            pricing_source=self.pricing.source,
        )

    def _provider_window(
        self,
        summary: Optional[UsageSummary],
        now: datetime,
    ) -> Tuple[Optional[datetime], Optional[float]]:
        """Window anchor and utilization from the remote summary, if usable."""
        if summary is None or summary.five_hour is None:
            return None, None
        limit = summary.five_hour
        anchor = None
        if self.config.window_anchor is WindowAnchor.PROVIDER and limit.resets_at is not None:
            anchor = window_anchor(normalize_reset_time(limit.resets_at), now)
        return anchor, limit.utilization

    def _latest_reset(self, scanned: Optional[datetime]) -> Optional[datetime]:
        """Newest usage-limit reset seen in the logs, now or on an earlier run."""
        stored = self.store.get_metadata(LATEST_RESET_KEY)
        persisted = parse_timestamp(stored) if stored else None
        if scanned is None:
            return persisted
        scanned = normalize_reset_time(scanned)
        if persisted is not None and persisted >= scanned:
            return persisted
        self.store.set_metadata(LATEST_RESET_KEY, scanned.isoformat())
        return scanned

    def _window_anchor(
        self,
        provider_anchor: Optional[datetime],
        scanned_reset: Optional[datetime],
        now: datetime,
    ) -> Tuple[Optional[datetime], str]:
        """Pick the window start: provider, then log notices, then transcript."""
        mode = self.config.window_anchor
        if provider_anchor is not None:
            return provider_anchor, ANCHOR_PROVIDER
        if mode in (WindowAnchor.PROVIDER, WindowAnchor.LOG):
            anchor = window_anchor(self._latest_reset(scanned_reset), now)
            if anchor is not None:
                return anchor, ANCHOR_LOG
        return None, ANCHOR_TRANSCRIPT

    def _files_since(self, hook: "HookInput", since: float) -> List[Path]:
        """The session's own transcripts plus any transcript touched since ``since``."""
        files = set(session_transcripts(self.roots, hook.session_id, hook.workspace_dir, hook.transcript_path))
        files.update(discover_transcripts(self.roots, modified_since=since))
        return sorted(files)

    def _compute(
        self,
        hook: "HookInput",
        now: datetime,
        provider_anchor: Optional[datetime],
        utilization: Optional[float],
    ) -> Snapshot:
        # Every anchored window starts inside the trailing five hours
        files = self._files_since(hook, (now - WINDOW_DURATION).timestamp())
        logger.debug(f"Folding {len(files)} transcript(s) for session {hook.session_id}")

        reader = TranscriptReader(files, now=now)
        events = list(reader)
        anchor, source = self._window_anchor(provider_anchor, reader.latest_reset, now)

        aggregator = UsageAggregator(hook.session_id, self.pricing, now=now, anchor_start=anchor, anchor_source=source)
        aggregator.add_all(events)
        result = aggregator.result(utilization)

        result_cost = reader.result_costs.get(hook.session_id, 0.0)
        if result_cost > 0:
            result = replace(result, session=replace(result.session, cost=result_cost))

        day = local_day(now)
        today = aggregate_today(self._files_since(hook, local_midnight(day)), self.store, self.pricing, day)
        self.store.prune(day.isoformat())
        return result, today
