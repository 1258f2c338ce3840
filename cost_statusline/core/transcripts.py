"""
Transcript discovery and parsing.

Streams usage events out of the newline-delimited JSON transcripts the
assistant writes under ``<root>/projects/<sanitized project>/<session>.jsonl``.
The same records also carry usage-limit notices, SDK result costs and the
token counts behind the context window estimate.
"""

import json
import logging
import os
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..storage.models import UsageEvent
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

ROOTS_ENV = "CLAUDE_CONFIG_DIR"
CONTEXT_LIMIT_ENV = "CLAUDE_CONTEXT_LIMIT"
OVERHEAD_ENV = "CLAUDE_SYSTEM_OVERHEAD"

LIMIT_NOTICE = "Claude AI usage limit reached"
LIMIT_CLOCK_RE = re.compile(r"(?i)limit\s+reached.*resets\s+(\d{1,2})\s*(am|pm)")
AUTO_COMPACT_RE = re.compile(r"Context left until auto-compact: (\d+)%")
CONTEXT_LOW_RE = re.compile(r"Context low \((\d+)% remaining\)")
EPOCH_THRESHOLD = 1_000_000_000

DEFAULT_CONTEXT_LIMIT = 200_000
EXTENDED_CONTEXT_LIMIT = 1_000_000
CONTEXT_USAGE_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


def sanitized_project_name(project_dir: str) -> str:
    """Map a workspace path to the directory name used under ``projects/``."""
    return "".join(c if c.isascii() and c.isalnum() else "-" for c in project_dir)


def claude_roots(override: Optional[str] = None) -> List[Path]:
    """Return the configuration roots that hold a ``projects/`` directory.

    Args:
        override: Comma-separated list of roots; when it yields at least one
            usable root the conventional locations are not consulted.
    """
    if override and override.strip():
        roots = []
        for part in override.split(","):
            part = part.strip()
            if part and (Path(part).expanduser() / "projects").is_dir():
                roots.append(Path(part).expanduser())
        if roots:
            return roots

    home = Path.home()
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME") or home / ".config")
    return [base for base in (home / ".claude", xdg_config / "claude") if (base / "projects").is_dir()]


def discover_transcripts(
    roots: Iterable[Path],
    modified_since: Optional[float] = None,
) -> List[Path]:
    """Find transcript files by filesystem scan.

    Args:
        roots: Configuration roots (each containing ``projects/``)
        modified_since: Optional POSIX time; older files are skipped

    Returns:
        Sorted, de-duplicated list of transcript paths
    """
    found = set()
    for root in roots:
        projects = Path(root) / "projects"
        if not projects.is_dir():
            continue
        for path in projects.rglob("*.jsonl"):
            try:
                if not path.is_file():
                    continue
                if modified_since is not None and path.stat().st_mtime < modified_since:
                    continue
            except OSError:
                continue
            found.add(path)
    return sorted(found)


def session_transcripts(
    roots: Iterable[Path],
    session_id: str,
    project_dir: Optional[str] = None,
    transcript_path: Optional[Path] = None,
) -> List[Path]:
    """Collect every transcript file belonging to one session.

    Includes the host-supplied transcript plus rotated files named after the
    session under the project's directory.
    """
    found = set()
    if transcript_path is not None and Path(transcript_path).is_file():
        found.add(Path(transcript_path))
    if project_dir:
        name = sanitized_project_name(project_dir)
        for root in roots:
            proj = Path(root) / "projects" / name
            if proj.is_dir():
                found.update(p for p in proj.glob(f"{session_id}*.jsonl") if p.is_file())
    return sorted(found)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _count(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def _number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _literal_cost(record: dict) -> Optional[float]:
    # A zero cost is what the host writes when it didn't price the line
    cost = _number(record.get("costUSD", record.get("cost_usd")))
    return cost if cost is not None and cost > 0 else None


def parse_record(line: str) -> Optional[dict]:
    """Decode one transcript line; None for blank, malformed or non-object lines."""
    text = line.strip()
    if not text:
        return None
    try:
        record = json.loads(text)
    except ValueError:
        return None
    return record if isinstance(record, dict) else None


def usage_event_from_record(record: dict, fallback_session_id: Optional[str] = None) -> Optional[UsageEvent]:
    """Build a UsageEvent from a decoded transcript record.

    Returns None for sidechain messages, records without a timestamp or
    usage block, and records that report neither tokens nor cost.
    """
    if record.get("isSidechain") is True:
        return None

    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        return None

    message = record.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    tokens = TokenUsage(
        input_tokens=_count(usage.get("input_tokens")),
        output_tokens=_count(usage.get("output_tokens")),
        cache_creation_tokens=_count(usage.get("cache_creation_input_tokens")),
        cache_read_tokens=_count(usage.get("cache_read_input_tokens")),
    )
    cost = _literal_cost(record)

    server_tools = usage.get("server_tool_use")
    web_search = _count(server_tools.get("web_search_requests")) if isinstance(server_tools, dict) else 0

    if tokens.total_tokens == 0 and cost is None and web_search == 0:
        return None

    model = message.get("model") or record.get("model") or ""
    session_id = record.get("sessionId") or record.get("session_id") or fallback_session_id
    request_id = record.get("requestId") or record.get("request_id")

    return UsageEvent(
        timestamp=timestamp,
        model=str(model),
        usage=tokens,
        cost_usd=cost,
        web_search_requests=web_search,
        session_id=str(session_id) if session_id else None,
        message_id=str(message["id"]) if message.get("id") else None,
        request_id=str(request_id) if request_id else None,
    )


def parse_usage_line(line: str, fallback_session_id: Optional[str] = None) -> Optional[UsageEvent]:
    """Parse one transcript line into a UsageEvent.

    Returns None for anything that isn't a usable usage record: blank or
    malformed JSON, missing timestamp or usage block, sidechain messages and
    records that report neither tokens nor cost.
    """
    record = parse_record(line)
    if record is None:
        return None
    return usage_event_from_record(record, fallback_session_id)


def iter_records(path: Path) -> Iterator[dict]:
    """Lazily yield the decoded records of one transcript file.

    Malformed lines are skipped and unreadable files yield nothing.
    """
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                record = parse_record(line)
                if record is not None:
                    yield record
    except OSError as e:
        logger.debug(f"Skipping unreadable transcript {path}: {e}")


# ── Usage-limit notices and SDK results ──────────────────────────────────────


def _message_texts(record: dict) -> List[str]:
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [c["text"] for c in content if isinstance(c, dict) and isinstance(c.get("text"), str)]


def reset_from_clock_time(base: datetime, text: str) -> Optional[datetime]:
    """Reset instant from a "limit reached ... resets 5pm" notice.

    The hour is read in local time on ``base``'s day, or the next day when
    that hour has already passed.
    """
    match = LIMIT_CLOCK_RE.search(text)
    if match is None:
        return None
    hour = int(match.group(1))
    if hour == 0 or hour > 12:
        return None
    hour24 = hour % 12 + (12 if match.group(2).lower() == "pm" else 0)
    local = base.astimezone()
    reset = local.replace(hour=hour24, minute=0, second=0, microsecond=0)
    if local >= reset:
        reset += timedelta(days=1)
    return reset.astimezone(timezone.utc)


def _reset_from_text(text: str, base: datetime, now: datetime) -> Optional[datetime]:
    if "|" not in text:
        return reset_from_clock_time(base, text)
    try:
        value = int(text.rsplit("|", 1)[1].strip())
    except ValueError:
        return None
    if value <= 0:
        return None
    # Small values count seconds from now rather than an epoch
    epoch = value if value >= EPOCH_THRESHOLD else now.timestamp() + value
    try:
        return datetime.fromtimestamp(epoch, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def limit_reset_from_record(record: dict, now: datetime) -> Optional[datetime]:
    """Latest reset time announced by a usage-limit notice in ``record``.

    API error records must carry the host's exact notice; other messages
    match any mention of a usage limit. The notice ends either in
    ``|<epoch seconds>`` or in a clock time like ``resets 5pm``.
    """
    if record.get("isApiErrorMessage") is True:
        def mentions_limit(text):
            return LIMIT_NOTICE in text
    else:
        def mentions_limit(text):
            return "usage limit" in text.lower()

    base = parse_timestamp(record.get("timestamp")) or now
    latest = None
    for text in _message_texts(record):
        if not mentions_limit(text):
            continue
        reset = _reset_from_text(text, base, now)
        if reset is not None and (latest is None or reset > latest):
            latest = reset
    return latest


def result_cost_from_record(record: dict) -> Optional[Tuple[str, float]]:
    """(session id, total cost) from an SDK ``result`` record."""
    if record.get("type") != "result":
        return None
    session_id = record.get("sessionId") or record.get("session_id")
    cost = _number(record.get("total_cost_usd"))
    if not isinstance(session_id, str) or cost is None:
        return None
    return session_id, cost


# ── Context usage ────────────────────────────────────────────────────────────


def context_limit(model_id: str, model_name: str = "", env: Optional[Mapping[str, str]] = None) -> int:
    """Context window size in tokens for a model.

    ``CLAUDE_CONTEXT_LIMIT`` overrides; 1M-context variants are detected from
    the id or display name.
    """
    env = os.environ if env is None else env
    override = env.get(CONTEXT_LIMIT_ENV, "").strip()
    if override.isdecimal():
        return int(override)
    name = model_name.lower()
    model = model_id.lower()
    if "[1m]" in name or ("1m" in name and "context" in name) or "-1m" in model or model.endswith("1m"):
        return EXTENDED_CONTEXT_LIMIT
    return DEFAULT_CONTEXT_LIMIT


def transcript_context_percent(
    path: Path,
    model_id: str,
    model_name: str = "",
    env: Optional[Mapping[str, str]] = None,
) -> Optional[float]:
    """Context window fill derived from the transcript itself.

    Uses the last assistant message's token counts; without one, the most
    recent "context left" warning. None when the transcript has neither.
    """
    env = os.environ if env is None else env
    last_total = None
    warning = None
    for record in iter_records(path):
        kind = record.get("type")
        if kind == "system_message" and isinstance(record.get("content"), str):
            content = record["content"]
            match = AUTO_COMPACT_RE.search(content) or CONTEXT_LOW_RE.search(content)
            if match:
                warning = max(100 - int(match.group(1)), 0)
        elif kind == "assistant":
            message = record.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                total = sum(_count(usage.get(field)) for field in CONTEXT_USAGE_FIELDS)
                if total > 0:
                    last_total = total

    if last_total is None:
        return float(min(warning, 100)) if warning is not None else None

    overhead = env.get(OVERHEAD_ENV, "").strip()
    used = last_total + (int(overhead) if overhead.isdecimal() else 0)
    limit = context_limit(model_id, model_name, env)
    if limit == 0:
        return 100.0 if used else 0.0
    return float(min(int(used * 100 / limit + 0.5), 100))


# ── Reader ───────────────────────────────────────────────────────────────────


def _combine(a: Optional[float], b: Optional[float], op) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return op(a, b)


class _MergedResponse:
    """Running merge of the streaming updates written for one API response.

    Updates normally carry cumulative counts, so each field keeps its
    maximum. Once any count goes down the updates are treated as deltas and
    summed from then on.
    """

    def __init__(self, event: UsageEvent):
        self.event = event
        self.last_seen = event.usage
        self.summing = False

    def update(self, event: UsageEvent) -> None:
        current = self.event
        if not self.summing and event.usage.any_below(self.last_seen):
            self.summing = True

        if self.summing:
            self.last_seen = self.last_seen + event.usage
            usage = current.usage + event.usage
            web_search = current.web_search_requests + event.web_search_requests
            cost = _combine(current.cost_usd, event.cost_usd, lambda a, b: a + b)
        else:
            self.last_seen = event.usage
            usage = current.usage.maximum(event.usage)
            web_search = max(current.web_search_requests, event.web_search_requests)
            cost = _combine(current.cost_usd, event.cost_usd, max)

        self.event = replace(
            current,
            timestamp=max(current.timestamp, event.timestamp),
            model=current.model or event.model,
            usage=usage,
            cost_usd=cost,
            web_search_requests=web_search,
            session_id=current.session_id or event.session_id,
        )


class TranscriptReader:
    """Restartable sequence of usage events over a set of files.

    Every iteration re-reads the files from the start. With ``dedupe`` the
    streaming updates the host writes for one API response (same request
    id, else same message id) are merged into a single event, yielded once
    all files are read; lines without either id stream through as read.

    While iterating, the reader also collects the latest usage-limit reset
    (``latest_reset``) and the highest SDK result cost per session
    (``result_costs``); both describe the most recent complete pass.
    """

    def __init__(self, paths: Sequence[Path], dedupe: bool = True, now: Optional[datetime] = None):
        self.paths = list(paths)
        self.dedupe = dedupe
        self.now = now
        self.latest_reset: Optional[datetime] = None
        self.result_costs: Dict[str, float] = {}

    def _note(self, record: dict, now: datetime) -> None:
        reset = limit_reset_from_record(record, now)
        if reset is not None and (self.latest_reset is None or reset > self.latest_reset):
            self.latest_reset = reset
        result = result_cost_from_record(record)
        if result is not None:
            session_id, cost = result
            if cost > self.result_costs.get(session_id, 0.0):
                self.result_costs[session_id] = cost

    def __iter__(self) -> Iterator[UsageEvent]:
        now = self.now or datetime.now(timezone.utc)
        self.latest_reset = None
        self.result_costs = {}
        merged: Dict[str, _MergedResponse] = {}
        for path in self.paths:
            fallback = Path(path).stem
            for record in iter_records(path):
                self._note(record, now)
                event = usage_event_from_record(record, fallback_session_id=fallback)
                if event is None:
                    continue
                key = event.dedupe_key if self.dedupe else None
                if key is None:
                    yield event
                elif key in merged:
                    merged[key].update(event)
                else:
                    merged[key] = _MergedResponse(event)
        for entry in merged.values():
            yield entry.event
