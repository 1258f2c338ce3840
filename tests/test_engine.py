"""
End-to-end tests for the usage engine.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from cost_statusline.cli.hook_input import HookInput
from cost_statusline.config.loader import StatuslineConfig, WindowAnchor
from cost_statusline.core.engine import UsageEngine
from cost_statusline.core.local_cache import LocalCache
from cost_statusline.core.pricing import PRICING_TABLE


def _line(ts: datetime, session_id: str, input_tokens=1000, output_tokens=500) -> str:
    return json.dumps({
        "timestamp": ts.isoformat(),
        "sessionId": session_id,
        "message": {
            "model": "claude-sonnet-4-20250514",
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    })


def _limit_notice(ts: datetime, resets_at: datetime) -> str:
    return json.dumps({
        "timestamp": ts.isoformat(),
        "isApiErrorMessage": True,
        "message": {"content": [{"type": "text", "text": f"Claude AI usage limit reached|{int(resets_at.timestamp())}"}]},
    })


class TestUsageEngine:
    """Test report assembly from transcripts and caches."""

    def setup_method(self):
        self.now = datetime.now(timezone.utc)
        self.transport = None

    def _root(self, tmp_path: Path) -> Path:
        project = tmp_path / "claude" / "projects" / "-work-app"
        project.mkdir(parents=True)
        return tmp_path / "claude"

    def _write(self, path: Path, *lines: str):
        with open(path, "a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")

    def _hook(self, root: Path, session_id: str = "sess-1", **extra) -> HookInput:
        return HookInput(
            session_id=session_id,
            transcript_path=root / "projects" / "-work-app" / f"{session_id}.jsonl",
            model_id="claude-sonnet-4-20250514",
            model_name="Sonnet 4",
            current_dir="/work/app",
            **extra,
        )

    def _engine(self, tmp_path, root, **config_overrides) -> UsageEngine:
        settings = dict(roots_override=str(root), db_path=tmp_path / "cache.db", fetch_usage=False)
        settings.update(config_overrides)
        return UsageEngine(
            StatuslineConfig(**settings),
            pricing=PRICING_TABLE,
            local_cache=LocalCache(),
            now=self.now,
            env={"CLAUDE_CODE_OAUTH_TOKEN": "tok"},
            transport=self.transport,
            keychain=lambda env: None,
        )

    def test_single_event_scenario(self, tmp_path):
        """One 1000/500 token event at $3/$15 per million costs $0.0105."""
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, _line(self.now - timedelta(minutes=10), "sess-1"))

        report = self._engine(tmp_path, root).report(hook)

        assert report.session.cost == pytest.approx(0.0105)
        assert report.window.cost == pytest.approx(0.0105)
        assert report.today.total_cost == pytest.approx(0.0105)
        assert report.usage is None
        assert report.window.provider_anchored is False
        assert report.to_dict()["model"] == {"id": "claude-sonnet-4-20250514", "display_name": "Sonnet 4"}

    def test_today_spans_sessions(self, tmp_path):
        root = self._root(tmp_path)
        hook = self._hook(root)
        other = root / "projects" / "-work-app" / "sess-2.jsonl"
        self._write(hook.transcript_path, _line(self.now - timedelta(minutes=10), "sess-1"))
        self._write(other, _line(self.now - timedelta(minutes=5), "sess-2"))

        report = self._engine(tmp_path, root).report(hook)

        assert report.session.cost == pytest.approx(0.0105)
        assert report.window.cost == pytest.approx(0.021)
        assert report.today.total_cost == pytest.approx(0.021)
        assert report.today.sessions_count == 2

    def test_no_transcripts_yet(self, tmp_path):
        root = self._root(tmp_path)
        report = self._engine(tmp_path, root).report(self._hook(root))
        assert report.session.cost == 0.0
        assert report.window.remaining_minutes == pytest.approx(300.0)
        assert report.today.total_cost == 0.0

    def test_local_cache_serves_repeat_renders(self, tmp_path):
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, _line(self.now - timedelta(minutes=10), "sess-1"))
        engine = self._engine(tmp_path, root)

        first = engine.report(hook)
        self._write(hook.transcript_path, _line(self.now - timedelta(minutes=1), "sess-1"))
        second = engine.report(hook)
        assert second.session == first.session

        engine.local_cache.clear()
        assert engine.report(hook).session.cost == pytest.approx(0.021)

    def test_persistent_cache_disabled(self, tmp_path):
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, _line(self.now - timedelta(minutes=10), "sess-1"))

        report = self._engine(tmp_path, root, db_enabled=False).report(hook)
        assert report.today.total_cost == pytest.approx(0.0105)
        assert not (tmp_path / "cache.db").exists()

    def test_provider_anchor_from_remote_usage(self, tmp_path):
        resets_at = (self.now + timedelta(hours=3)).replace(minute=0, second=0, microsecond=0)
        body = {"five_hour": {"utilization": 42.5, "resets_at": resets_at.isoformat()}}
        self.transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))

        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(
            hook.transcript_path,
            _line(self.now - timedelta(hours=4), "sess-1"),
            _line(self.now - timedelta(minutes=10), "sess-1"),
        )

        report = self._engine(tmp_path, root, fetch_usage=True).report(hook)

        assert report.window.provider_anchored is True
        assert report.window.start == resets_at - timedelta(hours=5)
        assert report.window.utilization_percent == 42.5
        assert report.window.cost == pytest.approx(0.0105)
        assert report.session.cost == pytest.approx(0.021)
        assert report.usage.five_hour.utilization == 42.5

    def test_provider_anchor_can_be_disabled(self, tmp_path):
        resets_at = (self.now + timedelta(hours=3)).replace(minute=0, second=0, microsecond=0)
        body = {"five_hour": {"utilization": 42.5, "resets_at": resets_at.isoformat()}}
        self.transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))

        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, _line(self.now - timedelta(hours=4), "sess-1"))

        report = self._engine(
            tmp_path, root, fetch_usage=True, window_anchor=WindowAnchor.TRANSCRIPT
        ).report(hook)

        assert report.window.provider_anchored is False
        assert report.window.start == self.now - timedelta(hours=4)
        assert report.window.utilization_percent == 42.5

    def test_cache_hit_shows_current_utilization(self, tmp_path):
        resets_at = (self.now + timedelta(hours=3)).replace(minute=0, second=0, microsecond=0)
        body = {"five_hour": {"utilization": 42.5, "resets_at": resets_at.isoformat()}}
        self.transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))

        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, _line(self.now - timedelta(minutes=10), "sess-1"))
        engine = self._engine(tmp_path, root, fetch_usage=True, db_enabled=False)

        first = engine.report(hook)
        body["five_hour"]["utilization"] = 80.0
        second = engine.report(hook)

        assert first.window.utilization_percent == 42.5
        assert second.window.utilization_percent == 80.0
        assert second.usage.five_hour.utilization == 80.0
        assert second.window.start == first.window.start
        assert second.session == first.session

    def test_log_anchor_from_limit_notice(self, tmp_path):
        resets_at = (self.now + timedelta(hours=2)).replace(minute=0, second=0, microsecond=0)
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(
            hook.transcript_path,
            _line(self.now - timedelta(hours=4), "sess-1"),
            _limit_notice(self.now - timedelta(minutes=30), resets_at),
            _line(self.now - timedelta(minutes=10), "sess-1"),
        )
        engine = self._engine(tmp_path, root)

        report = engine.report(hook)

        assert report.window.anchor_source == "log"
        assert report.window.provider_anchored is False
        assert report.window.start == resets_at - timedelta(hours=5)
        assert report.window.cost == pytest.approx(0.0105)
        assert report.session.cost == pytest.approx(0.021)
        assert engine.store.get_metadata("latest_reset") == resets_at.isoformat()

    def test_log_anchor_persists_between_runs(self, tmp_path):
        resets_at = (self.now + timedelta(hours=2)).replace(minute=0, second=0, microsecond=0)
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, _limit_notice(self.now - timedelta(minutes=30), resets_at))
        self._engine(tmp_path, root).report(hook)

        hook.transcript_path.write_text(_line(self.now - timedelta(hours=4), "sess-1") + "\n", encoding="utf-8")
        report = self._engine(tmp_path, root, window_anchor=WindowAnchor.LOG).report(hook)

        assert report.window.anchor_source == "log"
        assert report.window.start == resets_at - timedelta(hours=5)

    def test_provider_anchor_beats_log_anchor(self, tmp_path):
        provider_reset = (self.now + timedelta(hours=3)).replace(minute=0, second=0, microsecond=0)
        body = {"five_hour": {"utilization": 10.0, "resets_at": provider_reset.isoformat()}}
        self.transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))

        root = self._root(tmp_path)
        hook = self._hook(root)
        log_reset = (self.now + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
        self._write(hook.transcript_path, _limit_notice(self.now - timedelta(minutes=30), log_reset))

        report = self._engine(tmp_path, root, fetch_usage=True).report(hook)
        assert report.window.anchor_source == "provider"
        assert report.window.start == provider_reset - timedelta(hours=5)

    def test_transcript_mode_ignores_limit_notices(self, tmp_path):
        resets_at = (self.now + timedelta(hours=2)).replace(minute=0, second=0, microsecond=0)
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(
            hook.transcript_path,
            _line(self.now - timedelta(hours=4), "sess-1"),
            _limit_notice(self.now - timedelta(minutes=30), resets_at),
        )

        report = self._engine(tmp_path, root, window_anchor=WindowAnchor.TRANSCRIPT).report(hook)
        assert report.window.anchor_source == "transcript"
        assert report.window.start == self.now - timedelta(hours=4)

    def test_result_record_sets_session_cost(self, tmp_path):
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(
            hook.transcript_path,
            _line(self.now - timedelta(minutes=10), "sess-1"),
            json.dumps({"type": "result", "sessionId": "sess-1", "total_cost_usd": 1.25}),
        )

        report = self._engine(tmp_path, root).report(hook)
        assert report.session.cost == pytest.approx(1.25)
        assert report.today.total_cost == pytest.approx(0.0105)

    def test_session_today_cost(self, tmp_path):
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(
            hook.transcript_path,
            _line(self.now - timedelta(hours=30), "sess-1"),
            _line(self.now - timedelta(minutes=10), "sess-1"),
        )

        report = self._engine(tmp_path, root).report(hook)
        assert report.session.cost == pytest.approx(0.021)
        assert report.session.today_cost == pytest.approx(0.0105)
        assert report.to_dict()["session"]["today_cost"] == pytest.approx(0.0105)

    def test_context_from_transcript_when_hook_has_none(self, tmp_path):
        root = self._root(tmp_path)
        hook = self._hook(root)
        self._write(hook.transcript_path, json.dumps({
            "timestamp": (self.now - timedelta(minutes=1)).isoformat(),
            "type": "assistant",
            "sessionId": "sess-1",
            "message": {"model": "claude-sonnet-4-20250514", "usage": {"input_tokens": 50_000}},
        }))

        assert self._engine(tmp_path, root).report(hook).context_percent == 25.0

        hinted = self._hook(root, context_percent=10.0)
        assert self._engine(tmp_path, root).report(hinted).context_percent == 10.0
