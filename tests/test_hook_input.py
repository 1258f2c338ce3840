"""
Unit tests for stdin hook parsing.
"""

import json
from pathlib import Path

import pytest

from cost_statusline.cli.hook_input import HookInputError, parse_hook_input

VALID = {
    "session_id": "abc",
    "transcript_path": "/tmp/abc.jsonl",
    "model": {"id": "claude-sonnet-4-20250514", "display_name": "Sonnet 4"},
    "workspace": {"current_dir": "/work/app", "project_dir": "/work"},
    "version": "2.0.1",
}


class TestParseHookInput:
    """Test required and optional hook fields."""

    def test_valid_document(self):
        hook = parse_hook_input(json.dumps(VALID))
        assert hook.session_id == "abc"
        assert hook.transcript_path == Path("/tmp/abc.jsonl")
        assert hook.model_name == "Sonnet 4"
        assert hook.workspace_dir == "/work"
        assert hook.version == "2.0.1"
        assert hook.context_percent is None

    def test_display_name_defaults_to_id(self):
        doc = dict(VALID, model={"id": "claude-opus-4"})
        assert parse_hook_input(json.dumps(doc)).model_name == "claude-opus-4"

    def test_workspace_dir_falls_back_to_current_dir(self):
        doc = dict(VALID, workspace={"current_dir": "/work/app"})
        assert parse_hook_input(json.dumps(doc)).workspace_dir == "/work/app"

    @pytest.mark.parametrize("text", ["", "   ", "{not json", "[]"])
    def test_unusable_document(self, text):
        with pytest.raises(HookInputError):
            parse_hook_input(text)

    @pytest.mark.parametrize("field", ["session_id", "transcript_path", "model", "workspace"])
    def test_missing_required_field(self, field):
        doc = dict(VALID)
        del doc[field]
        with pytest.raises(HookInputError, match="Missing required field"):
            parse_hook_input(json.dumps(doc))

    def test_missing_model_id(self):
        doc = dict(VALID, model={"display_name": "Sonnet"})
        with pytest.raises(HookInputError, match="model.id"):
            parse_hook_input(json.dumps(doc))

    def test_error_is_value_error(self):
        assert issubclass(HookInputError, ValueError)

    def test_context_percentage(self):
        doc = dict(VALID, context_window={"used_percentage": 37.5})
        assert parse_hook_input(json.dumps(doc)).context_percent == 37.5

    def test_context_from_token_counts(self):
        doc = dict(VALID, context_window={
            "context_window_size": 200_000,
            "current_usage": {"input_tokens": 10_000, "cache_read_input_tokens": 40_000},
        })
        assert parse_hook_input(json.dumps(doc)).context_percent == pytest.approx(25.0)
