"""
Hook input parsing.

The host writes one JSON document to stdin per render. Missing or
malformed required fields abort the render with no output.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class HookInputError(ValueError):
    """Raised when the stdin document is unusable."""


@dataclass(frozen=True)
class HookInput:
    """What the host tells us about the current session."""
    session_id: str
    transcript_path: Path
    model_id: str
    model_name: str
    current_dir: str
    project_dir: Optional[str] = None
    version: Optional[str] = None
    context_percent: Optional[float] = None

    @property
    def workspace_dir(self) -> str:
        return self.project_dir or self.current_dir


def _required_str(section: dict, key: str, label: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HookInputError(f"Missing required field: {label}")
    return value


def _optional_str(section: dict, key: str) -> Optional[str]:
    value = section.get(key)
    return value if isinstance(value, str) and value.strip() else None


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _context_percent(raw) -> Optional[float]:
    """Context window usage, from the percentage or from token counts."""
    if not isinstance(raw, dict):
        return None
    used = _number(raw.get("used_percentage"))
    if used is not None:
        return max(0.0, min(used, 100.0))

    size = _number(raw.get("context_window_size"))
    current = raw.get("current_usage")
    if not size or size <= 0 or not isinstance(current, dict):
        return None
    tokens = sum(
        _number(current.get(key)) or 0.0
        for key in ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens")
    )
    return max(0.0, min(tokens / size * 100.0, 100.0))


def parse_hook_input(text: str) -> HookInput:
    """Parse the stdin document.

    Raises:
        HookInputError: If the document isn't a JSON object or a required
            field is missing
    """
    if not text or not text.strip():
        raise HookInputError("No input on stdin")
    try:
        raw = json.loads(text)
    except ValueError as e:
        raise HookInputError(f"Invalid JSON on stdin: {e}")
    if not isinstance(raw, dict):
        raise HookInputError("Hook input must be a JSON object")

    model = raw.get("model")
    if not isinstance(model, dict):
        raise HookInputError("Missing required field: model.id")
    workspace = raw.get("workspace")
    if not isinstance(workspace, dict):
        raise HookInputError("Missing required field: workspace.current_dir")

    model_id = _required_str(model, "id", "model.id")
    return HookInput(
        session_id=_required_str(raw, "session_id", "session_id"),
        transcript_path=Path(_required_str(raw, "transcript_path", "transcript_path")).expanduser(),
        model_id=model_id,
        model_name=_optional_str(model, "display_name") or model_id,
        current_dir=_required_str(workspace, "current_dir", "workspace.current_dir"),
        project_dir=_optional_str(workspace, "project_dir"),
        version=_optional_str(raw, "version"),
        context_percent=_context_percent(raw.get("context_window")),
    )
