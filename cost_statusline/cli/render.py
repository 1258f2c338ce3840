"""
One-line statusline rendering.
"""

import json

from rich.text import Text

from ..core.engine import UsageReport

SEPARATOR = " · "


def format_currency(amount: float) -> str:
    """Format currency with two decimals."""
    return f"${amount:,.2f}"


def format_tokens(count: float) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return f"{count:.0f}"


def format_minutes(minutes: float) -> str:
    total = int(minutes)
    hours, mins = divmod(total, 60)
    return f"{hours}h{mins:02d}m" if hours else f"{mins}m"


def _percent_style(percent: float) -> str:
    if percent >= 90:
        return "bold red"
    if percent >= 70:
        return "yellow"
    return "green"


def render_text(report: UsageReport) -> Text:
    """Build the statusline as styled rich Text."""
    window = report.window
    line = Text()
    line.append(report.model_name, style="bold cyan")

    line.append(SEPARATOR, style="dim")
    line.append("session ", style="dim")
    line.append(format_currency(report.session.cost), style="bold")
    session_today = format_currency(report.session.today_cost)
    if session_today != format_currency(report.session.cost):
        line.append(f" ({session_today} today)", style="dim")

    line.append(SEPARATOR, style="dim")
    line.append("today ", style="dim")
    line.append(format_currency(report.today.total_cost), style="bold")
    if report.today.sessions_count > 1:
        line.append(f" ({report.today.sessions_count} sessions)", style="dim")

    line.append(SEPARATOR, style="dim")
    line.append("window ", style="dim")
    line.append(format_currency(window.cost), style="bold")
    line.append(
        f" ({format_currency(window.cost_per_hour)}/h, {format_tokens(window.tokens_per_minute)} tok/min)",
        style="dim",
    )
    line.append(f" {format_minutes(window.remaining_minutes)} left", style="magenta")

    if window.utilization_percent is not None:
        line.append(SEPARATOR, style="dim")
        line.append(f"5h {window.utilization_percent:.0f}%", style=_percent_style(window.utilization_percent))

    if report.context_percent is not None:
        line.append(SEPARATOR, style="dim")
        line.append(f"ctx {report.context_percent:.0f}%", style=_percent_style(report.context_percent))

    return line


def render_json(report: UsageReport) -> str:
    return json.dumps(report.to_dict(), separators=(",", ":"))
