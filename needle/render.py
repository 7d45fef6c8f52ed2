"""
Deterministic rendering for the Needle dashboard.

Every function here takes (state, width, height, now) and returns rich Text;
the same inputs always produce the same output. Lists never scroll: buckets
are filled in order until the height runs out.
"""

from __future__ import annotations

from datetime import datetime

from rich.cells import cell_len
from rich.text import Text

from .model import CATEGORY_ORDER, CheckState, CiCheck, CiState, ReviewState, ScoredEntry
from .scoring import (
    APPROVED_UNMERGED_OLD,
    CATEGORY_NEEDS_YOU_MIN,
    CATEGORY_NO_ACTION_MIN,
    CI_RUNNING_LONG,
    SCORE_APPROVED_UNMERGED_OLD,
    SCORE_CI_FAILED_NEW,
    SCORE_CI_FAILED_UNCHANGED,
    SCORE_CI_RUNNING_LONG,
    SCORE_REVIEW_REQUESTED,
    SCORE_WAITING_ON_OTHERS,
    running_for,
)
from .state import UiState, View, details_entry, is_dimmed, visible_entries


STATUS_WIDTH = 22
MAX_REPO_WIDTH = 28
MAX_AUTHOR_WIDTH = 14
MIN_TITLE_WIDTH = 10

CHECK_ICONS = {
    CheckState.FAILURE: ("✗", "red"),
    CheckState.RUNNING: ("●", "yellow"),
    CheckState.SUCCESS: ("✓", "green"),
    CheckState.NEUTRAL: ("○", "bright_black"),
    CheckState.NONE: ("·", "bright_black"),
}


def human_age(now: datetime, then: datetime) -> str:
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return "now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def status_text(entry: ScoredEntry, now: datetime) -> tuple[str, str]:
    """Short status label and its style."""
    snapshot = entry.snapshot
    if snapshot.review_state is ReviewState.REQUESTED:
        return "👀 review requested", "cyan"
    if snapshot.ci_state is CiState.FAILURE:
        if entry.is_new_ci_failure:
            return "❌ CI failed (new)", "bold red"
        return "❌ CI failed", "red"
    if snapshot.ci_state is CiState.RUNNING:
        minutes = int(running_for(snapshot, now).total_seconds() // 60)
        return f"🟡 CI running ({minutes}m)", "yellow"
    if snapshot.ci_state is CiState.SUCCESS:
        return f"✅ green {human_age(now, snapshot.updated_at)}", "green"
    return f"⏺ none {human_age(now, snapshot.updated_at)}", "bright_black"


def fit(value: str, width: int, style: str = "") -> Text:
    """Exactly `width` cells: truncated with an ellipsis or padded."""
    text = Text(value, style=style, no_wrap=True)
    if width <= 0:
        return Text("")
    text.truncate(width, overflow="ellipsis", pad=True)
    return text


def _column_widths(state: UiState, entries: list[ScoredEntry], width: int) -> dict[str, int]:
    options = state.options
    widths: dict[str, int] = {}
    if not options.hide_pr_numbers:
        widths["number"] = max((cell_len(f"#{e.identity.number}") for e in entries), default=4)
    if not options.hide_repo:
        widths["repo"] = min(MAX_REPO_WIDTH, max((cell_len(e.identity.full_name) for e in entries), default=4))
    if not options.hide_author:
        widths["author"] = min(MAX_AUTHOR_WIDTH, max((cell_len(e.snapshot.author) for e in entries), default=4))
    widths["status"] = STATUS_WIDTH

    # Two leading cells for the selection marker, one space between columns.
    fixed = 2 + sum(widths.values()) + len(widths)
    widths["title"] = max(MIN_TITLE_WIDTH, width - fixed)
    return widths


def render_row(
    state: UiState,
    entry: ScoredEntry,
    widths: dict[str, int],
    width: int,
    now: datetime,
    selected: bool = False,
) -> Text:
    row = Text(no_wrap=True)
    row.append("▶ " if selected else "  ")
    if "number" in widths:
        row.append_text(fit(f"#{entry.identity.number}", widths["number"], "bold"))
        row.append(" ")
    if "repo" in widths:
        row.append_text(fit(entry.identity.full_name, widths["repo"], "blue"))
        row.append(" ")
    row.append_text(fit(entry.snapshot.title, widths["title"]))
    row.append(" ")
    if "author" in widths:
        row.append_text(fit(entry.snapshot.author, widths["author"], "magenta"))
        row.append(" ")
    label, style = status_text(entry, now)
    row.append_text(fit(label, widths["status"], style))

    row.truncate(width, overflow="ellipsis")
    if is_dimmed(state, entry, now):
        row.stylize("dim")
    if selected:
        row.stylize("reverse")
    return row


def render_list(state: UiState, width: int, height: int, now: datetime) -> Text:
    """Bucketed PR list, truncated to `height` lines."""
    entries = visible_entries(state)
    if height <= 0:
        return Text("")
    if not entries:
        if state.filters.is_active:
            return Text("No PRs match the current filter.", style="dim")
        if state.refreshing:
            return Text("Fetching pull requests…", style="dim")
        return Text("Nothing needs your attention. 🎉", style="dim")

    widths = _column_widths(state, entries, width)
    selected_key = entries[min(state.selection, len(entries) - 1)].key
    lines: list[Text] = []

    for category in CATEGORY_ORDER:
        bucket = [entry for entry in entries if entry.category is category]
        if not bucket:
            continue
        # A section needs room for a header and at least one row.
        needed = 2 + (1 if lines else 0)
        if len(lines) + needed > height:
            break
        if lines:
            lines.append(Text(""))
        header = Text(f"{category.title} ({len(bucket)})", style="bold", no_wrap=True)
        header.truncate(width, overflow="ellipsis")
        lines.append(header)
        for entry in bucket:
            if len(lines) >= height:
                break
            lines.append(render_row(state, entry, widths, width, now, selected=entry.key == selected_key))
        if len(lines) >= height:
            break

    return Text("\n").join(lines)


def render_check(check: CiCheck, width: int, selected: bool = False) -> Text:
    icon, style = CHECK_ICONS[check.state]
    line = Text(no_wrap=True)
    line.append("▶ " if selected else "  ")
    line.append(f"{icon} ", style=style)
    line.append(check.name, style=style if check.state is CheckState.FAILURE else "")
    if check.url:
        line.append(f"  {check.url}", style="bright_black")
    line.truncate(width, overflow="ellipsis")
    if selected:
        line.stylize("reverse")
    return line


def render_details(state: UiState, width: int, height: int, now: datetime) -> Text:
    entry = details_entry(state)
    if entry is None or height <= 0:
        return Text("")
    snapshot = entry.snapshot
    label, style = status_text(entry, now)

    lines: list[Text] = [
        Text(f"{snapshot.identity.key}  {snapshot.title}", style="bold", no_wrap=True),
        Text(f"by {snapshot.author} · updated {human_age(now, snapshot.updated_at)}", no_wrap=True),
        Text(snapshot.url, style="blue underline", no_wrap=True),
        Text.assemble(
            (label, style),
            f"   {entry.category.title} · score {entry.score}",
        ),
        Text(""),
    ]
    checks = snapshot.checks
    if checks:
        lines.append(Text(f"Checks ({len(checks)})", style="bold"))
        selection = min(state.check_selection, len(checks) - 1)
        for index, check in enumerate(checks):
            lines.append(render_check(check, width, selected=index == selection))
    else:
        lines.append(Text("No CI checks on the latest commit.", style="dim"))

    for line in lines:
        line.no_wrap = True
        line.truncate(width, overflow="ellipsis")
    return Text("\n").join(lines[:height])


def render_footer(state: UiState, width: int, now: datetime) -> Text:
    footer = Text(no_wrap=True)
    filters = state.filters
    if state.editing:
        footer.append("filter: ", style="bold")
        footer.append(f"{filters.text}▏")
        footer.append("   enter done · esc clear · ctrl+n/f/r toggles · ctrl+x clear all", style="dim")
    elif state.view is View.DETAILS:
        footer.append("↑↓ move · enter open check · f first failure · tab back · r refresh · q quit", style="dim")
    else:
        footer.append("↑↓ move · enter open · tab details · / filter · n c v toggles · r refresh · ? help · q quit", style="dim")

    tags = []
    if filters.needs_you_only:
        tags.append("needs-you")
    if filters.failing_ci_only:
        tags.append("failing-ci")
    if filters.review_requested_only:
        tags.append("review-requested")
    if filters.text and not state.editing:
        tags.append(f'"{filters.text}"')
    if tags:
        footer.append("   [" + " ".join(tags) + "]", style="cyan")

    footer.append("   ")
    if state.refreshing:
        footer.append("⟳ refreshing…", style="yellow")
    elif state.last_error:
        footer.append(f"refresh failed: {state.last_error}", style="bold red")
    elif state.last_refresh_at is not None:
        footer.append(f"updated {human_age(now, state.last_refresh_at)}", style="dim")
    else:
        footer.append("cached", style="dim")
    if state.options.demo:
        footer.append(" · demo", style="magenta")

    footer.truncate(width, overflow="ellipsis")
    return footer


def render_help() -> Text:
    running_minutes = int(CI_RUNNING_LONG.total_seconds() // 60)
    approved_hours = int(APPROVED_UNMERGED_OLD.total_seconds() // 3600)
    rows = [
        ("Scoring", None),
        (f"{SCORE_REVIEW_REQUESTED:+d}", "review requested from you"),
        (f"{SCORE_CI_FAILED_NEW:+d}", "CI failed (new since last seen)"),
        (f"{SCORE_CI_RUNNING_LONG:+d}", f"CI running longer than {running_minutes}m"),
        (f"{SCORE_APPROVED_UNMERGED_OLD:+d}", f"approved but unmerged for {approved_hours}h+"),
        (f"{SCORE_WAITING_ON_OTHERS:+d}", "no review requested, CI not failing"),
        (f"{SCORE_CI_FAILED_UNCHANGED:+d}", "CI failed, unchanged since last seen"),
        ("", ""),
        ("Categories", None),
        ("", f"needs you: score ≥ {CATEGORY_NEEDS_YOU_MIN}"),
        ("", f"no action needed: score ≥ {CATEGORY_NO_ACTION_MIN}"),
        ("", "drafts and your green, unblocked PRs are grouped separately"),
        ("", ""),
        ("Keys", None),
        ("↑↓ j k", "move"),
        ("enter", "open in browser"),
        ("tab", "details / back"),
        ("/", "filter by repo, title, author or number"),
        ("n c v", "toggle needs-you / failing CI / review requested"),
        ("x esc", "clear filters"),
        ("f", "open first failing check (details)"),
        ("r", "refresh now"),
        ("q", "quit"),
    ]
    help_text = Text()
    for index, (left, right) in enumerate(rows):
        if index:
            help_text.append("\n")
        if right is None:
            help_text.append(left, style="bold underline")
            continue
        help_text.append(f"  {left:>8}  ", style="bold")
        help_text.append(right)
    help_text.append("\n\npress any key to close", style="dim")
    return help_text
