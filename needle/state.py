"""
Dashboard state machine for Needle.

`update(state, event, now=...)` is pure: it returns the next UiState and a
tuple of effects (open a URL, record an open, request a refresh, notify,
ring the bell, quit) for the Textual driver to carry out.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Union

from .model import (
    CATEGORY_ORDER,
    AttentionSet,
    Category,
    CiCheck,
    CiState,
    PullRequestIdentity,
    ReviewState,
    ScoredEntry,
    TransitionEvent,
    TransitionKind,
    is_recently_opened,
)
from .refresh import RefreshOutcome


class View(str, Enum):
    LIST = "list"
    DETAILS = "details"


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class KeyPress:
    key: str
    character: str | None = None


@dataclass(frozen=True)
class RefreshStarted:
    pass


@dataclass(frozen=True)
class RefreshCompleted:
    outcome: RefreshOutcome


@dataclass(frozen=True)
class Resize:
    width: int
    height: int


Event = Union[KeyPress, RefreshStarted, RefreshCompleted, Resize]


# =============================================================================
# Effects
# =============================================================================

@dataclass(frozen=True)
class OpenUrl:
    url: str


@dataclass(frozen=True)
class RecordOpened:
    identity: PullRequestIdentity
    when: datetime


@dataclass(frozen=True)
class RequestRefresh:
    pass


@dataclass(frozen=True)
class Notify:
    events: tuple[TransitionEvent, ...]
    new_repos: tuple[str, ...] = ()


@dataclass(frozen=True)
class Bell:
    pass


@dataclass(frozen=True)
class Quit:
    pass


Effect = Union[OpenUrl, RecordOpened, RequestRefresh, Notify, Bell, Quit]

BELL_KINDS = frozenset({TransitionKind.ENTERED_NEEDS_YOU, TransitionKind.CI_FAILED})


# =============================================================================
# State
# =============================================================================

@dataclass(frozen=True)
class Filters:
    """Text filter ANDed with three independent toggles."""
    text: str = ""
    needs_you_only: bool = False
    failing_ci_only: bool = False
    review_requested_only: bool = False

    @property
    def is_active(self) -> bool:
        return bool(self.text) or self.needs_you_only or self.failing_ci_only or self.review_requested_only

    def matches(self, entry: ScoredEntry) -> bool:
        snapshot = entry.snapshot
        if self.needs_you_only and entry.category is not Category.NEEDS_YOU:
            return False
        if self.failing_ci_only and snapshot.ci_state is not CiState.FAILURE:
            return False
        if self.review_requested_only and snapshot.review_state is not ReviewState.REQUESTED:
            return False
        if not self.text:
            return True
        needle = self.text.lower()
        haystacks = (
            snapshot.identity.full_name,
            snapshot.title,
            snapshot.author,
            str(snapshot.identity.number),
            f"#{snapshot.identity.number}",
        )
        return any(needle in value.lower() for value in haystacks)


@dataclass(frozen=True)
class UiOptions:
    """Startup preferences the dashboard needs; never changed mid-session."""
    hide_pr_numbers: bool = False
    hide_repo: bool = False
    hide_author: bool = False
    bell: bool = False
    notifications: bool = True
    demo: bool = False


@dataclass(frozen=True)
class UiState:
    attention_set: AttentionSet = field(default_factory=AttentionSet)
    options: UiOptions = field(default_factory=UiOptions)
    view: View = View.LIST
    selection: int = 0
    selected_key: str | None = None
    details_key: str | None = None
    check_selection: int = 0
    editing: bool = False
    filters: Filters = field(default_factory=Filters)
    show_help: bool = False
    refreshing: bool = False
    last_error: str | None = None
    last_refresh_at: datetime | None = None
    opened: tuple[tuple[str, datetime], ...] = ()
    seen_repos: frozenset[str] = frozenset()
    width: int = 80
    height: int = 24

    @property
    def opened_at(self) -> dict[str, datetime]:
        return dict(self.opened)


def repos_in(attention_set: AttentionSet) -> frozenset[str]:
    return frozenset(entry.identity.full_name for entry in attention_set)


def initial_state(attention_set: AttentionSet, options: UiOptions | None = None) -> UiState:
    state = UiState(
        attention_set=attention_set,
        options=options or UiOptions(),
        seen_repos=repos_in(attention_set),
    )
    return _reconcile_selection(state)


# =============================================================================
# Queries
# =============================================================================

def visible_entries(state: UiState) -> list[ScoredEntry]:
    """Filtered entries in display order: bucket order, canonical order within a bucket."""
    filtered = [entry for entry in state.attention_set if state.filters.matches(entry)]
    ordered: list[ScoredEntry] = []
    for category in CATEGORY_ORDER:
        ordered.extend(entry for entry in filtered if entry.category is category)
    return ordered


def selected_entry(state: UiState) -> ScoredEntry | None:
    entries = visible_entries(state)
    if not entries:
        return None
    return entries[min(state.selection, len(entries) - 1)]


def details_entry(state: UiState) -> ScoredEntry | None:
    if state.details_key is None:
        return None
    return state.attention_set.get(state.details_key)


def selected_check(state: UiState) -> CiCheck | None:
    entry = details_entry(state)
    if entry is None or not entry.snapshot.checks:
        return None
    checks = entry.snapshot.checks
    return checks[min(state.check_selection, len(checks) - 1)]


def is_dimmed(state: UiState, entry: ScoredEntry, now: datetime) -> bool:
    """Drafts always; otherwise rows opened within the recency window."""
    if entry.snapshot.is_draft or entry.is_recently_opened:
        return True
    opened_at = state.opened_at.get(entry.key)
    return is_recently_opened(opened_at, now)


# =============================================================================
# Transitions
# =============================================================================

def _reconcile_selection(state: UiState) -> UiState:
    """Keep the selected PR selected if it is still visible, else clamp the index."""
    entries = visible_entries(state)
    if not entries:
        return replace(state, selection=0, selected_key=None)
    if state.selected_key is not None:
        for index, entry in enumerate(entries):
            if entry.key == state.selected_key:
                return replace(state, selection=index)
    index = max(0, min(state.selection, len(entries) - 1))
    return replace(state, selection=index, selected_key=entries[index].key)


def _move(state: UiState, delta: int) -> UiState:
    entries = visible_entries(state)
    if not entries:
        return replace(state, selection=0, selected_key=None)
    index = max(0, min(state.selection + delta, len(entries) - 1))
    return replace(state, selection=index, selected_key=entries[index].key)


def _move_check(state: UiState, delta: int) -> UiState:
    entry = details_entry(state)
    count = len(entry.snapshot.checks) if entry else 0
    if count == 0:
        return replace(state, check_selection=0)
    return replace(state, check_selection=max(0, min(state.check_selection + delta, count - 1)))


def _with_filters(state: UiState, filters: Filters) -> UiState:
    return _reconcile_selection(replace(state, filters=filters))


def _open(state: UiState, entry: ScoredEntry, url: str, now: datetime) -> tuple[UiState, tuple[Effect, ...]]:
    opened = dict(state.opened)
    opened[entry.key] = now
    state = replace(state, opened=tuple(sorted(opened.items())))
    return state, (OpenUrl(url), RecordOpened(entry.identity, now))


def _toggle(filters: Filters, name: str) -> Filters:
    return replace(filters, **{name: not getattr(filters, name)})


LIST_TOGGLES = {"n": "needs_you_only", "c": "failing_ci_only", "v": "review_requested_only"}
EDIT_TOGGLES = {"ctrl+n": "needs_you_only", "ctrl+f": "failing_ci_only", "ctrl+r": "review_requested_only"}
UP_KEYS = {"up", "k"}
DOWN_KEYS = {"down", "j"}


def _printable(event: KeyPress) -> str | None:
    char = event.character
    if char and len(char) == 1 and char.isprintable():
        return char
    return None


def _list_key(state: UiState, event: KeyPress, now: datetime) -> tuple[UiState, tuple[Effect, ...]]:
    key = event.key
    if key in UP_KEYS:
        return _move(state, -1), ()
    if key in DOWN_KEYS:
        return _move(state, 1), ()
    if key == "enter":
        entry = selected_entry(state)
        if entry is None:
            return state, ()
        return _open(state, entry, entry.snapshot.url, now)
    if key == "tab":
        entry = selected_entry(state)
        if entry is None:
            return state, ()
        return replace(state, view=View.DETAILS, details_key=entry.key, check_selection=0), ()
    if key in ("slash", "/") or event.character == "/":
        return replace(state, editing=True), ()
    if key in LIST_TOGGLES:
        return _with_filters(state, _toggle(state.filters, LIST_TOGGLES[key])), ()
    if key in ("x", "escape"):
        return _with_filters(state, Filters()), ()
    if key == "r":
        return state, (RequestRefresh(),)
    if key in ("question_mark", "?") or event.character == "?":
        return replace(state, show_help=True), ()
    if key == "q":
        return state, (Quit(),)
    return state, ()


def _editing_key(state: UiState, event: KeyPress) -> tuple[UiState, tuple[Effect, ...]]:
    key = event.key
    filters = state.filters
    if key == "up":
        return _move(state, -1), ()
    if key == "down":
        return _move(state, 1), ()
    if key == "enter":
        return replace(state, editing=False), ()
    if key == "escape":
        return _with_filters(replace(state, editing=False), replace(filters, text="")), ()
    if key == "backspace":
        return _with_filters(state, replace(filters, text=filters.text[:-1])), ()
    if key in EDIT_TOGGLES:
        return _with_filters(state, _toggle(filters, EDIT_TOGGLES[key])), ()
    if key == "ctrl+x":
        return _with_filters(state, Filters()), ()
    char = _printable(event)
    if char is not None:
        return _with_filters(state, replace(filters, text=filters.text + char)), ()
    return state, ()


def _details_key(state: UiState, event: KeyPress, now: datetime) -> tuple[UiState, tuple[Effect, ...]]:
    key = event.key
    entry = details_entry(state)
    if entry is None:
        return replace(state, view=View.LIST, details_key=None), ()
    if key in UP_KEYS:
        return _move_check(state, -1), ()
    if key in DOWN_KEYS:
        return _move_check(state, 1), ()
    if key == "enter":
        check = selected_check(state)
        url = check.url if check and check.url else entry.snapshot.url
        return _open(state, entry, url, now)
    if key == "f":
        return _open(state, entry, entry.snapshot.first_failing_url(), now)
    if key in ("tab", "escape"):
        return replace(state, view=View.LIST, details_key=None, check_selection=0), ()
    if key == "r":
        return state, (RequestRefresh(),)
    if key in ("question_mark", "?") or event.character == "?":
        return replace(state, show_help=True), ()
    if key == "q":
        return state, (Quit(),)
    return state, ()


def _on_key(state: UiState, event: KeyPress, now: datetime) -> tuple[UiState, tuple[Effect, ...]]:
    if event.key == "ctrl+c":
        return state, (Quit(),)
    if state.show_help:
        if event.key == "q":
            return state, (Quit(),)
        return replace(state, show_help=False), ()
    if state.view is View.DETAILS:
        return _details_key(state, event, now)
    if state.editing:
        return _editing_key(state, event)
    return _list_key(state, event, now)


def _on_refresh_completed(state: UiState, event: RefreshCompleted) -> tuple[UiState, tuple[Effect, ...]]:
    outcome = event.outcome
    if not outcome.succeeded:
        return replace(state, refreshing=False, last_error=outcome.error or "refresh failed"), ()

    incoming = outcome.attention_set
    if incoming is None or incoming.generation <= state.attention_set.generation:
        # Stale result: never regress to an older set.
        return replace(state, refreshing=False), ()

    current_repos = repos_in(incoming)
    if state.attention_set.generation == 0 and not state.seen_repos:
        # Nothing loaded yet (--no-cache start): the first set only seeds the repos.
        new_repos: tuple[str, ...] = ()
    else:
        new_repos = tuple(sorted(current_repos - state.seen_repos))
    state = replace(
        state,
        attention_set=incoming,
        seen_repos=current_repos,
        refreshing=False,
        last_error=None,
        last_refresh_at=outcome.finished_at,
    )
    state = _reconcile_selection(state)
    if state.view is View.DETAILS:
        if details_entry(state) is None:
            state = replace(state, view=View.LIST, details_key=None, check_selection=0)
        else:
            state = _move_check(state, 0)

    effects: list[Effect] = []
    if state.options.notifications and (outcome.events or new_repos):
        effects.append(Notify(outcome.events, new_repos))
    if state.options.bell and any(e.kind in BELL_KINDS for e in outcome.events):
        effects.append(Bell())
    return state, tuple(effects)


def update(state: UiState, event: Event, *, now: datetime) -> tuple[UiState, tuple[Effect, ...]]:
    """Apply one event; returns the next state and the effects to run."""
    if isinstance(event, KeyPress):
        return _on_key(state, event, now)
    if isinstance(event, RefreshStarted):
        return replace(state, refreshing=True), ()
    if isinstance(event, RefreshCompleted):
        return _on_refresh_completed(state, event)
    if isinstance(event, Resize):
        return replace(state, width=event.width, height=event.height), ()
    raise TypeError(f"Unknown event: {event!r}")

