"""
Textual dashboard for Needle.

The app is a thin driver: it turns terminal input and refresh outcomes into
state-machine events, redraws from the resulting UiState, and runs the
returned effects (browser, store, refresh, notifications, bell, quit).
Blocking work always goes to a worker thread.
"""

from __future__ import annotations

import sys
import threading
import webbrowser
from functools import partial
from typing import Callable

from loguru import logger
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Static

from .model import utcnow
from .notify import NotificationDispatcher
from .refresh import RefreshCoordinator, RefreshOutcome, RefreshTimer
from .render import render_details, render_footer, render_help, render_list
from .state import (
    Bell,
    Effect,
    Event,
    KeyPress,
    Notify,
    OpenUrl,
    Quit,
    RecordOpened,
    RefreshCompleted,
    RefreshStarted,
    RequestRefresh,
    Resize,
    UiState,
    View,
    update,
)


TICK_SECONDS = 1.0


class TerminalError(Exception):
    """The dashboard cannot take over the terminal."""


class NeedleApp(App):
    TITLE = "needle"
    ENABLE_COMMAND_PALETTE = False
    BINDINGS = [
        Binding("tab", "press_key('tab')", "Details", show=False, priority=True),
        Binding("ctrl+c", "press_key('ctrl+c')", "Quit", show=False, priority=True),
    ]

    CSS = """
    Screen {
      layout: vertical;
    }
    #body {
      height: 1fr;
    }
    #footer {
      height: 1;
      dock: bottom;
    }
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        state: UiState,
        timer: RefreshTimer,
        dispatcher: NotificationDispatcher,
        open_url: Callable[[str], object] = webbrowser.open,
        refresh_on_start: bool = True,
    ):
        super().__init__()
        self.coordinator = coordinator
        self.state = state
        self.timer = timer
        self.dispatcher = dispatcher
        self.open_url = open_url
        self.refresh_on_start = refresh_on_start
        self._ui_thread: int | None = None
        coordinator.publish = self.publish_outcome

    def compose(self) -> ComposeResult:
        yield Static("", id="body")
        yield Static("", id="footer")

    def on_mount(self) -> None:
        self._ui_thread = threading.get_ident()
        self.apply_event(Resize(self.size.width, self.size.height))
        self.timer.reset()
        self.set_interval(TICK_SECONDS, self._tick)
        if self.refresh_on_start:
            self._request_refresh()

    # =========================================================================
    # Input
    # =========================================================================

    def on_key(self, event: events.Key) -> None:
        event.stop()
        event.prevent_default()
        self.apply_event(KeyPress(event.key, event.character))

    def on_resize(self, event: events.Resize) -> None:
        self.apply_event(Resize(event.size.width, event.size.height))

    def action_press_key(self, key: str) -> None:
        self.apply_event(KeyPress(key))

    def publish_outcome(self, outcome: RefreshOutcome) -> None:
        """Called by the coordinator, usually from its worker thread."""
        event = RefreshCompleted(outcome)
        if self._ui_thread is None or threading.get_ident() == self._ui_thread:
            self.apply_event(event)
            return
        try:
            self.call_from_thread(self.apply_event, event)
        except RuntimeError as e:
            # The app already exited; the outcome has nowhere to go.
            logger.debug(f"Dropped refresh outcome after shutdown: {e}")

    # =========================================================================
    # State machine
    # =========================================================================

    def apply_event(self, event: Event) -> None:
        previous_view = self.state.view
        self.state, effects = update(self.state, event, now=utcnow())
        if self.state.view is not previous_view:
            self.timer.switch_view(self.state.view is View.DETAILS)
        for effect in effects:
            self._run_effect(effect)
        self.redraw()

    def _run_effect(self, effect: Effect) -> None:
        if isinstance(effect, OpenUrl):
            self.run_worker(partial(self.open_url, effect.url), thread=True, group="open")
        elif isinstance(effect, RecordOpened):
            self.coordinator.record_opened(effect.identity, effect.when)
        elif isinstance(effect, RequestRefresh):
            self._request_refresh()
        elif isinstance(effect, Notify):
            work = partial(self.dispatcher.dispatch, effect.events, effect.new_repos)
            self.run_worker(work, thread=True, group="notify")
        elif isinstance(effect, Bell):
            self.bell()
        elif isinstance(effect, Quit):
            self.exit()

    def _request_refresh(self) -> None:
        if self.coordinator.request_refresh():
            self.timer.reset()
            self.apply_event(RefreshStarted())

    def _tick(self) -> None:
        if self.timer.due():
            if self.coordinator.is_fetching:
                # A tick during a fetch is dropped, not queued.
                self.timer.reset()
            else:
                logger.debug(f"Auto-refresh ({self.state.view.value} view)")
                self._request_refresh()
                return
        self.redraw()

    # =========================================================================
    # Rendering
    # =========================================================================

    def redraw(self) -> None:
        if self._ui_thread is None:
            return
        now = utcnow()
        width = max(1, self.state.width)
        body_height = max(0, self.state.height - 1)
        state = self.state

        if state.show_help:
            body = render_help()
        elif state.view is View.DETAILS:
            body = render_details(state, width, body_height, now)
        else:
            body = render_list(state, width, body_height, now)

        self.query_one("#body", Static).update(body)
        self.query_one("#footer", Static).update(render_footer(state, width, now))


def ensure_terminal() -> None:
    if not sys.stdin.isatty() or not sys.stdout.isatty():
        raise TerminalError("Not a TTY: run `needle` in an interactive terminal.")


def run_dashboard(
    coordinator: RefreshCoordinator,
    state: UiState,
    timer: RefreshTimer,
    dispatcher: NotificationDispatcher,
) -> None:
    """Run the dashboard until the user quits."""
    ensure_terminal()
    app = NeedleApp(coordinator, state, timer, dispatcher)
    app.run()
    if app.return_code not in (None, 0):
        raise TerminalError(f"Dashboard exited with code {app.return_code}")
