"""
Desktop notifications for Needle.

Turns a cycle's transition events into at most a handful of OS notifications:
- one per repository that newly shows up in the attention set
- up to 3 each for new CI failures, new review requests, and ready-to-merge PRs
- one summary for PRs that entered "needs you"

Delivery goes through desktop-notifier, which talks to the native notification
center on macOS, Linux (DBus) and Windows. Notifications are best-effort;
failures are logged and dropped.
"""

from __future__ import annotations

import threading
import webbrowser
from dataclasses import dataclass
from functools import partial
from typing import Iterable

from desktop_notifier import DesktopNotifierSync
from loguru import logger

from .model import TransitionEvent, TransitionKind


APP_NAME = "Needle"
MAX_PER_KIND = 3
TITLE_MAX_LEN = 50
DISPLAY_SECONDS = 5

NOTIFICATION_TITLES = {
    TransitionKind.CI_FAILED: "❌ CI Failed",
    TransitionKind.REVIEW_REQUESTED: "👀 Review Requested",
    TransitionKind.READY_TO_MERGE: "✅ Ready to Merge",
}
NEEDS_YOU_TITLE = "⚠️ Needle: Action Required"
NEW_REPO_TITLE = "📁 New Repository"


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    subtitle: str | None = None
    url: str | None = None

    @property
    def message(self) -> str:
        """Body text as shown by the OS; the repo line goes first."""
        if self.subtitle:
            return f"{self.subtitle}\n{self.body}"
        return self.body


def truncate(text: str, max_len: int = TITLE_MAX_LEN) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def needs_you_body(count: int) -> str:
    if count == 1:
        return "1 PR needs your attention"
    return f"{count} PRs need your attention"


def new_repo_notification(repo: str) -> Notification:
    return Notification(title=NEW_REPO_TITLE, body=f"PRs from {repo} now visible")


def build_notifications(
    events: Iterable[TransitionEvent],
    new_repos: Iterable[str] = (),
) -> list[Notification]:
    """Group events into the notifications to show, in a fixed order."""
    by_kind: dict[TransitionKind, list[TransitionEvent]] = {kind: [] for kind in TransitionKind}
    for event in events:
        by_kind[event.kind].append(event)

    notifications = [new_repo_notification(repo) for repo in new_repos]
    for kind in (TransitionKind.CI_FAILED, TransitionKind.REVIEW_REQUESTED):
        for event in by_kind[kind][:MAX_PER_KIND]:
            notifications.append(_per_pr(kind, event))

    entered = by_kind[TransitionKind.ENTERED_NEEDS_YOU]
    if entered:
        notifications.append(Notification(title=NEEDS_YOU_TITLE, body=needs_you_body(len(entered))))

    for event in by_kind[TransitionKind.READY_TO_MERGE][:MAX_PER_KIND]:
        notifications.append(_per_pr(TransitionKind.READY_TO_MERGE, event))
    return notifications


def _per_pr(kind: TransitionKind, event: TransitionEvent) -> Notification:
    snapshot = event.entry.snapshot
    url = snapshot.first_failing_url() if kind is TransitionKind.CI_FAILED else snapshot.url
    return Notification(
        title=NOTIFICATION_TITLES[kind],
        subtitle=snapshot.identity.full_name,
        body=truncate(snapshot.title),
        url=url,
    )


class NotificationDispatcher:
    """Best-effort delivery of transition events as desktop notifications."""

    def __init__(self, enabled: bool = True, notifier: DesktopNotifierSync | None = None):
        self.enabled = enabled
        self._notifier = notifier
        # The sync notifier drives its own event loop; one send at a time.
        self._lock = threading.Lock()

    @property
    def notifier(self) -> DesktopNotifierSync:
        if self._notifier is None:
            self._notifier = DesktopNotifierSync(app_name=APP_NAME)
        return self._notifier

    def dispatch(self, events: Iterable[TransitionEvent], new_repos: Iterable[str] = ()) -> int:
        """Show notifications for `events` and `new_repos`. Returns how many were handed to the OS."""
        if not self.enabled:
            return 0
        sent = 0
        for notification in build_notifications(events, new_repos):
            if self.send(notification):
                sent += 1
        return sent

    def send(self, notification: Notification) -> bool:
        on_clicked = partial(webbrowser.open, notification.url) if notification.url else None
        with self._lock:
            try:
                self.notifier.send(
                    title=notification.title,
                    message=notification.message,
                    on_clicked=on_clicked,
                    timeout=DISPLAY_SECONDS,
                )
            except Exception as e:
                # Any backend failure (no DBus session, unsigned interpreter) is non-fatal.
                logger.debug(f"Notification '{notification.title}' failed: {e}")
                return False
        return True
