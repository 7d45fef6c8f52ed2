from __future__ import annotations

from unittest.mock import Mock, patch

from needle.model import CheckState, CiCheck, CiState, TransitionEvent, TransitionKind
from needle.notify import (
    NEEDS_YOU_TITLE,
    NEW_REPO_TITLE,
    Notification,
    NotificationDispatcher,
    build_notifications,
    truncate,
)
from needle.scoring import Scorer


def make_event(make_snapshot, now, kind, number=1, **kwargs):
    entry = Scorer("alice").entry(make_snapshot(number=number, **kwargs), None, now)
    return TransitionEvent(kind, entry)


def test_truncate():
    assert truncate("short") == "short"
    long_title = "x" * 80
    assert len(truncate(long_title)) == 50
    assert truncate(long_title).endswith("…")


def test_build_notifications_caps_and_orders(make_snapshot, now):
    failing = (CiCheck("unit", CheckState.FAILURE, "https://ci/unit"),)
    events = [
        make_event(make_snapshot, now, TransitionKind.READY_TO_MERGE, 50),
        *[make_event(make_snapshot, now, TransitionKind.CI_FAILED, n, ci_state=CiState.FAILURE, checks=failing)
          for n in range(1, 6)],
        make_event(make_snapshot, now, TransitionKind.REVIEW_REQUESTED, 20),
        make_event(make_snapshot, now, TransitionKind.ENTERED_NEEDS_YOU, 1),
        make_event(make_snapshot, now, TransitionKind.ENTERED_NEEDS_YOU, 20),
    ]

    notifications = build_notifications(events)

    titles = [n.title for n in notifications]
    assert titles == [
        "❌ CI Failed", "❌ CI Failed", "❌ CI Failed",
        "👀 Review Requested",
        NEEDS_YOU_TITLE,
        "✅ Ready to Merge",
    ]
    assert notifications[0].url == "https://ci/unit"
    assert notifications[0].subtitle == "acme/api"
    assert notifications[4].body == "2 PRs need your attention"


def test_no_events_no_notifications():
    assert build_notifications([]) == []


def test_new_repos_come_first(make_snapshot, now):
    events = [make_event(make_snapshot, now, TransitionKind.ENTERED_NEEDS_YOU)]

    notifications = build_notifications(events, ["orbit/web", "zeta/cli"])

    assert [n.title for n in notifications] == [NEW_REPO_TITLE, NEW_REPO_TITLE, NEEDS_YOU_TITLE]
    assert notifications[0].body == "PRs from orbit/web now visible"
    assert notifications[0].url is None


def test_message_puts_repo_above_title():
    assert Notification("T", "Fix login", subtitle="acme/api").message == "acme/api\nFix login"
    assert Notification("T", "Body").message == "Body"


def test_dispatcher_sends_and_survives_failures(make_snapshot, now):
    notifier = Mock()
    notifier.send.side_effect = [None, RuntimeError("no DBus session")]
    dispatcher = NotificationDispatcher(notifier=notifier)
    events = [
        make_event(make_snapshot, now, TransitionKind.CI_FAILED, 1, ci_state=CiState.FAILURE),
        make_event(make_snapshot, now, TransitionKind.REVIEW_REQUESTED, 2),
    ]

    assert dispatcher.dispatch(events) == 1
    assert notifier.send.call_count == 2
    first = notifier.send.call_args_list[0].kwargs
    assert first["title"] == "❌ CI Failed"
    assert first["message"].startswith("acme/api\n")
    assert first["on_clicked"] is not None


def test_click_opens_url():
    notifier = Mock()
    dispatcher = NotificationDispatcher(notifier=notifier)

    with patch("needle.notify.webbrowser.open") as open_url:
        assert dispatcher.send(Notification("T", "B", url="https://x"))
        notifier.send.call_args.kwargs["on_clicked"]()

    open_url.assert_called_once_with("https://x")


def test_summary_has_no_click_action():
    notifier = Mock()
    NotificationDispatcher(notifier=notifier).send(Notification(NEEDS_YOU_TITLE, "1 PR needs your attention"))

    assert notifier.send.call_args.kwargs["on_clicked"] is None


def test_dispatch_includes_new_repos():
    notifier = Mock()

    assert NotificationDispatcher(notifier=notifier).dispatch([], ["zeta/cli"]) == 1
    assert notifier.send.call_args.kwargs["title"] == NEW_REPO_TITLE


def test_notifier_is_created_lazily():
    with patch("needle.notify.DesktopNotifierSync") as notifier_cls:
        dispatcher = NotificationDispatcher()
        notifier_cls.assert_not_called()

        dispatcher.send(Notification("T", "B"))

    notifier_cls.assert_called_once_with(app_name="Needle")
    notifier_cls.return_value.send.assert_called_once()


def test_disabled_dispatcher_does_nothing(make_snapshot, now):
    notifier = Mock()
    dispatcher = NotificationDispatcher(enabled=False, notifier=notifier)

    assert dispatcher.dispatch([make_event(make_snapshot, now, TransitionKind.CI_FAILED)], ["zeta/cli"]) == 0
    notifier.send.assert_not_called()
