from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import Mock

from needle.config import NeedleConfig
from needle.github import FetchError
from needle.model import Category, CheckState, CiCheck, CiState, PullRequestIdentity, ReviewState, TransitionKind
from needle.refresh import (
    RefreshCoordinator,
    RefreshStatus,
    RefreshTimer,
    ScopeFilters,
    build_snapshot,
    review_state_for,
)
from needle.store import SnapshotStore


USER = "alice"
FAILING = (CiCheck("unit", CheckState.FAILURE, "https://ci/unit"),)


class FakeSource:
    def __init__(self, *batches):
        self.batches = list(batches)
        self.calls = 0

    def viewer_login(self):
        return USER

    def fetch_attention_prs(self, user, days):
        self.calls += 1
        batch = self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


def make_coordinator(source, tmp_path=None, now=None, config=None, store=None, publish=None):
    if store is None and tmp_path is not None:
        store = SnapshotStore(db_path=tmp_path / "needle.db")
    return RefreshCoordinator(
        source,
        store,
        config or NeedleConfig(),
        USER,
        publish=publish,
        clock=lambda: now,
    )


def test_stale_prs_are_excluded_from_window(make_raw, now, tmp_path):
    fresh = make_raw(number=1, checks=FAILING)
    stale = make_raw(number=2, checks=FAILING, updated_at=now - timedelta(days=31),
                     user_review_requested=True)
    coordinator = make_coordinator(FakeSource([fresh, stale]), tmp_path, now, NeedleConfig(days=30))

    outcome = coordinator.refresh_now()

    assert outcome.succeeded
    assert [e.key for e in outcome.attention_set] == ["acme/api#1"]


def test_zero_days_means_no_window(make_raw, now, tmp_path):
    old = make_raw(number=2, updated_at=now - timedelta(days=400))
    coordinator = make_coordinator(FakeSource([old]), tmp_path, now, NeedleConfig(days=0))

    assert len(coordinator.refresh_now().attention_set) == 1


def test_dropped_prs_are_pruned_and_not_resurrected(make_raw, now, tmp_path):
    a = make_raw(number=1)
    b = make_raw(number=2)
    coordinator = make_coordinator(FakeSource([a, b], [a]), tmp_path, now)

    coordinator.refresh_now()
    assert coordinator.store.count() == 2
    coordinator.refresh_now()

    assert [r.key for r in coordinator.store.load_all()] == ["acme/api#1"]
    restarted = make_coordinator(FakeSource([]), tmp_path, now)
    assert [e.key for e in restarted.seed()] == ["acme/api#1"]


def test_failed_cycle_leaves_store_unchanged(make_raw, now, tmp_path):
    published = []
    source = FakeSource([make_raw(number=1), make_raw(number=2)], FetchError("network down"))
    coordinator = make_coordinator(source, tmp_path, now, publish=published.append)

    coordinator.refresh_now()
    before = coordinator.store.load_all()
    outcome = coordinator.refresh_now()

    assert not outcome.succeeded
    assert outcome.error == "network down"
    assert outcome.attention_set is None
    assert coordinator.store.load_all() == before
    assert [o.succeeded for o in published] == [True, False]
    assert coordinator.status is RefreshStatus.IDLE


def test_unexpected_source_error_is_reported(now, tmp_path):
    coordinator = make_coordinator(FakeSource(ValueError("bad payload")), tmp_path, now)

    outcome = coordinator.refresh_now()

    assert not outcome.succeeded
    assert "bad payload" in outcome.error


def test_generations_increase(make_raw, now, tmp_path):
    coordinator = make_coordinator(FakeSource([make_raw()]), tmp_path, now)

    assert coordinator.seed().generation == 0
    assert coordinator.refresh_now().generation == 1
    assert coordinator.refresh_now().generation == 2


def test_new_failure_fires_once(make_raw, now, tmp_path):
    raw = make_raw(number=1, checks=FAILING)
    coordinator = make_coordinator(FakeSource([raw]), tmp_path, now)

    first = coordinator.refresh_now()
    second = coordinator.refresh_now()

    first_kinds = {(e.key, e.kind) for e in first.events}
    assert ("acme/api#1", TransitionKind.CI_FAILED) in first_kinds
    assert ("acme/api#1", TransitionKind.ENTERED_NEEDS_YOU) in first_kinds
    assert second.events == ()
    entry = second.attention_set.get("acme/api#1")
    assert entry.score == -30
    assert entry.category is Category.WAITING_ON_OTHERS


def test_events_are_unique_per_pr_and_kind(make_raw, now, tmp_path):
    raws = [make_raw(number=n, author="bob", checks=FAILING, user_review_requested=True) for n in (1, 2)]
    coordinator = make_coordinator(FakeSource(raws), tmp_path, now)

    events = coordinator.refresh_now().events

    pairs = [(e.key, e.kind) for e in events]
    assert len(pairs) == len(set(pairs))
    assert {kind for _, kind in pairs} == {
        TransitionKind.CI_FAILED,
        TransitionKind.REVIEW_REQUESTED,
        TransitionKind.ENTERED_NEEDS_YOU,
    }


def test_ready_to_merge_transition(make_raw, now, tmp_path):
    running = make_raw(checks=(CiCheck("unit", CheckState.RUNNING, started_at=now),))
    green = make_raw()
    coordinator = make_coordinator(FakeSource([running], [green]), tmp_path, now)

    coordinator.refresh_now()
    outcome = coordinator.refresh_now()

    assert [e.kind for e in outcome.events] == [TransitionKind.READY_TO_MERGE]


def test_scope_filters(make_raw, now, tmp_path):
    raws = [
        make_raw(owner="acme", repo="api", number=1),
        make_raw(owner="acme", repo="sandbox", number=2),
        make_raw(owner="orbit", repo="web", number=3),
    ]
    config = NeedleConfig(org=("ACME",), exclude=("acme/sandbox",))
    coordinator = make_coordinator(FakeSource(raws), tmp_path, now, config)

    assert [e.key for e in coordinator.refresh_now().attention_set] == ["acme/api#1"]


def test_scope_include_list():
    scope = ScopeFilters(include_repos=("acme/api",))
    assert scope.matches(PullRequestIdentity("acme", "api", 1))
    assert scope.matches(PullRequestIdentity("Acme", "API", 1))
    assert not scope.matches(PullRequestIdentity("acme", "web", 1))


def test_unrelated_prs_are_excluded(make_raw, now, tmp_path):
    other = make_raw(number=5, author="bob")
    coordinator = make_coordinator(FakeSource([other]), tmp_path, now)

    assert len(coordinator.refresh_now().attention_set) == 0


def test_team_requests_only_when_enabled(make_raw):
    raw = make_raw(author="bob", team_review_requested=True)

    assert review_state_for(raw, USER, include_team_requests=False) is ReviewState.NONE
    assert review_state_for(raw, USER, include_team_requests=True) is ReviewState.REQUESTED


def test_build_snapshot_approval(make_raw, now):
    own = build_snapshot(make_raw(review_decision="APPROVED", approved_at=now), USER)
    theirs = build_snapshot(make_raw(author="bob", review_decision="APPROVED"), USER)
    viewer = build_snapshot(make_raw(author="bob", viewer_approved=True, approved_at=now), USER)

    assert own.review_state is ReviewState.APPROVED
    assert theirs.review_state is ReviewState.NONE
    assert viewer.review_state is ReviewState.APPROVED
    assert viewer.approved_at == now
    assert own.ci_state is CiState.SUCCESS


def test_seed_applies_window_and_keeps_last_opened(make_raw, now, tmp_path):
    recent = make_raw(number=1)
    old = make_raw(number=2, updated_at=now - timedelta(days=10))
    coordinator = make_coordinator(FakeSource([recent, old]), tmp_path, now, NeedleConfig(days=0))
    coordinator.refresh_now()
    coordinator.store.record_opened(PullRequestIdentity("acme", "api", 1), now - timedelta(minutes=5))

    narrowed = make_coordinator(FakeSource([]), tmp_path, now, NeedleConfig(days=7))
    seeded = narrowed.seed()

    assert seeded.generation == 0
    assert [e.key for e in seeded] == ["acme/api#1"]
    entry = seeded.get("acme/api#1")
    assert entry.is_recently_opened
    assert not entry.is_new_ci_failure


def test_works_without_store(make_raw, now):
    coordinator = make_coordinator(FakeSource([make_raw()]), None, now)

    assert coordinator.refresh_now().succeeded
    assert coordinator.seed().entries == ()
    assert coordinator.record_opened(PullRequestIdentity("acme", "api", 1)) is None


def test_publish_happens_before_persist(make_raw, now, tmp_path):
    store = SnapshotStore(db_path=tmp_path / "needle.db")
    counts = []
    coordinator = make_coordinator(
        FakeSource([make_raw()]), store=store, now=now, publish=lambda outcome: counts.append(store.count())
    )

    coordinator.refresh_now()

    assert counts == [0]
    assert store.count() == 1


def test_concurrent_requests_coalesce(make_raw, now, tmp_path):
    gate = threading.Event()
    entered = threading.Event()
    source = Mock()

    def slow_fetch(user, days):
        entered.set()
        gate.wait(5)
        return [make_raw()]

    source.fetch_attention_prs.side_effect = slow_fetch
    coordinator = make_coordinator(source, tmp_path, now)

    assert coordinator.request_refresh() is True
    assert entered.wait(5)
    assert coordinator.is_fetching
    assert coordinator.request_refresh() is False
    assert coordinator.refresh_now() is None
    gate.set()
    coordinator.wait(5)

    assert source.fetch_attention_prs.call_count == 1
    assert coordinator.status is RefreshStatus.IDLE


def test_record_opened_runs_in_background(make_raw, now, tmp_path):
    coordinator = make_coordinator(FakeSource([make_raw()]), tmp_path, now)
    coordinator.refresh_now()

    thread = coordinator.record_opened(PullRequestIdentity("acme", "api", 1), now)
    thread.join(5)

    assert coordinator.store.get(PullRequestIdentity("acme", "api", 1)).last_opened_at == now


def test_refresh_timer_switches_interval():
    clock = Mock(return_value=100.0)
    timer = RefreshTimer(list_interval=180, details_interval=30, clock=clock)

    assert timer.due() is False
    assert timer.deadline == 280.0
    timer.switch_view(True)
    assert timer.deadline == 130.0
    clock.return_value = 131.0
    assert timer.due() is True
    timer.reset()
    assert timer.remaining() == 30.0
    timer.switch_view(True)
    assert timer.deadline == 161.0


def test_refresh_timer_from_config():
    timer = RefreshTimer.from_config(NeedleConfig(refresh_interval_list_secs=60, refresh_interval_details_secs=5))
    assert timer.interval == 60.0
    timer.switch_view(True)
    assert timer.interval == 5.0


def test_open_before_first_commit_survives(make_raw, now, tmp_path):
    identity = PullRequestIdentity("acme", "api", 1)

    def open_on_publish(outcome):
        coordinator.record_opened(identity, now).join(5)

    coordinator = make_coordinator(FakeSource([make_raw()]), tmp_path, now, publish=open_on_publish)
    coordinator.refresh_now()

    assert coordinator.store.get(identity).last_opened_at == now
    assert coordinator.seed().get("acme/api#1").is_recently_opened


def test_deferred_open_for_vanished_pr_is_dropped(make_raw, now, tmp_path):
    coordinator = make_coordinator(FakeSource([make_raw(number=2)]), tmp_path, now)

    coordinator.record_opened(PullRequestIdentity("acme", "api", 1), now).join(5)
    coordinator.refresh_now()

    assert coordinator.store.get(PullRequestIdentity("acme", "api", 1)) is None
    assert coordinator._pending_opens == {}
