"""
Refresh coordination for Needle.

One RefreshCoordinator owns the fetch lifecycle:

    IDLE -> FETCHING -> (SUCCEEDED | FAILED) -> IDLE

A cycle loads the last-seen records, fetches raw PRs, builds and filters
snapshots, scores them, publishes a new AttentionSet together with its
transition events, and finally commits the records to the snapshot store.
Requests that arrive while a cycle is in flight are dropped, not queued.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Protocol

from loguru import logger

from .config import NeedleConfig
from .github import FetchError, RawPullRequest
from .model import (
    AttentionSet,
    Category,
    PersistedRecord,
    PullRequestIdentity,
    PullRequestSnapshot,
    ReviewState,
    ScoredEntry,
    TransitionEvent,
    TransitionKind,
    aggregate_ci_state,
    oldest_running_start,
    utcnow,
)
from .scoring import Scorer, blocker_predicate, build_attention_set
from .store import SnapshotStore, StoreError


class PullRequestSource(Protocol):
    """What the coordinator needs from GitHubClient (or DemoSource)."""

    def viewer_login(self) -> str: ...

    def fetch_attention_prs(self, user: str, days: int) -> list[RawPullRequest]: ...


class RefreshStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of one cycle, published to the UI."""
    succeeded: bool
    attention_set: AttentionSet | None = None
    events: tuple[TransitionEvent, ...] = ()
    error: str | None = None
    finished_at: datetime | None = None

    @property
    def generation(self) -> int:
        return self.attention_set.generation if self.attention_set else -1


@dataclass(frozen=True)
class ScopeFilters:
    """Org and repository include/exclude lists."""
    orgs: tuple[str, ...] = ()
    include_repos: tuple[str, ...] = ()
    exclude_repos: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: NeedleConfig) -> "ScopeFilters":
        return cls(orgs=config.org, include_repos=config.include, exclude_repos=config.exclude)

    def matches(self, identity: PullRequestIdentity) -> bool:
        owner = identity.owner.lower()
        full_name = identity.full_name.lower()
        if self.orgs and owner not in {o.lower() for o in self.orgs}:
            return False
        if self.include_repos and full_name not in {r.lower() for r in self.include_repos}:
            return False
        if full_name in {r.lower() for r in self.exclude_repos}:
            return False
        return True


def window_cutoff(days: int, now: datetime) -> datetime | None:
    if days <= 0:
        return None
    return now - timedelta(days=days)


def review_state_for(raw: RawPullRequest, user: str, include_team_requests: bool) -> ReviewState:
    if raw.user_review_requested or (include_team_requests and raw.team_review_requested):
        return ReviewState.REQUESTED
    if raw.viewer_approved:
        return ReviewState.APPROVED
    if raw.author.lower() == user.lower() and raw.review_decision == "APPROVED":
        return ReviewState.APPROVED
    return ReviewState.NONE


def build_snapshot(raw: RawPullRequest, user: str, include_team_requests: bool = False) -> PullRequestSnapshot:
    review_state = review_state_for(raw, user, include_team_requests)
    return PullRequestSnapshot(
        identity=PullRequestIdentity(raw.owner, raw.repo, raw.number),
        title=raw.title,
        url=raw.url,
        author=raw.author,
        is_draft=raw.is_draft,
        updated_at=raw.updated_at,
        latest_commit_sha=raw.head_sha,
        ci_state=aggregate_ci_state(raw.checks),
        review_state=review_state,
        ci_started_at=oldest_running_start(raw.checks),
        approved_at=raw.approved_at if review_state is ReviewState.APPROVED else None,
        checks=raw.checks,
        mergeable=raw.mergeable,
        merge_state_status=raw.merge_state_status,
    )


def is_included(
    snapshot: PullRequestSnapshot,
    user: str,
    cutoff: datetime | None,
    scope: ScopeFilters,
) -> bool:
    """Author or requested reviewer, inside the day window, inside the scope."""
    relevant = snapshot.author.lower() == user.lower() or snapshot.review_state is ReviewState.REQUESTED
    if not relevant:
        return False
    if cutoff is not None and snapshot.updated_at < cutoff:
        return False
    return scope.matches(snapshot.identity)


def diff_transitions(
    entries: Iterable[ScoredEntry],
    records: dict[str, PersistedRecord],
) -> list[TransitionEvent]:
    """Transition events for one cycle; at most one per (PR, kind)."""
    events: list[TransitionEvent] = []
    for entry in entries:
        previous = records.get(entry.key)
        previous_category = previous.last_category if previous else None
        if entry.category is Category.NEEDS_YOU and previous_category is not Category.NEEDS_YOU:
            events.append(TransitionEvent(TransitionKind.ENTERED_NEEDS_YOU, entry))
        if entry.is_new_ci_failure:
            events.append(TransitionEvent(TransitionKind.CI_FAILED, entry))
        if entry.is_new_review_request:
            events.append(TransitionEvent(TransitionKind.REVIEW_REQUESTED, entry))
        if entry.category is Category.READY_TO_MERGE and previous_category is not Category.READY_TO_MERGE:
            events.append(TransitionEvent(TransitionKind.READY_TO_MERGE, entry))
    return events


class RefreshCoordinator:
    """Runs at most one refresh cycle at a time and publishes its outcome."""

    def __init__(
        self,
        source: PullRequestSource,
        store: SnapshotStore | None,
        config: NeedleConfig,
        user: str,
        publish: Callable[[RefreshOutcome], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.store = store
        self.config = config
        self.user = user
        self.scope = ScopeFilters.from_config(config)
        self.scorer = Scorer(user, blocker_predicate(config.ready_to_merge_requires_approval))
        self.publish = publish or (lambda outcome: None)
        self._clock = clock
        self._lock = threading.Lock()
        self._status = RefreshStatus.IDLE
        self._generation = 0
        self._thread: threading.Thread | None = None
        self._pending_opens: dict[str, tuple[PullRequestIdentity, datetime]] = {}

    @property
    def status(self) -> RefreshStatus:
        with self._lock:
            return self._status

    @property
    def is_fetching(self) -> bool:
        return self.status is RefreshStatus.FETCHING

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def _begin(self) -> bool:
        with self._lock:
            if self._status is RefreshStatus.FETCHING:
                return False
            self._status = RefreshStatus.FETCHING
            return True

    def _finish(self, status: RefreshStatus) -> None:
        with self._lock:
            self._status = status

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _load_records(self) -> dict[str, PersistedRecord]:
        if self.store is None:
            return {}
        return {record.key: record for record in self.store.load_all()}

    # =========================================================================
    # Entry points
    # =========================================================================

    def request_refresh(self) -> bool:
        """Start a cycle on a worker thread. Returns False if one is already running."""
        if not self._begin():
            logger.debug("Refresh already in flight; request dropped")
            return False
        self._thread = threading.Thread(target=self._run_cycle, name="needle-refresh", daemon=True)
        self._thread.start()
        return True

    def refresh_now(self) -> RefreshOutcome | None:
        """Run a cycle on the calling thread. Returns None if one is already running."""
        if not self._begin():
            return None
        return self._run_cycle()

    def wait(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def seed(self) -> AttentionSet:
        """Generation-0 attention set from the stored records, for the cold start."""
        now = self._clock()
        cutoff = window_cutoff(self.config.days, now)
        entries = []
        for record in self._load_records().values():
            snapshot = record.to_snapshot()
            if cutoff is not None and snapshot.updated_at < cutoff:
                continue
            if not self.scope.matches(snapshot.identity):
                continue
            entries.append(self.scorer.entry(snapshot, record, now, detect_transitions=False))
        logger.debug(f"Seeded {len(entries)} PR(s) from the snapshot store")
        return build_attention_set(entries, generation=0, fetched_at=None)

    def record_opened(self, identity: PullRequestIdentity, when: datetime | None = None) -> threading.Thread | None:
        """Persist last_opened_at on a worker thread."""
        if self.store is None:
            return None
        when = when or self._clock()
        thread = threading.Thread(
            target=self._record_opened,
            args=(identity, when),
            name="needle-record-opened",
            daemon=True,
        )
        thread.start()
        return thread

    def _record_opened(self, identity: PullRequestIdentity, when: datetime, defer: bool = True) -> None:
        try:
            written = self.store.record_opened(identity, when)
        except StoreError as e:
            logger.warning(f"Could not record {identity} as opened: {e}")
            return
        if written:
            return
        if defer:
            # New this cycle and not committed yet; re-applied after the commit.
            with self._lock:
                self._pending_opens[identity.key] = (identity, when)
            logger.debug(f"{identity} has no stored record yet; open deferred to the cycle commit")
        else:
            logger.debug(f"{identity} left the attention set before its open was stored")

    def _flush_pending_opens(self) -> None:
        with self._lock:
            pending, self._pending_opens = self._pending_opens, {}
        for identity, when in pending.values():
            self._record_opened(identity, when, defer=False)

    # =========================================================================
    # Cycle
    # =========================================================================

    def _run_cycle(self) -> RefreshOutcome:
        started = time.monotonic()
        try:
            outcome, records, keep = self._compute()
        except FetchError as e:
            logger.warning(f"Refresh failed: {e}")
            return self._fail(str(e))
        except Exception as e:
            logger.exception(f"Refresh failed unexpectedly: {e}")
            return self._fail(str(e))

        self._publish(outcome)
        self._persist(records, keep)
        self._finish(RefreshStatus.SUCCEEDED)
        logger.info(
            f"Refresh #{outcome.generation} done: {len(outcome.attention_set)} PR(s), "
            f"{len(outcome.events)} event(s) in {time.monotonic() - started:.2f}s"
        )
        self._finish(RefreshStatus.IDLE)
        return outcome

    def _compute(self) -> tuple[RefreshOutcome, list[PersistedRecord], list[str]]:
        records = self._load_records()
        raw_prs = self.source.fetch_attention_prs(self.user, self.config.days)

        now = self._clock()
        cutoff = window_cutoff(self.config.days, now)
        entries: list[ScoredEntry] = []
        new_records: list[PersistedRecord] = []
        for raw in raw_prs:
            snapshot = build_snapshot(raw, self.user, self.config.include_team_requests)
            if not is_included(snapshot, self.user, cutoff, self.scope):
                continue
            previous = records.get(snapshot.key)
            entry = self.scorer.entry(snapshot, previous, now)
            entries.append(entry)
            new_records.append(
                PersistedRecord.from_snapshot(snapshot, entry.category, now, entry.last_opened_at)
            )

        attention_set = build_attention_set(entries, self._next_generation(), fetched_at=now)
        events = diff_transitions(attention_set.entries, records)
        outcome = RefreshOutcome(
            succeeded=True,
            attention_set=attention_set,
            events=tuple(events),
            finished_at=now,
        )
        return outcome, new_records, [record.key for record in new_records]

    def _publish(self, outcome: RefreshOutcome) -> None:
        try:
            self.publish(outcome)
        except Exception as e:
            logger.exception(f"Publishing refresh outcome failed: {e}")

    def _persist(self, records: list[PersistedRecord], keep: list[str]) -> None:
        if self.store is None:
            return
        try:
            self.store.commit_cycle(records, keep)
        except StoreError as e:
            logger.warning(f"Could not persist refresh cycle: {e}")
            return
        self._flush_pending_opens()

    def _fail(self, message: str) -> RefreshOutcome:
        outcome = RefreshOutcome(succeeded=False, error=message, finished_at=self._clock())
        self._finish(RefreshStatus.FAILED)
        self._publish(outcome)
        self._finish(RefreshStatus.IDLE)
        return outcome


@dataclass
class RefreshTimer:
    """Single auto-refresh deadline whose interval depends on the active view."""
    list_interval: float
    details_interval: float
    details_active: bool = False
    deadline: float | None = field(default=None)
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def from_config(cls, config: NeedleConfig, clock: Callable[[], float] = time.monotonic) -> "RefreshTimer":
        return cls(
            list_interval=float(config.refresh_interval_list_secs),
            details_interval=float(config.refresh_interval_details_secs),
            clock=clock,
        )

    @property
    def interval(self) -> float:
        return self.details_interval if self.details_active else self.list_interval

    def reset(self) -> None:
        """Push the deadline one full interval out; called on every accepted refresh."""
        self.deadline = self.clock() + self.interval

    def due(self) -> bool:
        if self.deadline is None:
            self.reset()
            return False
        return self.clock() >= self.deadline

    def remaining(self) -> float:
        if self.deadline is None:
            return self.interval
        return max(0.0, self.deadline - self.clock())

    def switch_view(self, details_active: bool) -> None:
        """Reprogram the pending deadline for the new view's interval."""
        if details_active == self.details_active:
            return
        self.details_active = details_active
        self.reset()
