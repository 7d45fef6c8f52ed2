"""
Urgency scoring for Needle.

Rules are additive and evaluated independently:

    +50  review requested from you
    +40  CI failed, and the failure is new since last seen
    +20  CI running for more than 10 minutes
    +15  approved but unmerged for more than 24 hours
    -20  no review requested, CI not failing (waiting on others)
    -30  CI failed, unchanged since last seen

Categories are then derived with Draft and ReadyToMerge overriding the score bands.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .model import (
    AttentionSet,
    Category,
    CiState,
    PersistedRecord,
    PullRequestSnapshot,
    ReviewState,
    ScoredEntry,
    is_recently_opened,
)


SCORE_REVIEW_REQUESTED = 50
SCORE_CI_FAILED_NEW = 40
SCORE_CI_RUNNING_LONG = 20
SCORE_APPROVED_UNMERGED_OLD = 15
SCORE_WAITING_ON_OTHERS = -20
SCORE_CI_FAILED_UNCHANGED = -30

CATEGORY_NEEDS_YOU_MIN = 40
CATEGORY_NO_ACTION_MIN = 0

CI_RUNNING_LONG = timedelta(minutes=10)
APPROVED_UNMERGED_OLD = timedelta(hours=24)

BLOCKING_MERGEABLE = frozenset({"CONFLICTING"})
BLOCKING_MERGE_STATES = frozenset({"DIRTY", "BLOCKED", "BEHIND"})

BlockerPredicate = Callable[[PullRequestSnapshot], bool]


def has_merge_blockers(snapshot: PullRequestSnapshot) -> bool:
    """Default blocker check: merge conflicts or a blocked/behind merge state."""
    if (snapshot.mergeable or "").upper() in BLOCKING_MERGEABLE:
        return True
    return (snapshot.merge_state_status or "").upper() in BLOCKING_MERGE_STATES


def has_blockers_requiring_approval(snapshot: PullRequestSnapshot) -> bool:
    """Stricter blocker check: like the default, and an unapproved PR is blocked too."""
    if snapshot.review_state is not ReviewState.APPROVED:
        return True
    return has_merge_blockers(snapshot)


def blocker_predicate(requires_approval: bool) -> BlockerPredicate:
    return has_blockers_requiring_approval if requires_approval else has_merge_blockers


def is_new_ci_failure(current: PullRequestSnapshot, previous: PersistedRecord | None) -> bool:
    """A failure is new unless the last-seen record already failed on the same commit."""
    if current.ci_state is not CiState.FAILURE:
        return False
    if previous is None:
        return True
    if previous.ci_state is not CiState.FAILURE:
        return True
    return previous.last_commit_sha != current.latest_commit_sha


def is_new_review_request(current: PullRequestSnapshot, previous: PersistedRecord | None) -> bool:
    if current.review_state is not ReviewState.REQUESTED:
        return False
    if previous is None:
        return True
    return previous.review_state is not ReviewState.REQUESTED


def is_state_change(current: PullRequestSnapshot, previous: PersistedRecord | None) -> bool:
    if previous is None:
        return True
    return (
        previous.ci_state is not current.ci_state
        or previous.review_state is not current.review_state
    )


def running_for(snapshot: PullRequestSnapshot, now: datetime) -> timedelta:
    start = snapshot.ci_started_at or snapshot.updated_at
    return now - start


def score_snapshot(
    current: PullRequestSnapshot,
    previous: PersistedRecord | None,
    now: datetime,
) -> int:
    score = 0

    if current.review_state is ReviewState.REQUESTED:
        score += SCORE_REVIEW_REQUESTED

    if current.ci_state is CiState.FAILURE:
        if is_new_ci_failure(current, previous):
            score += SCORE_CI_FAILED_NEW
        else:
            score += SCORE_CI_FAILED_UNCHANGED

    if current.ci_state is CiState.RUNNING and running_for(current, now) > CI_RUNNING_LONG:
        score += SCORE_CI_RUNNING_LONG

    # Only open PRs are fetched, so an approved snapshot is always unmerged.
    if current.review_state is ReviewState.APPROVED:
        approved_at = current.approved_at or current.updated_at
        if now - approved_at > APPROVED_UNMERGED_OLD:
            score += SCORE_APPROVED_UNMERGED_OLD

    if current.review_state is ReviewState.NONE and current.ci_state is not CiState.FAILURE:
        score += SCORE_WAITING_ON_OTHERS

    return score


def categorize(
    snapshot: PullRequestSnapshot,
    score: int,
    tracked_user: str,
    has_blockers: BlockerPredicate = has_merge_blockers,
) -> Category:
    if snapshot.is_draft:
        return Category.DRAFT
    if (
        snapshot.author.lower() == tracked_user.lower()
        and snapshot.ci_state is CiState.SUCCESS
        and snapshot.review_state is not ReviewState.REQUESTED
        and not has_blockers(snapshot)
    ):
        return Category.READY_TO_MERGE
    if score >= CATEGORY_NEEDS_YOU_MIN:
        return Category.NEEDS_YOU
    if score >= CATEGORY_NO_ACTION_MIN:
        return Category.NO_ACTION_NEEDED
    return Category.WAITING_ON_OTHERS


def score(
    current: PullRequestSnapshot,
    previous: PersistedRecord | None,
    *,
    now: datetime,
    tracked_user: str,
    has_blockers: BlockerPredicate = has_merge_blockers,
) -> tuple[int, Category]:
    """Score a snapshot against its last-seen record and derive its category."""
    value = score_snapshot(current, previous, now)
    return value, categorize(current, value, tracked_user, has_blockers)


@dataclass(frozen=True)
class Scorer:
    """Scoring settings shared by one refresh cycle."""
    tracked_user: str
    has_blockers: BlockerPredicate = has_merge_blockers

    def entry(
        self,
        current: PullRequestSnapshot,
        previous: PersistedRecord | None,
        now: datetime,
        *,
        detect_transitions: bool = True,
    ) -> ScoredEntry:
        value, category = score(
            current,
            previous,
            now=now,
            tracked_user=self.tracked_user,
            has_blockers=self.has_blockers,
        )
        last_opened_at = previous.last_opened_at if previous else None
        return ScoredEntry(
            snapshot=current,
            score=value,
            category=category,
            is_state_change_since_last_seen=detect_transitions and is_state_change(current, previous),
            is_recently_opened=is_recently_opened(last_opened_at, now),
            is_new_ci_failure=detect_transitions and is_new_ci_failure(current, previous),
            is_new_review_request=detect_transitions and is_new_review_request(current, previous),
            last_opened_at=last_opened_at,
        )


def sort_key(entry: ScoredEntry) -> tuple:
    """Canonical order: score desc, updatedAt desc, identity asc."""
    return (-entry.score, -entry.snapshot.updated_at.timestamp(), entry.identity)


def sort_entries(entries: list[ScoredEntry]) -> tuple[ScoredEntry, ...]:
    return tuple(sorted(entries, key=sort_key))


def build_attention_set(
    entries: list[ScoredEntry],
    generation: int,
    fetched_at: datetime | None = None,
) -> AttentionSet:
    return AttentionSet(entries=sort_entries(entries), generation=generation, fetched_at=fetched_at)
