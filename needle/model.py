"""
Attention model for Needle.

Pure, immutable value types describing the attention-relevant state of a PR:
- PullRequestIdentity: (owner, repo, number) with its canonical string key
- PullRequestSnapshot: freshly observed state of one PR for one refresh cycle
- PersistedRecord: durable subset of a snapshot kept between cycles
- ScoredEntry / AttentionSet: scoring output handed to the UI
- TransitionEvent: state changes worth a notification
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator


RECENTLY_OPENED_WINDOW = timedelta(hours=1)

_KEY_RE = re.compile(r"^(?P<owner>[^/\s]+)/(?P<repo>[^#\s]+)#(?P<number>\d+)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (GitHub or store format) into an aware UTC datetime."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class CiState(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RUNNING = "running"
    NONE = "none"

    @classmethod
    def from_db(cls, value: str | None) -> "CiState":
        try:
            return cls(value) if value else cls.NONE
        except ValueError:
            return cls.NONE


class ReviewState(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    NONE = "none"

    @classmethod
    def from_db(cls, value: str | None) -> "ReviewState":
        try:
            return cls(value) if value else cls.NONE
        except ValueError:
            return cls.NONE


class CheckState(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RUNNING = "running"
    NEUTRAL = "neutral"
    NONE = "none"


_CHECK_RANK = {
    CheckState.FAILURE: 0,
    CheckState.RUNNING: 1,
    CheckState.SUCCESS: 2,
    CheckState.NEUTRAL: 3,
    CheckState.NONE: 4,
}


class Category(Enum):
    """Urgency bucket. Declaration order is the rendering order."""

    NEEDS_YOU = "needs_you"
    READY_TO_MERGE = "ready_to_merge"
    DRAFT = "draft"
    NO_ACTION_NEEDED = "no_action_needed"
    WAITING_ON_OTHERS = "waiting_on_others"

    @property
    def title(self) -> str:
        return _CATEGORY_TITLES[self]

    @property
    def rank(self) -> int:
        return CATEGORY_ORDER.index(self)


_CATEGORY_TITLES = {
    Category.NEEDS_YOU: "🔥 NEEDS YOU",
    Category.READY_TO_MERGE: "🚢 READY TO MERGE",
    Category.DRAFT: "📝 DRAFT",
    Category.NO_ACTION_NEEDED: "✅ NO ACTION NEEDED",
    Category.WAITING_ON_OTHERS: "⏳ WAITING ON OTHERS",
}

CATEGORY_ORDER: tuple[Category, ...] = tuple(Category)


@dataclass(frozen=True, order=True)
class PullRequestIdentity:
    owner: str
    repo: str
    number: int

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def parse(cls, key: str) -> "PullRequestIdentity":
        match = _KEY_RE.match(key.strip())
        if not match:
            raise ValueError(f"Invalid PR key: {key!r} (expected owner/repo#number)")
        return cls(match.group("owner"), match.group("repo"), int(match.group("number")))

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class CiCheck:
    """One check run or status context on the PR's latest commit."""
    name: str
    state: CheckState
    url: str | None = None
    started_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "url": self.url,
            "started_at": format_timestamp(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CiCheck":
        try:
            state = CheckState(data.get("state") or "none")
        except ValueError:
            state = CheckState.NONE
        return cls(
            name=str(data.get("name") or "check"),
            state=state,
            url=data.get("url"),
            started_at=parse_timestamp(data.get("started_at")),
        )


def sort_checks(checks: list[CiCheck] | tuple[CiCheck, ...]) -> tuple[CiCheck, ...]:
    """Failed first, then running, success, neutral, none; by name within a state."""
    return tuple(sorted(checks, key=lambda c: (_CHECK_RANK[c.state], c.name)))


def aggregate_ci_state(checks: list[CiCheck] | tuple[CiCheck, ...]) -> CiState:
    """Collapse the checks on a commit into one CI state.

    Neutral checks (skipped, cancelled, stale) never block and are ignored.
    """
    states = [c.state for c in checks if c.state is not CheckState.NEUTRAL]
    if CheckState.FAILURE in states:
        return CiState.FAILURE
    if CheckState.RUNNING in states:
        return CiState.RUNNING
    if states and all(s is CheckState.SUCCESS for s in states):
        return CiState.SUCCESS
    return CiState.NONE


def oldest_running_start(checks: list[CiCheck] | tuple[CiCheck, ...]) -> datetime | None:
    starts = [c.started_at for c in checks if c.state is CheckState.RUNNING and c.started_at]
    return min(starts) if starts else None


def checks_to_json(checks: tuple[CiCheck, ...]) -> str | None:
    if not checks:
        return None
    return json.dumps([c.to_dict() for c in checks])


def checks_from_json(raw: str | None) -> tuple[CiCheck, ...]:
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()
    return tuple(CiCheck.from_dict(item) for item in parsed if isinstance(item, dict))


@dataclass(frozen=True)
class PullRequestSnapshot:
    """State of one PR as observed in the current refresh cycle."""
    identity: PullRequestIdentity
    title: str
    url: str
    author: str
    is_draft: bool
    updated_at: datetime
    latest_commit_sha: str | None
    ci_state: CiState
    review_state: ReviewState
    ci_started_at: datetime | None = None
    approved_at: datetime | None = None
    checks: tuple[CiCheck, ...] = ()
    mergeable: str | None = None
    merge_state_status: str | None = None

    @property
    def key(self) -> str:
        return self.identity.key

    @property
    def failing_checks(self) -> tuple[CiCheck, ...]:
        return tuple(c for c in self.checks if c.state is CheckState.FAILURE)

    def first_failing_url(self) -> str:
        """URL of the first failing check with a link, else the PR itself."""
        for check in self.failing_checks:
            if check.url:
                return check.url
        return self.url


@dataclass(frozen=True)
class PersistedRecord:
    """Durable subset of the previous cycle's snapshot."""
    identity: PullRequestIdentity
    title: str
    url: str
    author: str | None = None
    updated_at: datetime | None = None
    is_draft: bool = False
    last_commit_sha: str | None = None
    ci_state: CiState = CiState.NONE
    review_state: ReviewState = ReviewState.NONE
    last_category: Category | None = None
    checks: tuple[CiCheck, ...] = ()
    last_seen_at: datetime | None = None
    last_opened_at: datetime | None = None

    @property
    def key(self) -> str:
        return self.identity.key

    @classmethod
    def from_snapshot(
        cls,
        snapshot: PullRequestSnapshot,
        category: Category,
        seen_at: datetime,
        last_opened_at: datetime | None = None,
    ) -> "PersistedRecord":
        return cls(
            identity=snapshot.identity,
            title=snapshot.title,
            url=snapshot.url,
            author=snapshot.author,
            updated_at=snapshot.updated_at,
            is_draft=snapshot.is_draft,
            last_commit_sha=snapshot.latest_commit_sha,
            ci_state=snapshot.ci_state,
            review_state=snapshot.review_state,
            last_category=category,
            checks=snapshot.checks,
            last_seen_at=seen_at,
            last_opened_at=last_opened_at,
        )

    def to_snapshot(self) -> PullRequestSnapshot:
        """Rebuild a snapshot for rendering before the first fetch completes."""
        updated_at = self.updated_at or self.last_seen_at or utcnow()
        return PullRequestSnapshot(
            identity=self.identity,
            title=self.title,
            url=self.url,
            author=self.author or "unknown",
            is_draft=self.is_draft,
            updated_at=updated_at,
            latest_commit_sha=self.last_commit_sha,
            ci_state=self.ci_state,
            review_state=self.review_state,
            ci_started_at=oldest_running_start(self.checks),
            checks=self.checks,
        )


def is_recently_opened(last_opened_at: datetime | None, now: datetime) -> bool:
    if last_opened_at is None:
        return False
    return now - last_opened_at <= RECENTLY_OPENED_WINDOW


@dataclass(frozen=True)
class ScoredEntry:
    snapshot: PullRequestSnapshot
    score: int
    category: Category
    is_state_change_since_last_seen: bool = False
    is_recently_opened: bool = False
    is_new_ci_failure: bool = False
    is_new_review_request: bool = False
    last_opened_at: datetime | None = None

    @property
    def key(self) -> str:
        return self.snapshot.key

    @property
    def identity(self) -> PullRequestIdentity:
        return self.snapshot.identity


@dataclass(frozen=True)
class AttentionSet:
    """Published, immutable result of one refresh (or of the cold-start seed)."""
    entries: tuple[ScoredEntry, ...] = ()
    generation: int = 0
    fetched_at: datetime | None = None

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ScoredEntry]:
        return iter(self.entries)

    def get(self, key: str) -> ScoredEntry | None:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(e.key for e in self.entries)


class TransitionKind(str, Enum):
    ENTERED_NEEDS_YOU = "entered_needs_you"
    CI_FAILED = "ci_failed"
    REVIEW_REQUESTED = "review_requested"
    READY_TO_MERGE = "ready_to_merge"


@dataclass(frozen=True)
class TransitionEvent:
    kind: TransitionKind
    entry: ScoredEntry

    @property
    def key(self) -> str:
        return self.entry.key
