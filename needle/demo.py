"""
Demo data source for Needle.

A fixed fleet of PRs across a handful of fake organizations that behaves
like GitHubClient: same methods, same RawPullRequest values, no token.
Each fetch advances a tick so running and freshly failing PRs look alive
(new head commits, shifting updatedAt) while the rest stay stable.
"""

from __future__ import annotations

import hashlib
import itertools
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from .github import RawPullRequest
from .model import CheckState, CiCheck, sort_checks, utcnow


DEMO_USER = "anika"


class CiProfile(Enum):
    GREEN = "green"
    RED_NEW = "red_new"
    RED_STUCK = "red_stuck"
    RUNNING_LONG = "running_long"
    RUNNING_SHORT = "running_short"
    NO_CI = "no_ci"


STABLE_PROFILES = {CiProfile.GREEN, CiProfile.RED_STUCK, CiProfile.NO_CI}
WOBBLE_PROFILES = {CiProfile.RED_NEW, CiProfile.RUNNING_LONG, CiProfile.RUNNING_SHORT}


@dataclass(frozen=True)
class DemoPrSpec:
    owner: str
    repo: str
    number: int
    author: str
    title: str
    updated_age: timedelta
    ci: CiProfile
    review_requested: bool = False
    approved: bool = False
    is_draft: bool = False
    mergeable: str = "MERGEABLE"

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


DEMO_PRS: tuple[DemoPrSpec, ...] = (
    DemoPrSpec("acme-inc", "billing-api", 842, "santiago",
               "Fix idempotency for retries on charge capture",
               timedelta(hours=2), CiProfile.GREEN, review_requested=True),
    DemoPrSpec("orbit", "web", 1932, DEMO_USER,
               "Add keyboard navigation to project switcher",
               timedelta(minutes=28), CiProfile.RED_NEW),
    DemoPrSpec("windmill-labs", "infra", 317, DEMO_USER,
               "Bump Postgres to 16.2 and tune autovacuum thresholds",
               timedelta(days=4), CiProfile.RED_STUCK),
    DemoPrSpec("paperplane", "mobile", 501, DEMO_USER,
               "Reduce cold-start time by deferring analytics init",
               timedelta(minutes=19), CiProfile.RUNNING_LONG),
    DemoPrSpec("acme-inc", "design-system", 128, DEMO_USER,
               "Button: add loading state and improve focus ring",
               timedelta(minutes=6), CiProfile.RUNNING_SHORT),
    DemoPrSpec("honeycombio", "otel-collector", 77, DEMO_USER,
               "Add tail-sampling defaults for high-cardinality traces",
               timedelta(days=7), CiProfile.GREEN),
    DemoPrSpec("orbit", "api", 1104, DEMO_USER,
               "Rate limit /v1/events and emit structured logs",
               timedelta(hours=16), CiProfile.GREEN, approved=True),
    DemoPrSpec("paperplane", "docs", 42, DEMO_USER,
               "Docs: clarify OAuth scopes and add troubleshooting",
               timedelta(days=3), CiProfile.NO_CI, is_draft=True),
    DemoPrSpec("acme-inc", "monorepo", 2551, "jules",
               "Refactor: extract feature flags into shared crate",
               timedelta(hours=11), CiProfile.RUNNING_LONG, review_requested=True),
    DemoPrSpec("windmill-labs", "sdk-rust", 98, DEMO_USER,
               "Add retry policy for 429/503 responses",
               timedelta(days=12), CiProfile.GREEN, mergeable="CONFLICTING"),
    DemoPrSpec("orbit", "web", 1940, "sofia",
               "Fix flaky onboarding test on CI runners",
               timedelta(minutes=50), CiProfile.RED_NEW, review_requested=True),
    DemoPrSpec("paperplane", "backend", 611, DEMO_USER,
               "Graceful shutdown: drain queue workers before exit",
               timedelta(hours=26), CiProfile.NO_CI, approved=True),
    DemoPrSpec("honeycombio", "ui", 390, DEMO_USER,
               "Charts: fix tooltip positioning near viewport edges",
               timedelta(hours=9), CiProfile.GREEN, is_draft=True),
    DemoPrSpec("acme-inc", "payments-worker", 219, "santiago",
               "Handle duplicate webhook deliveries and add metrics",
               timedelta(hours=3), CiProfile.RED_NEW, review_requested=True),
    DemoPrSpec("windmill-labs", "infra", 321, DEMO_USER,
               "Terraform: split prod/staging state and add drift detection",
               timedelta(days=18), CiProfile.GREEN),
    DemoPrSpec("paperplane", "mobile", 523, "noah",
               "Fix crash when resuming from background on iOS 17.2",
               timedelta(minutes=90), CiProfile.RUNNING_LONG, review_requested=True),
)


def stable_hash(text: str) -> int:
    return zlib.crc32(text.encode("utf-8"))


def short_sha(seed: str) -> str:
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()[:7]


def seeded_last_opened_at(key: str, now: datetime) -> datetime | None:
    """Deterministic 'opened earlier' history so some demo rows start dimmed."""
    bucket = stable_hash(key) % 11
    if bucket == 0:
        return now - timedelta(minutes=23)
    if bucket == 1:
        return now - timedelta(hours=3)
    if bucket == 2:
        return now - timedelta(days=2)
    return None


def checks_for(spec: DemoPrSpec, now: datetime, salt: int) -> tuple[CiCheck, ...]:
    base_run = 8_100_000 + salt % 900_000

    def check(name: str, state: CheckState, offset: int, started_at: datetime | None = None) -> CiCheck:
        url = f"https://github.com/{spec.owner}/{spec.repo}/actions/runs/{base_run + offset}"
        return CiCheck(name=name, state=state, url=url, started_at=started_at)

    profile = spec.ci
    if profile is CiProfile.GREEN:
        checks = [
            check("build / linux", CheckState.SUCCESS, 11),
            check("test / unit", CheckState.SUCCESS, 22),
            check("lint", CheckState.SUCCESS, 33),
            check("e2e / chrome", CheckState.NEUTRAL, 44),
        ]
    elif profile in (CiProfile.RED_NEW, CiProfile.RED_STUCK):
        checks = [
            check("build / linux", CheckState.SUCCESS, 11),
            check("test / unit", CheckState.FAILURE, 22),
            check("lint", CheckState.SUCCESS, 33),
            check("e2e / chrome", CheckState.FAILURE, 44),
        ]
    elif profile is CiProfile.RUNNING_LONG:
        checks = [
            check("build / linux", CheckState.SUCCESS, 11),
            check("test / integration", CheckState.RUNNING, 22, now - timedelta(minutes=68)),
            check("lint", CheckState.SUCCESS, 33),
            check("deploy / preview", CheckState.RUNNING, 44, now - timedelta(minutes=41)),
        ]
    elif profile is CiProfile.RUNNING_SHORT:
        checks = [
            check("build / linux", CheckState.RUNNING, 11, now - timedelta(minutes=4)),
            check("test / unit", CheckState.NONE, 22),
            check("lint", CheckState.NONE, 33),
        ]
    else:
        checks = []
    return sort_checks(checks)


def generate_demo_prs(now: datetime, tick: int) -> list[RawPullRequest]:
    prs: list[RawPullRequest] = []
    for spec in DEMO_PRS:
        salt = stable_hash(f"{spec.key}:{tick}")
        stable = spec.ci in STABLE_PROFILES
        sha = short_sha(spec.key if stable else f"{spec.key}:{tick}")
        wobble = timedelta(minutes=tick % 7) if spec.ci in WOBBLE_PROFILES else timedelta(0)
        updated_at = now - max(spec.updated_age - wobble, timedelta(0))

        prs.append(
            RawPullRequest(
                owner=spec.owner,
                repo=spec.repo,
                number=spec.number,
                title=spec.title,
                url=f"https://github.com/{spec.owner}/{spec.repo}/pull/{spec.number}",
                author=spec.author,
                is_draft=spec.is_draft,
                updated_at=updated_at,
                head_sha=sha,
                checks=checks_for(spec, now, salt),
                user_review_requested=spec.review_requested,
                review_decision="APPROVED" if spec.approved else None,
                approved_at=updated_at if spec.approved else None,
                mergeable=spec.mergeable,
                merge_state_status="DIRTY" if spec.mergeable == "CONFLICTING" else "CLEAN",
            )
        )
    return prs


class DemoSource:
    """Drop-in replacement for GitHubClient backed by the demo fleet."""

    def __init__(self, user: str = DEMO_USER, clock=utcnow):
        self.user = user
        self._clock = clock
        self._ticks = itertools.count(1)
        self._tick_lock = threading.Lock()

    def next_tick(self) -> int:
        with self._tick_lock:
            return next(self._ticks)

    def viewer_login(self) -> str:
        return self.user

    def fetch_attention_prs(self, user: str, days: int) -> list[RawPullRequest]:
        # Day window and scope are applied by the refresh coordinator.
        return generate_demo_prs(self._clock(), self.next_tick())
