from __future__ import annotations

from datetime import datetime, timezone

import pytest

from needle.github import RawPullRequest
from needle.model import (
    CheckState,
    CiCheck,
    CiState,
    PersistedRecord,
    PullRequestIdentity,
    PullRequestSnapshot,
    ReviewState,
)


NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)
USER = "alice"


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_snapshot():
    def factory(
        owner="acme",
        repo="api",
        number=1,
        author=USER,
        ci_state=CiState.SUCCESS,
        review_state=ReviewState.NONE,
        updated_at=NOW,
        sha="abc123",
        **kwargs,
    ) -> PullRequestSnapshot:
        return PullRequestSnapshot(
            identity=PullRequestIdentity(owner, repo, number),
            title=kwargs.pop("title", f"PR {number}"),
            url=kwargs.pop("url", f"https://github.com/{owner}/{repo}/pull/{number}"),
            author=author,
            is_draft=kwargs.pop("is_draft", False),
            updated_at=updated_at,
            latest_commit_sha=sha,
            ci_state=ci_state,
            review_state=review_state,
            **kwargs,
        )

    return factory


@pytest.fixture
def make_record():
    def factory(owner="acme", repo="api", number=1, **kwargs) -> PersistedRecord:
        return PersistedRecord(
            identity=PullRequestIdentity(owner, repo, number),
            title=kwargs.pop("title", f"PR {number}"),
            url=kwargs.pop("url", f"https://github.com/{owner}/{repo}/pull/{number}"),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_raw():
    def factory(owner="acme", repo="api", number=1, author=USER, updated_at=NOW, **kwargs) -> RawPullRequest:
        checks = kwargs.pop("checks", (CiCheck("build", CheckState.SUCCESS),))
        return RawPullRequest(
            owner=owner,
            repo=repo,
            number=number,
            title=kwargs.pop("title", f"PR {number}"),
            url=f"https://github.com/{owner}/{repo}/pull/{number}",
            author=author,
            is_draft=kwargs.pop("is_draft", False),
            updated_at=updated_at,
            head_sha=kwargs.pop("head_sha", "abc123"),
            checks=checks,
            **kwargs,
        )

    return factory
