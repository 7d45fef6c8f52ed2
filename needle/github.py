"""
GitHub GraphQL API client for Needle.

Fetches the tracked user's open PRs and the PRs awaiting their review, with
the CI checks on each PR's head commit and the reviewer facts scoring needs.
Uses NEEDLE_GITHUB_TOKEN or GITHUB_TOKEN for authentication.

Supports:
- Day-window filtering (updated:>=date search qualifier)
- Cursor pagination
- Rate limit handling
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterator

import requests
from loguru import logger

from . import __version__
from .model import CheckState, CiCheck, parse_timestamp, sort_checks, utcnow


GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
DEFAULT_PAGE_SIZE = 50
MAX_PAGES = 20
MAX_RETRIES = 3
RETRY_DELAY = 1.0
REQUEST_TIMEOUT = 30

TOKEN_ENV_VARS = ("NEEDLE_GITHUB_TOKEN", "GITHUB_TOKEN")

PR_FIELDS = """
    number
    title
    url
    updatedAt
    isDraft
    headRefOid
    reviewDecision
    mergeable
    mergeStateStatus
    repository { name owner { login } }
    author { login }
    reviewRequests(first: 50) {
      nodes {
        requestedReviewer {
          __typename
          ... on User { login }
          ... on Team { slug }
        }
      }
    }
    latestReviews(first: 50) {
      nodes {
        author { login }
        state
        submittedAt
      }
    }
    commits(last: 1) {
      nodes {
        commit {
          statusCheckRollup {
            state
            contexts(first: 50) {
              nodes {
                __typename
                ... on CheckRun {
                  name
                  conclusion
                  detailsUrl
                  startedAt
                }
                ... on StatusContext {
                  context
                  state
                  targetUrl
                }
              }
            }
          }
        }
      }
    }
"""

SEARCH_QUERY = """
query($searchQuery: String!, $pageSize: Int!, $cursor: String) {
  search(query: $searchQuery, type: ISSUE, first: $pageSize, after: $cursor) {
    pageInfo { hasNextPage endCursor }
    nodes {
      __typename
      ... on PullRequest {
%s
      }
    }
  }
}
""" % PR_FIELDS

VIEWER_QUERY = "query { viewer { login } }"

CHECK_RUN_CONCLUSIONS = {
    "SUCCESS": CheckState.SUCCESS,
    "FAILURE": CheckState.FAILURE,
    "ERROR": CheckState.FAILURE,
    "TIMED_OUT": CheckState.FAILURE,
    "STARTUP_FAILURE": CheckState.FAILURE,
    "NEUTRAL": CheckState.NEUTRAL,
    "SKIPPED": CheckState.NEUTRAL,
    "STALE": CheckState.NEUTRAL,
    "CANCELLED": CheckState.NEUTRAL,
    "ACTION_REQUIRED": CheckState.NEUTRAL,
}

STATUS_CONTEXT_STATES = {
    "SUCCESS": CheckState.SUCCESS,
    "FAILURE": CheckState.FAILURE,
    "ERROR": CheckState.FAILURE,
    "PENDING": CheckState.RUNNING,
    "EXPECTED": CheckState.RUNNING,
}


class FetchError(Exception):
    """A refresh could not fetch PRs; no partial result is returned."""


class GitHubAPIError(FetchError):
    """Error from GitHub API."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GitHubAPIError):
    """Rate limit exceeded."""
    def __init__(self, reset_time: int | None = None):
        super().__init__("GitHub API rate limit exceeded", 403)
        self.reset_time = reset_time


@dataclass(frozen=True)
class RawPullRequest:
    """One open PR as reported by the API, before scoring."""
    owner: str
    repo: str
    number: int
    title: str
    url: str
    author: str
    is_draft: bool
    updated_at: datetime
    head_sha: str | None
    checks: tuple[CiCheck, ...] = ()
    user_review_requested: bool = False
    team_review_requested: bool = False
    review_decision: str | None = None
    viewer_approved: bool = False
    approved_at: datetime | None = None
    mergeable: str | None = None
    merge_state_status: str | None = None

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


def get_token() -> str | None:
    for name in TOKEN_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return value
    return None


def search_cutoff(days: int, now: datetime | None = None) -> str | None:
    """Date qualifier for the day window, or None when unlimited."""
    if days <= 0:
        return None
    now = now or utcnow()
    return (now - timedelta(days=days)).strftime("%Y-%m-%d")


def build_search_query(qualifier: str, cutoff: str | None) -> str:
    query = f"is:pr is:open {qualifier} sort:updated-desc"
    if cutoff:
        query += f" updated:>={cutoff}"
    return query


def map_check_run(node: dict[str, Any]) -> CiCheck:
    conclusion = node.get("conclusion")
    if conclusion is None:
        state = CheckState.RUNNING
    else:
        state = CHECK_RUN_CONCLUSIONS.get(conclusion, CheckState.NONE)
    return CiCheck(
        name=node.get("name") or "check",
        state=state,
        url=node.get("detailsUrl"),
        started_at=parse_timestamp(node.get("startedAt")),
    )


def map_status_context(node: dict[str, Any]) -> CiCheck:
    return CiCheck(
        name=node.get("context") or "status",
        state=STATUS_CONTEXT_STATES.get(node.get("state") or "", CheckState.NONE),
        url=node.get("targetUrl"),
    )


def map_checks(pr: dict[str, Any]) -> tuple[CiCheck, ...]:
    commits = ((pr.get("commits") or {}).get("nodes")) or []
    if not commits:
        return ()
    commit = (commits[0] or {}).get("commit") or {}
    rollup = commit.get("statusCheckRollup") or {}
    contexts = ((rollup.get("contexts") or {}).get("nodes")) or []

    checks: list[CiCheck] = []
    for node in contexts:
        if not node:
            continue
        typename = node.get("__typename")
        if typename == "CheckRun":
            checks.append(map_check_run(node))
        elif typename == "StatusContext":
            checks.append(map_status_context(node))
    return sort_checks(checks)


def is_user_requested(pr: dict[str, Any], login: str) -> bool:
    for node in ((pr.get("reviewRequests") or {}).get("nodes")) or []:
        reviewer = (node or {}).get("requestedReviewer") or {}
        if reviewer.get("__typename") == "User" and (reviewer.get("login") or "").lower() == login.lower():
            return True
    return False


def viewer_approval(pr: dict[str, Any], login: str) -> datetime | None:
    """Submission time of the user's approving review, if their latest review approves."""
    for node in ((pr.get("latestReviews") or {}).get("nodes")) or []:
        node = node or {}
        author = ((node.get("author") or {}).get("login") or "").lower()
        if author == login.lower() and node.get("state") == "APPROVED":
            return parse_timestamp(node.get("submittedAt"))
    return None


def to_raw_pull_request(
    pr: dict[str, Any],
    login: str,
    from_review_search: bool = False,
) -> RawPullRequest | None:
    """Convert a GraphQL PullRequest node; returns None for incomplete nodes."""
    repository = pr.get("repository") or {}
    owner = (repository.get("owner") or {}).get("login")
    repo = repository.get("name")
    updated_at = parse_timestamp(pr.get("updatedAt"))
    if not owner or not repo or pr.get("number") is None or updated_at is None:
        return None

    user_requested = is_user_requested(pr, login)
    approved_at = viewer_approval(pr, login)
    return RawPullRequest(
        owner=owner,
        repo=repo,
        number=int(pr["number"]),
        title=pr.get("title") or "",
        url=pr.get("url") or "",
        author=(pr.get("author") or {}).get("login") or "unknown",
        is_draft=bool(pr.get("isDraft")),
        updated_at=updated_at,
        head_sha=pr.get("headRefOid"),
        checks=map_checks(pr),
        user_review_requested=user_requested,
        team_review_requested=from_review_search and not user_requested,
        review_decision=pr.get("reviewDecision"),
        viewer_approved=approved_at is not None,
        approved_at=approved_at,
        mergeable=pr.get("mergeable"),
        merge_state_status=pr.get("mergeStateStatus"),
    )


class GitHubClient:
    """GitHub GraphQL API client with pagination and rate limit handling."""

    def __init__(self, token: str | None = None):
        self.token = token or get_token()
        self.session = requests.Session()

        if self.token:
            self.session.headers["Authorization"] = f"bearer {self.token}"

        self.session.headers["Accept"] = "application/vnd.github+json"
        self.session.headers["User-Agent"] = f"needle/{__version__}"

    def _request(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a GraphQL query with retry and rate limit handling; returns `data`."""
        payload = {"query": query, "variables": variables or {}}

        for attempt in range(MAX_RETRIES):
            try:
                response = self.session.post(GITHUB_GRAPHQL_URL, json=payload, timeout=REQUEST_TIMEOUT)
            except requests.RequestException as e:
                if attempt < MAX_RETRIES - 1:
                    logger.debug(f"GitHub request failed (attempt {attempt + 1}): {e}")
                    time.sleep(RETRY_DELAY * (attempt + 1))
                    continue
                raise GitHubAPIError(f"Request failed: {e}") from e

            # Check rate limit
            if response.status_code in (403, 429):
                remaining = response.headers.get("X-RateLimit-Remaining")
                if remaining == "0" or response.status_code == 429:
                    reset_time = int(response.headers.get("X-RateLimit-Reset", 0))
                    raise RateLimitError(reset_time)

            if response.status_code >= 400:
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code} - {response.text}",
                    response.status_code,
                )

            try:
                body = response.json()
            except ValueError as e:
                raise GitHubAPIError(f"Invalid JSON from GitHub: {e}", response.status_code) from e

            errors = body.get("errors") if isinstance(body, dict) else None
            if errors:
                if any((err or {}).get("type") == "RATE_LIMITED" for err in errors):
                    raise RateLimitError()
                messages = "; ".join(str((err or {}).get("message", err)) for err in errors)
                raise GitHubAPIError(f"GitHub GraphQL error: {messages}", response.status_code)

            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, dict):
                raise GitHubAPIError("GitHub GraphQL response has no data", response.status_code)
            return data

        raise GitHubAPIError("Max retries exceeded")

    def _search(self, search_query: str, max_pages: int = MAX_PAGES) -> Iterator[dict[str, Any]]:
        """Iterate through PullRequest nodes of a paginated search."""
        cursor: str | None = None
        for _ in range(max_pages):
            data = self._request(
                SEARCH_QUERY,
                {"searchQuery": search_query, "pageSize": DEFAULT_PAGE_SIZE, "cursor": cursor},
            )
            try:
                search = data["search"]
                nodes = search.get("nodes") or []
                page_info = search["pageInfo"]
            except (KeyError, TypeError, AttributeError) as e:
                raise GitHubAPIError(f"Unexpected search response shape: {e}") from e

            for node in nodes:
                if node and node.get("__typename") == "PullRequest":
                    yield node

            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                break

    def viewer_login(self) -> str:
        """Login of the token's owner."""
        data = self._request(VIEWER_QUERY)
        try:
            return data["viewer"]["login"]
        except (KeyError, TypeError) as e:
            raise GitHubAPIError(f"Unexpected viewer response shape: {e}") from e

    def fetch_attention_prs(self, user: str, days: int) -> list[RawPullRequest]:
        """
        Fetch open PRs authored by `user` or awaiting their review.

        Args:
            user: Tracked GitHub login
            days: Only PRs updated within this many days (0 = unlimited)

        Returns:
            One RawPullRequest per PR, merged by key. Raises FetchError on any
            failure; a partial list is never returned.
        """
        cutoff = search_cutoff(days)
        by_key: dict[str, RawPullRequest] = {}

        authored_query = build_search_query(f"author:{user}", cutoff)
        for node in self._search(authored_query):
            pr = to_raw_pull_request(node, user)
            if pr:
                by_key[pr.key] = pr

        requested_query = build_search_query(f"review-requested:{user}", cutoff)
        for node in self._search(requested_query):
            pr = to_raw_pull_request(node, user, from_review_search=True)
            if not pr:
                continue
            existing = by_key.get(pr.key)
            if existing is not None and not pr.user_review_requested:
                # Already known from the authored search; keep its reviewer facts.
                continue
            by_key[pr.key] = pr

        logger.info(f"Fetched {len(by_key)} PR(s) for {user}")
        return list(by_key.values())
