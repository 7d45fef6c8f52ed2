from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from needle.github import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    build_search_query,
    get_token,
    map_checks,
    search_cutoff,
    to_raw_pull_request,
)
from needle.model import CheckState


def pr_node(number=1, owner="acme", repo="api", author="alice", **overrides):
    node = {
        "__typename": "PullRequest",
        "number": number,
        "title": f"PR {number}",
        "url": f"https://github.com/{owner}/{repo}/pull/{number}",
        "updatedAt": "2025-03-14T10:00:00Z",
        "isDraft": False,
        "headRefOid": "deadbeef",
        "reviewDecision": None,
        "mergeable": "MERGEABLE",
        "mergeStateStatus": "CLEAN",
        "repository": {"name": repo, "owner": {"login": owner}},
        "author": {"login": author},
        "reviewRequests": {"nodes": []},
        "latestReviews": {"nodes": []},
        "commits": {"nodes": [{"commit": {"statusCheckRollup": {"state": "SUCCESS", "contexts": {"nodes": [
            {"__typename": "CheckRun", "name": "unit", "conclusion": "FAILURE",
             "detailsUrl": "https://ci/unit", "startedAt": "2025-03-14T09:00:00Z"},
            {"__typename": "CheckRun", "name": "e2e", "conclusion": None,
             "detailsUrl": "https://ci/e2e", "startedAt": "2025-03-14T09:30:00Z"},
            {"__typename": "StatusContext", "context": "deploy", "state": "SUCCESS", "targetUrl": None},
            {"__typename": "CheckRun", "name": "docs", "conclusion": "SKIPPED", "detailsUrl": None, "startedAt": None},
        ]}}}}]},
    }
    node.update(overrides)
    return node


def search_page(nodes, has_next=False, cursor=None):
    return {"search": {"pageInfo": {"hasNextPage": has_next, "endCursor": cursor}, "nodes": nodes}}


def mock_response(status_code=200, body=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = "error body"
    response.json.return_value = body if body is not None else {}
    return response


def test_get_token_prefers_needle_variable(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "generic")
    monkeypatch.setenv("NEEDLE_GITHUB_TOKEN", "specific")
    assert get_token() == "specific"

    monkeypatch.delenv("NEEDLE_GITHUB_TOKEN")
    assert get_token() == "generic"


def test_search_query_has_window():
    now = datetime(2025, 3, 14, tzinfo=timezone.utc)
    assert search_cutoff(0, now) is None
    assert search_cutoff(7, now) == "2025-03-07"
    assert build_search_query("author:alice", "2025-03-07") == (
        "is:pr is:open author:alice sort:updated-desc updated:>=2025-03-07"
    )
    assert build_search_query("author:alice", None) == "is:pr is:open author:alice sort:updated-desc"


def test_map_checks_states_and_order():
    checks = map_checks(pr_node())

    assert [(c.name, c.state) for c in checks] == [
        ("unit", CheckState.FAILURE),
        ("e2e", CheckState.RUNNING),
        ("deploy", CheckState.SUCCESS),
        ("docs", CheckState.NEUTRAL),
    ]
    assert checks[0].url == "https://ci/unit"
    assert checks[1].started_at == datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


def test_map_checks_without_commits():
    assert map_checks(pr_node(commits={"nodes": []})) == ()
    assert map_checks(pr_node(commits=None)) == ()


def test_to_raw_pull_request_review_facts():
    node = pr_node(
        author="bob",
        reviewRequests={"nodes": [{"requestedReviewer": {"__typename": "User", "login": "Alice"}}]},
        latestReviews={"nodes": [{"author": {"login": "alice"}, "state": "APPROVED",
                                  "submittedAt": "2025-03-13T08:00:00Z"}]},
    )

    raw = to_raw_pull_request(node, "alice")

    assert raw.key == "acme/api#1"
    assert raw.user_review_requested is True
    assert raw.team_review_requested is False
    assert raw.viewer_approved is True
    assert raw.approved_at == datetime(2025, 3, 13, 8, 0, tzinfo=timezone.utc)


def test_review_search_hit_without_user_request_is_team_request():
    node = pr_node(
        author="bob",
        reviewRequests={"nodes": [{"requestedReviewer": {"__typename": "Team", "slug": "core"}}]},
    )

    raw = to_raw_pull_request(node, "alice", from_review_search=True)

    assert raw.user_review_requested is False
    assert raw.team_review_requested is True


def test_to_raw_pull_request_skips_incomplete_nodes():
    assert to_raw_pull_request(pr_node(repository=None), "alice") is None
    assert to_raw_pull_request(pr_node(updatedAt=None), "alice") is None


def test_fetch_attention_prs_merges_both_searches():
    client = GitHubClient(token="test-token")
    authored = [pr_node(1), pr_node(2)]
    requested = [
        pr_node(2, reviewRequests={"nodes": []}),
        pr_node(3, author="bob", reviewRequests={"nodes": [
            {"requestedReviewer": {"__typename": "User", "login": "alice"}}]}),
    ]

    with patch.object(client, "_search", side_effect=[iter(authored), iter(requested)]) as search:
        prs = client.fetch_attention_prs("alice", 30)

    assert sorted(pr.key for pr in prs) == ["acme/api#1", "acme/api#2", "acme/api#3"]
    by_key = {pr.key: pr for pr in prs}
    assert by_key["acme/api#2"].team_review_requested is False
    assert by_key["acme/api#3"].user_review_requested is True
    queries = [call.args[0] for call in search.call_args_list]
    assert queries[0].startswith("is:pr is:open author:alice")
    assert queries[1].startswith("is:pr is:open review-requested:alice")


def test_search_paginates():
    client = GitHubClient(token="test-token")
    pages = [
        search_page([pr_node(1)], has_next=True, cursor="c1"),
        search_page([pr_node(2), {"__typename": "Issue"}]),
    ]

    with patch.object(client, "_request", side_effect=pages) as request:
        nodes = list(client._search("is:pr"))

    assert [n["number"] for n in nodes] == [1, 2]
    assert request.call_args_list[1].args[1]["cursor"] == "c1"


def test_request_returns_data():
    client = GitHubClient(token="test-token")
    client.session.post = Mock(return_value=mock_response(body={"data": {"viewer": {"login": "alice"}}}))

    assert client.viewer_login() == "alice"
    assert client.session.headers["Authorization"] == "bearer test-token"


def test_request_rate_limited():
    client = GitHubClient(token="test-token")
    client.session.post = Mock(return_value=mock_response(
        403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"}
    ))

    with pytest.raises(RateLimitError) as excinfo:
        client.viewer_login()
    assert excinfo.value.reset_time == 1700000000


def test_request_graphql_errors():
    client = GitHubClient(token="test-token")
    client.session.post = Mock(return_value=mock_response(body={"errors": [{"message": "Bad query"}]}))

    with pytest.raises(GitHubAPIError, match="Bad query"):
        client.viewer_login()


def test_request_graphql_rate_limit_error():
    client = GitHubClient(token="test-token")
    client.session.post = Mock(return_value=mock_response(
        body={"errors": [{"type": "RATE_LIMITED", "message": "slow down"}]}
    ))

    with pytest.raises(RateLimitError):
        client.viewer_login()


def test_request_http_error():
    client = GitHubClient(token="test-token")
    client.session.post = Mock(return_value=mock_response(401))

    with pytest.raises(GitHubAPIError) as excinfo:
        client.viewer_login()
    assert excinfo.value.status_code == 401


@patch("needle.github.time.sleep")
def test_request_retries_network_errors(sleep):
    client = GitHubClient(token="test-token")
    client.session.post = Mock(side_effect=[
        requests.ConnectionError("boom"),
        mock_response(body={"data": {"viewer": {"login": "alice"}}}),
    ])

    assert client.viewer_login() == "alice"
    assert client.session.post.call_count == 2
    sleep.assert_called_once()


@patch("needle.github.time.sleep")
def test_request_gives_up_after_retries(sleep):
    client = GitHubClient(token="test-token")
    client.session.post = Mock(side_effect=requests.ConnectionError("down"))

    with pytest.raises(GitHubAPIError, match="Request failed"):
        client.viewer_login()
    assert client.session.post.call_count == 3
