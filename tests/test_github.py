"""Tests for the GitHub fetcher, served by httpx.MockTransport.

Run with: pytest tests/test_github.py -v
"""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest
from tenacity import wait_none

from release_tagger.context.github import GitHubFetcher, MockFetcher, _is_transient
from release_tagger.exceptions import CommitNotFoundError, FetcherError
from release_tagger.schemas import Issue, PullRequest, Tag

REPO = "myorg/api"
API = "https://api.github.com"


class FakeGitHub:
    """Routes requests to canned responses and records every request."""

    def __init__(self, routes: dict[str, httpx.Response | list[httpx.Response]]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        page = request.url.params.get("page")
        key = request.url.path if page is None else f"{request.url.path}?page={page}"
        if key not in self.routes:
            return httpx.Response(404, json={"message": "Not Found"})
        route = self.routes[key]
        # A list of responses is served in order, one per request.
        return route.pop(0) if isinstance(route, list) else route

    def fetcher(self, **kwargs) -> GitHubFetcher:
        return GitHubFetcher(REPO, transport=httpx.MockTransport(self), **kwargs)


# ---------------------------------------------------------------------------
# Batched Fetch Tests
# ---------------------------------------------------------------------------


class TestFetchTagShas:
    @pytest.mark.asyncio
    async def test_follows_pagination(self) -> None:
        next_link = f'<{API}/repos/{REPO}/commits?sha=bbb&per_page=100&page=2>; rel="next"'
        github = FakeGitHub(
            {
                f"/repos/{REPO}/commits": httpx.Response(
                    200,
                    json=[{"sha": "bbb"}, {"sha": "aaa"}],
                    headers={"link": next_link},
                ),
                f"/repos/{REPO}/commits?page=2": httpx.Response(200, json=[{"sha": "000"}]),
            }
        )
        tags = [Tag(name="v1.0.0", commit_sha="bbb")]

        shas = await github.fetcher().fetch_tag_shas(tags)

        assert shas == {"v1.0.0": {"bbb", "aaa", "000"}}
        first = github.requests[0]
        assert first.url.params["sha"] == "bbb"
        assert first.url.params["per_page"] == "100"
        assert len(github.requests) == 2


class TestFetchTimelines:
    @pytest.mark.asyncio
    async def test_events_keyed_by_number(self) -> None:
        github = FakeGitHub(
            {
                f"/repos/{REPO}/issues/1/events": httpx.Response(
                    200, json=[{"event": "merged", "commit_id": "abc", "actor": {}}]
                ),
                f"/repos/{REPO}/issues/2/events": httpx.Response(200, json=[]),
            }
        )
        events = await github.fetcher().fetch_events([Issue(number=1), Issue(number=2)])
        assert events[1][0].event == "merged"
        assert events[1][0].commit_id == "abc"
        assert events[2] == []

    @pytest.mark.asyncio
    async def test_comments_with_null_body(self) -> None:
        github = FakeGitHub(
            {
                f"/repos/{REPO}/issues/7/comments": httpx.Response(
                    200, json=[{"body": None}, {"body": "rebased commit: x"}]
                ),
            }
        )
        comments = await github.fetcher().fetch_comments([PullRequest(number=7)])
        assert [c.body for c in comments[7]] == ["", "rebased commit: x"]


# ---------------------------------------------------------------------------
# Single Lookup Tests
# ---------------------------------------------------------------------------


class TestFetchCommit:
    @pytest.mark.asyncio
    async def test_returns_commit(self, commit_payload) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}/commits/abc": httpx.Response(200, json=commit_payload("abc"))}
        )
        commit = await github.fetcher().fetch_commit("abc")
        assert commit.author_date == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_missing_commit_raises_not_found(self) -> None:
        github = FakeGitHub({})
        with pytest.raises(CommitNotFoundError) as exc_info:
            await github.fetcher().fetch_commit("deadbeef")
        assert exc_info.value.commit_id == "deadbeef"
        assert exc_info.value.status_code == 404
        # 404 is not transient, so no retries
        assert len(github.requests) == 1


class TestBranches:
    @pytest.mark.asyncio
    async def test_default_branch_memoised(self) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}": httpx.Response(200, json={"default_branch": "trunk"})}
        )
        fetcher = github.fetcher()
        assert await fetcher.default_branch() == "trunk"
        assert await fetcher.default_branch() == "trunk"
        assert len(github.requests) == 1

    @pytest.mark.asyncio
    async def test_commits_in_branch_memoised(self) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}/commits": httpx.Response(200, json=[{"sha": "a"}, {"sha": "b"}])}
        )
        fetcher = github.fetcher()
        assert await fetcher.commits_in_branch("develop") == {"a", "b"}
        await fetcher.commits_in_branch("develop")
        assert len(github.requests) == 1
        assert github.requests[0].url.params["sha"] == "develop"


class TestListing:
    @pytest.mark.asyncio
    async def test_fetch_tags_from_github_payload(self) -> None:
        github = FakeGitHub(
            {
                f"/repos/{REPO}/tags": httpx.Response(
                    200,
                    json=[
                        {"name": "v2.0.0", "commit": {"sha": "bbb", "url": "..."}},
                        {"name": "v1.0.0", "commit": {"sha": "aaa", "url": "..."}},
                    ],
                )
            }
        )
        tags = await github.fetcher().fetch_tags()
        assert [(t.name, t.commit_sha) for t in tags] == [("v2.0.0", "bbb"), ("v1.0.0", "aaa")]

    @pytest.mark.asyncio
    async def test_tag_date_from_git_commit(self) -> None:
        github = FakeGitHub(
            {
                f"/repos/{REPO}/git/commits/aaa": httpx.Response(
                    200, json={"committer": {"date": "2024-01-02T03:04:05Z"}}
                )
            }
        )
        date = await github.fetcher().fetch_tag_date(Tag(name="v1.0.0", commit_sha="aaa"))
        assert date == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_closed_issues_and_merged_prs(self) -> None:
        github = FakeGitHub(
            {
                f"/repos/{REPO}/issues": httpx.Response(
                    200,
                    json=[
                        {"number": 1, "title": "Bug", "closed_at": "2024-01-01T00:00:00Z"},
                        {
                            "number": 2,
                            "title": "Fix bug",
                            "closed_at": "2024-01-02T00:00:00Z",
                            "pull_request": {"merged_at": "2024-01-02T00:00:00Z"},
                        },
                        {
                            "number": 3,
                            "title": "Abandoned",
                            "closed_at": "2024-01-03T00:00:00Z",
                            "pull_request": {"merged_at": None},
                        },
                    ],
                )
            }
        )
        issues, prs = await github.fetcher().fetch_closed_issues_and_prs()
        assert [i.number for i in issues] == [1]
        assert [p.number for p in prs] == [2]
        assert prs[0].merged_at is not None
        assert github.requests[0].url.params["state"] == "closed"


class TestHeaders:
    @pytest.mark.asyncio
    async def test_token_sent_as_bearer(self) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}": httpx.Response(200, json={"default_branch": "main"})}
        )
        await github.fetcher(token="ghp_test").default_branch()
        assert github.requests[0].headers["Authorization"] == "Bearer ghp_test"

    @pytest.mark.asyncio
    async def test_anonymous_without_token(self) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}": httpx.Response(200, json={"default_branch": "main"})}
        )
        await github.fetcher().default_branch()
        assert "Authorization" not in github.requests[0].headers


# ---------------------------------------------------------------------------
# Retry and Error Translation Tests
# ---------------------------------------------------------------------------


@pytest.fixture
def no_backoff(monkeypatch):
    """Retry immediately so transient-failure tests stay fast."""
    monkeypatch.setattr(GitHubFetcher._request.retry, "wait", wait_none())


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_status_retried(self, no_backoff) -> None:
        github = FakeGitHub(
            {
                f"/repos/{REPO}": [
                    httpx.Response(503),
                    httpx.Response(200, json={"default_branch": "trunk"}),
                ]
            }
        )
        assert await github.fetcher().default_branch() == "trunk"
        assert len(github.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, no_backoff) -> None:
        github = FakeGitHub({})
        with pytest.raises(FetcherError) as exc_info:
            await github.fetcher().fetch_tags()
        assert exc_info.value.status_code == 404
        assert f"/repos/{REPO}/tags" in str(exc_info.value)
        assert len(github.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_on_commit_after_retries(self, no_backoff) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}/commits/abc": [httpx.Response(500) for _ in range(3)]}
        )
        with pytest.raises(FetcherError) as exc_info:
            await github.fetcher().fetch_commit("abc")
        assert not isinstance(exc_info.value, CommitNotFoundError)
        assert exc_info.value.status_code == 500
        assert len(github.requests) == 3

    @pytest.mark.asyncio
    async def test_unprocessable_commit_is_not_found(self) -> None:
        github = FakeGitHub(
            {f"/repos/{REPO}/commits/abc": httpx.Response(422, json={"message": "No commit"})}
        )
        with pytest.raises(CommitNotFoundError) as exc_info:
            await github.fetcher().fetch_commit("abc")
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_network_error_becomes_fetcher_error(self, no_backoff) -> None:
        attempts = []

        def refuse(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = GitHubFetcher(REPO, transport=httpx.MockTransport(refuse))
        with pytest.raises(FetcherError) as exc_info:
            await fetcher.commits_in_branch("main")
        assert exc_info.value.status_code is None
        assert "connection refused" in str(exc_info.value)
        assert len(attempts) == 3


# ---------------------------------------------------------------------------
# Helper Tests
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_parse_next_link(self) -> None:
        header = (
            f'<{API}/x?page=2>; rel="next", '
            f'<{API}/x?page=5>; rel="last"'
        )
        assert GitHubFetcher._parse_next_link(header) == f"{API}/x?page=2"

    def test_parse_next_link_last_page(self) -> None:
        assert GitHubFetcher._parse_next_link(f'<{API}/x?page=1>; rel="prev"') is None
        assert GitHubFetcher._parse_next_link("") is None

    @pytest.mark.parametrize(
        ("status", "expected"), [(500, True), (502, True), (429, True), (404, False), (422, False)]
    )
    def test_transient_statuses(self, status: int, expected: bool) -> None:
        request = httpx.Request("GET", f"{API}/x")
        response = httpx.Response(status, request=request)
        exc = httpx.HTTPStatusError("boom", request=request, response=response)
        assert _is_transient(exc) is expected

    def test_network_errors_are_transient(self) -> None:
        assert _is_transient(httpx.ConnectError("refused"))
        assert not _is_transient(ValueError("nope"))


class TestMockFetcher:
    @pytest.mark.asyncio
    async def test_from_snapshot(self, commit_payload) -> None:
        fetcher = MockFetcher.from_snapshot(
            {
                "tags": [{"name": "v1.0.0", "commit_sha": "a", "shas_in_tag": ["a"]}],
                "events": {"4": [{"event": "closed"}]},
                "comments": {"4": [{"body": "hi"}]},
                "commits": {"a": commit_payload("a")},
                "branches": {"develop": ["a", "b"]},
                "default_branch": "develop",
            }
        )
        tag = Tag(name="v1.0.0", commit_sha="a")
        assert await fetcher.fetch_tag_shas([tag]) == {"v1.0.0": {"a"}}
        assert (await fetcher.fetch_events([Issue(number=4)]))[4][0].event == "closed"
        assert (await fetcher.fetch_comments([Issue(number=4)]))[4][0].body == "hi"
        assert (await fetcher.fetch_commit("a")).sha == "a"
        assert await fetcher.default_branch() == "develop"
        assert await fetcher.commits_in_branch("develop") == {"a", "b"}
