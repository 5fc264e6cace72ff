"""GitHub API fetcher for tags, timelines and commits.

This module supplies everything the association engine and the closed-date
reconciler read from GitHub:
- Commit ancestry of each tag and of the release branch
- Event timelines and comments of issues and pull requests
- Single commits (for author dates) and tag commit dates

Design notes:
- Uses httpx for async HTTP requests, tenacity for transient-failure retries
- Batched calls scatter one request per entity with asyncio.gather and
  return a mapping keyed by tag name or issue number
- A semaphore bounds the number of in-flight requests
- Uses a Protocol so the engine doesn't depend on the concrete implementation
  (makes testing with MockFetcher easy)

GitHub API docs: https://docs.github.com/en/rest
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any, Protocol, TypeVar

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from release_tagger.exceptions import CommitNotFoundError, FetcherError
from release_tagger.logging_config import get_logger
from release_tagger.schemas import Comment, Commit, Event, Issue, PullRequest, Tag

logger = get_logger(__name__)

K = TypeVar("K")
V = TypeVar("V")

# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class FetcherProtocol(Protocol):
    """Protocol defining the capability the engine needs from GitHub.

    Batched methods return mappings rather than mutating their arguments.
    """

    async def fetch_tag_shas(self, tags: Sequence[Tag]) -> dict[str, set[str]]:
        """Return every commit SHA reachable from each tag, keyed by tag name."""
        ...

    async def fetch_events(self, entities: Sequence[Issue]) -> dict[int, list[Event]]:
        """Return the chronological events of each issue, keyed by number."""
        ...

    async def fetch_comments(
        self, entities: Sequence[Issue]
    ) -> dict[int, list[Comment]]:
        """Return the chronological comments of each issue, keyed by number."""
        ...

    async def fetch_commit(self, commit_id: str) -> Commit:
        """Return a single commit.

        Raises:
            CommitNotFoundError: If the commit is not in this repository
            FetcherError: If the API call fails for another reason
        """
        ...

    async def commits_in_branch(self, branch: str) -> set[str]:
        """Return the full ancestry of a branch."""
        ...

    async def default_branch(self) -> str:
        """Return the repository's default branch name."""
        ...

    async def fetch_tag_date(self, tag: Tag) -> datetime | None:
        """Return the date of the commit a tag points to."""
        ...


def _is_transient(exc: BaseException) -> bool:
    """Retry on network errors, rate limiting and server errors only."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


class GitHubFetcher:
    """Real GitHub fetcher using httpx.

    Usage:
        fetcher = GitHubFetcher("myorg/api", token="ghp_...")
        shas = await fetcher.fetch_tag_shas(tags)
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        repo: str,
        token: str | None = None,
        *,
        base_url: str | None = None,
        max_concurrency: int = 8,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the GitHub fetcher.

        Args:
            repo: Repository in "owner/name" format
            token: GitHub personal access token. Requests are anonymous
                   (and heavily rate limited) without one.
            base_url: API root, for GitHub Enterprise
            max_concurrency: Maximum number of concurrent requests
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.repo = repo
        self._base_url = base_url or self.BASE_URL
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._headers: dict[str, str] = {
            "Accept": "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._branch_commits: dict[str, set[str]] = {}
        self._default_branch: str | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=30.0,
            transport=self._transport,
        )

    # -- Batched fetches ---------------------------------------------------

    async def fetch_tag_shas(self, tags: Sequence[Tag]) -> dict[str, set[str]]:
        """Fetch the commit ancestry of every tag.

        Each tag costs one paginated GET /repos/{repo}/commits?sha=<commit>.
        """
        async with self._client() as client:

            async def shas_for(tag: Tag) -> set[str]:
                commits = await self._paginate(
                    client,
                    f"/repos/{self.repo}/commits",
                    {"sha": tag.commit_sha},
                )
                return {c["sha"] for c in commits}

            return await _gather_mapping(tags, lambda t: t.name, shas_for)

    async def fetch_events(self, entities: Sequence[Issue]) -> dict[int, list[Event]]:
        """Fetch the event timeline of every issue/PR."""
        async with self._client() as client:

            async def events_for(issue: Issue) -> list[Event]:
                data = await self._paginate(
                    client, f"/repos/{self.repo}/issues/{issue.number}/events"
                )
                return [Event.model_validate(e) for e in data]

            return await _gather_mapping(entities, lambda i: i.number, events_for)

    async def fetch_comments(
        self, entities: Sequence[Issue]
    ) -> dict[int, list[Comment]]:
        """Fetch the comments of every issue/PR."""
        async with self._client() as client:

            async def comments_for(issue: Issue) -> list[Comment]:
                data = await self._paginate(
                    client, f"/repos/{self.repo}/issues/{issue.number}/comments"
                )
                return [Comment.model_validate(c) for c in data]

            return await _gather_mapping(entities, lambda i: i.number, comments_for)

    # -- Single lookups ----------------------------------------------------

    async def fetch_commit(self, commit_id: str) -> Commit:
        """Fetch one commit from this repository.

        Raises:
            CommitNotFoundError: On 404/422, typically a fork's commit
            FetcherError: On any other HTTP failure
        """
        async with self._client() as client:
            try:
                resp = await self._get(client, f"/repos/{self.repo}/commits/{commit_id}")
            except FetcherError as exc:
                if exc.status_code in (404, 422):
                    raise CommitNotFoundError(commit_id, exc.status_code) from exc
                raise
            return Commit.model_validate(resp.json())

    async def commits_in_branch(self, branch: str) -> set[str]:
        """Fetch and memoise the full ancestry of a branch."""
        if branch not in self._branch_commits:
            async with self._client() as client:
                commits = await self._paginate(
                    client, f"/repos/{self.repo}/commits", {"sha": branch}
                )
            self._branch_commits[branch] = {c["sha"] for c in commits}
            logger.debug(
                "branch_commits_fetched",
                branch=branch,
                count=len(self._branch_commits[branch]),
            )
        return self._branch_commits[branch]

    async def default_branch(self) -> str:
        if self._default_branch is None:
            async with self._client() as client:
                resp = await self._get(client, f"/repos/{self.repo}")
            self._default_branch = resp.json()["default_branch"]
        return self._default_branch

    async def fetch_tag_date(self, tag: Tag) -> datetime | None:
        """Fetch the committer date of the commit a tag points to."""
        async with self._client() as client:
            resp = await self._get(
                client, f"/repos/{self.repo}/git/commits/{tag.commit_sha}"
            )
        committer = resp.json().get("committer") or {}
        date = committer.get("date")
        return datetime.fromisoformat(date.replace("Z", "+00:00")) if date else None

    # -- Listing (live CLI mode) -------------------------------------------

    async def fetch_tags(self) -> list[Tag]:
        """Fetch all tags, newest first as GitHub lists them."""
        async with self._client() as client:
            data = await self._paginate(client, f"/repos/{self.repo}/tags")
        return [Tag.model_validate(t) for t in data]

    async def fetch_closed_issues_and_prs(
        self,
    ) -> tuple[list[Issue], list[PullRequest]]:
        """Fetch closed issues and merged pull requests.

        The issues endpoint lists both; pull requests carry a
        "pull_request" object holding merged_at. Closed-but-unmerged pull
        requests never reach a release and are dropped.
        """
        async with self._client() as client:
            data = await self._paginate(
                client, f"/repos/{self.repo}/issues", {"state": "closed"}
            )

        issues: list[Issue] = []
        prs: list[PullRequest] = []
        for item in data:
            pr_info = item.get("pull_request")
            if pr_info is None:
                issues.append(Issue.model_validate(item))
            elif pr_info.get("merged_at"):
                prs.append(
                    PullRequest.model_validate(
                        {**item, "merged_at": pr_info["merged_at"]}
                    )
                )
        logger.info("closed_items_fetched", issues=len(issues), pull_requests=len(prs))
        return issues, prs

    # -- HTTP plumbing -----------------------------------------------------

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _request(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        async with self._semaphore:
            resp = await client.get(url, params=params)
        resp.raise_for_status()
        return resp

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """GET with retries, translating httpx failures into FetcherError.

        Raises:
            FetcherError: Once retries are exhausted or on a non-transient
                          failure. status_code is set for HTTP errors.
        """
        try:
            return await self._request(client, url, params)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.debug("github_request_failed", url=url, status_code=status)
            raise FetcherError(f"GET {url} failed with {status}", status) from exc
        except httpx.HTTPError as exc:
            logger.debug("github_request_failed", url=url, error=str(exc))
            raise FetcherError(f"GET {url} failed: {exc}") from exc

    async def _paginate(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict]:
        """Collect all items of a list endpoint by following Link headers.

        Args:
            client: The httpx client to use
            url: The initial URL to fetch
            params: Query parameters for the first page

        Returns:
            All items across all pages
        """
        all_items: list[dict] = []
        next_url: str | None = url
        page_params: dict[str, Any] | None = {"per_page": 100, **(params or {})}

        while next_url:
            resp = await self._get(client, next_url, page_params)
            all_items.extend(resp.json())
            next_url = self._parse_next_link(resp.headers.get("link", ""))
            # The next link already carries the query string.
            page_params = None

        return all_items

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        """Extract the 'next' URL from a GitHub Link header."""
        if not link_header:
            return None
        for part in link_header.split(","):
            if 'rel="next"' in part:
                return part.split(";")[0].strip().strip("<>")
        return None


async def _gather_mapping(
    items: Iterable[V],
    key: Callable[[V], K],
    fetch: Callable[[V], Awaitable[Any]],
) -> dict[K, Any]:
    """Run fetch for every item concurrently and key the results."""
    items = list(items)
    results = await asyncio.gather(*(fetch(item) for item in items))
    return {key(item): result for item, result in zip(items, results)}


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------


class MockFetcher:
    """Mock fetcher that serves predefined repository data.

    Use this in tests and for offline runs from a JSON snapshot. Every call
    is counted in ``calls`` so tests can check what was fetched.

    Usage:
        fetcher = MockFetcher(
            tag_shas={"v1.0.0": {"abc..."}},
            branches={"main": {"abc...", "def..."}},
        )
        shas = await fetcher.fetch_tag_shas(tags)
    """

    def __init__(
        self,
        *,
        tag_shas: dict[str, Iterable[str]] | None = None,
        events: dict[int, list[Any]] | None = None,
        comments: dict[int, list[Any]] | None = None,
        commits: dict[str, Any] | None = None,
        branches: dict[str, Iterable[str]] | None = None,
        default_branch: str = "main",
        tag_dates: dict[str, datetime] | None = None,
    ) -> None:
        """Initialize with optional predefined data.

        Args:
            tag_shas: Tag name -> reachable commit SHAs
            events: Issue number -> events (Event or raw dicts)
            comments: Issue number -> comments (Comment or raw dicts)
            commits: SHA -> commit (Commit or raw GitHub commit dict)
            branches: Branch name -> commit SHAs
            default_branch: Name returned by default_branch()
            tag_dates: Tag name -> date of the tagged commit
        """
        self._tag_shas = {k: set(v) for k, v in (tag_shas or {}).items()}
        self._events = {
            k: [Event.model_validate(e) for e in v] for k, v in (events or {}).items()
        }
        self._comments = {
            k: [Comment.model_validate(c) for c in v]
            for k, v in (comments or {}).items()
        }
        self._commits = {
            k: Commit.model_validate(v) for k, v in (commits or {}).items()
        }
        self._branches = {k: set(v) for k, v in (branches or {}).items()}
        self._default_branch = default_branch
        self._tag_dates = tag_dates or {}
        self.calls: Counter[str] = Counter()

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> MockFetcher:
        """Build a fetcher from the JSON snapshot format the CLI reads."""
        return cls(
            tag_shas={t["name"]: t.get("shas_in_tag", []) for t in data.get("tags", [])},
            events={int(k): v for k, v in data.get("events", {}).items()},
            comments={int(k): v for k, v in data.get("comments", {}).items()},
            commits=data.get("commits", {}),
            branches=data.get("branches", {}),
            default_branch=data.get("default_branch", "main"),
            tag_dates={
                name: datetime.fromisoformat(date.replace("Z", "+00:00"))
                for name, date in data.get("tag_dates", {}).items()
            },
        )

    async def fetch_tag_shas(self, tags: Sequence[Tag]) -> dict[str, set[str]]:
        self.calls["fetch_tag_shas"] += 1
        return {tag.name: set(self._tag_shas.get(tag.name, set())) for tag in tags}

    async def fetch_events(self, entities: Sequence[Issue]) -> dict[int, list[Event]]:
        self.calls["fetch_events"] += 1
        return {e.number: list(self._events.get(e.number, [])) for e in entities}

    async def fetch_comments(
        self, entities: Sequence[Issue]
    ) -> dict[int, list[Comment]]:
        self.calls["fetch_comments"] += 1
        return {e.number: list(self._comments.get(e.number, [])) for e in entities}

    async def fetch_commit(self, commit_id: str) -> Commit:
        self.calls["fetch_commit"] += 1
        if commit_id not in self._commits:
            raise CommitNotFoundError(commit_id, 404)
        return self._commits[commit_id]

    async def commits_in_branch(self, branch: str) -> set[str]:
        self.calls["commits_in_branch"] += 1
        return set(self._branches.get(branch, set()))

    async def default_branch(self) -> str:
        self.calls["default_branch"] += 1
        return self._default_branch

    async def fetch_tag_date(self, tag: Tag) -> datetime | None:
        self.calls["fetch_tag_date"] += 1
        return self._tag_dates.get(tag.name)
