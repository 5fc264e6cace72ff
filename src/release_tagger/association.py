"""PR-to-tag association engine.

Finds, for every merged pull request, the oldest tag whose history contains
the PR's commit. This follows git history rather than dates, so a PR merged
on a maintenance branch before a release but tagged after it still lands in
the right release.

Evidence is tried in a fixed order:
1. The commit_id of the PR's "merged" event (the merge SHA)
2. Membership of that SHA in the release branch (unreleased work)
3. A "rebased commit: <sha>" comment, for PRs landed by rebase, whose SHA
   then goes through steps 1-2 again

The order is encoded as a transition table over AssociationState so the
precedence can be read, and tested, without running any fetches.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass

from release_tagger.context.github import FetcherProtocol
from release_tagger.exceptions import (
    MissingMergeEvidenceError,
    UnverifiedRebaseCommitError,
)
from release_tagger.logging_config import get_logger
from release_tagger.schemas import (
    AssociationReport,
    AssociationResult,
    AssociationState,
    Comment,
    EventKind,
    PullRequest,
    Tag,
)
from release_tagger.tag_index import TagShaIndex

logger = get_logger(__name__)

REBASED_COMMIT_PATTERN = re.compile(r"rebased commit: ([0-9a-f]{40})", re.IGNORECASE)

TERMINAL_STATES = frozenset(
    {AssociationState.ASSOCIATED, AssociationState.UNASSOCIATED, AssociationState.FATAL}
)

# (state, located, rebase_sha_found) -> next state. None means "not consulted".
TRANSITIONS: dict[tuple[AssociationState, bool | None, bool | None], AssociationState] = {
    (AssociationState.HAVE_MERGE_SHA, True, None): AssociationState.ASSOCIATED,
    (AssociationState.HAVE_MERGE_SHA, False, True): AssociationState.HAVE_REBASE_SHA,
    (AssociationState.HAVE_MERGE_SHA, False, False): AssociationState.UNASSOCIATED,
    (AssociationState.NO_EVIDENCE, None, True): AssociationState.HAVE_REBASE_SHA,
    (AssociationState.NO_EVIDENCE, None, False): AssociationState.FATAL,
    (AssociationState.HAVE_REBASE_SHA, True, None): AssociationState.ASSOCIATED,
    (AssociationState.HAVE_REBASE_SHA, False, None): AssociationState.FATAL,
}


def initial_state(merge_sha: str | None) -> AssociationState:
    if merge_sha:
        return AssociationState.HAVE_MERGE_SHA
    return AssociationState.NO_EVIDENCE


def next_state(
    state: AssociationState,
    *,
    located: bool | None = None,
    rebase_sha_found: bool | None = None,
) -> AssociationState:
    """Advance the association decision by one step.

    Args:
        state: Current, non-terminal state
        located: Whether the current SHA was found in a tag or the release
                 branch (consulted in HAVE_MERGE_SHA and HAVE_REBASE_SHA)
        rebase_sha_found: Whether a rebase comment SHA exists (consulted in
                          NO_EVIDENCE, and in HAVE_MERGE_SHA when the merge
                          SHA was not located)

    Returns:
        The next state

    Raises:
        ValueError: If the state is terminal or the signals don't match it
    """
    try:
        return TRANSITIONS[(state, located, rebase_sha_found)]
    except KeyError:
        raise ValueError(
            f"No transition from {state} with located={located}, "
            f"rebase_sha_found={rebase_sha_found}"
        ) from None


def find_merged_sha(pull_request: PullRequest) -> str | None:
    """Return the commit_id of the first "merged" event, if any."""
    for event in pull_request.events or []:
        if event.event == EventKind.MERGED:
            return event.commit_id
    return None


def find_rebase_sha(comments: Sequence[Comment] | None) -> str | None:
    """Return the SHA of the most recent "rebased commit: <sha>" comment."""
    for comment in reversed(comments or []):
        match = REBASED_COMMIT_PATTERN.search(comment.body)
        if match:
            return match.group(1)
    return None


@dataclass(frozen=True)
class Location:
    """Where a SHA was found: a tag, or only the release branch."""

    tag_name: str | None = None
    on_release_branch: bool = False


class TagAssociator:
    """Associates pull requests with the oldest tag containing them.

    Usage:
        associator = TagAssociator(fetcher, release_branch="develop")
        report = await associator.associate(tags, prs)
        report.unassociated  # PRs found in no tag and no release branch
    """

    def __init__(
        self,
        fetcher: FetcherProtocol,
        release_branch: str | None = None,
        *,
        verbose: bool = False,
        max_concurrency: int = 8,
    ) -> None:
        """Initialize the associator.

        Args:
            fetcher: Source of tag ancestry, comments and branch commits
            release_branch: Branch holding unreleased work. The repository's
                            default branch is used when None.
            verbose: Log a progress event for every associated PR
            max_concurrency: Maximum number of PRs processed at once
        """
        self._fetcher = fetcher
        self._release_branch = release_branch
        self._verbose = verbose
        self._max_concurrency = max_concurrency
        self._branch_shas: set[str] | None = None
        self._branch_lock: asyncio.Lock | None = None

    async def associate(
        self, tags: Sequence[Tag], prs: Sequence[PullRequest]
    ) -> AssociationReport:
        """Associate every PR with its first tag or the release branch.

        Args:
            tags: The tags sorted by time, newest to oldest
            prs: The merged pull requests to place

        Returns:
            Results for every PR and the PRs that could not be associated

        Raises:
            UnverifiedRebaseCommitError: A rebase comment SHA is in no tag
                                         and not on the release branch
            MissingMergeEvidenceError: A PR has no merged event and no
                                       rebase comment
        """
        total = len(prs)
        index = await TagShaIndex.build(tags, self._fetcher)
        self._branch_shas = None
        self._branch_lock = asyncio.Lock()

        semaphore = asyncio.Semaphore(self._max_concurrency)
        associated_count = 0

        async def run_one(pr: PullRequest) -> AssociationResult:
            nonlocal associated_count
            async with semaphore:
                result = await self.associate_one(index, pr)
            if result.associated:
                associated_count += 1
                if self._verbose:
                    logger.info(
                        "associating_prs", count=associated_count, total=total
                    )
            return result

        outcomes = await asyncio.gather(
            *(run_one(pr) for pr in prs), return_exceptions=True
        )
        # Raise the failure of the earliest PR so reruns fail the same way.
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        results: list[AssociationResult] = list(outcomes)
        unassociated = [
            pr
            for pr, result in zip(prs, results)
            if result.state == AssociationState.UNASSOCIATED
        ]
        logger.info(
            "prs_associated",
            associated=total - len(unassociated),
            unassociated=len(unassociated),
            total=total,
        )
        return AssociationReport(results=results, unassociated=unassociated)

    async def associate_one(
        self, index: TagShaIndex, pull_request: PullRequest
    ) -> AssociationResult:
        """Run the association state machine for a single PR."""
        merge_sha = find_merged_sha(pull_request)
        rebase_sha: str | None = None
        location: Location | None = None
        state = initial_state(merge_sha)

        while state not in TERMINAL_STATES:
            if state == AssociationState.HAVE_MERGE_SHA:
                location = await self._locate(index, merge_sha)
                if location is None:
                    rebase_sha = await self._rebase_sha(pull_request)
                    state = next_state(
                        state, located=False, rebase_sha_found=rebase_sha is not None
                    )
                else:
                    state = next_state(state, located=True)
            elif state == AssociationState.NO_EVIDENCE:
                rebase_sha = await self._rebase_sha(pull_request)
                state = next_state(state, rebase_sha_found=rebase_sha is not None)
            else:
                location = await self._locate(index, rebase_sha)
                state = next_state(state, located=location is not None)

        if state == AssociationState.FATAL:
            if rebase_sha is not None:
                raise UnverifiedRebaseCommitError(pull_request.number, rebase_sha)
            raise MissingMergeEvidenceError(pull_request.number)

        if state == AssociationState.UNASSOCIATED:
            logger.warning(
                "merge_commit_not_found",
                pr_number=pull_request.number,
                sha=merge_sha,
                detail="merge commit was not found in the release branch or "
                "tagged git history and no rebased SHA comment was found",
            )
            return AssociationResult(
                pr_number=pull_request.number, state=state, via_sha=merge_sha
            )

        return AssociationResult(
            pr_number=pull_request.number,
            state=state,
            tag_name=location.tag_name,
            via_sha=rebase_sha or merge_sha,
            on_release_branch=location.on_release_branch,
        )

    async def _locate(self, index: TagShaIndex, sha: str) -> Location | None:
        tag = index.oldest_tag_containing(sha)
        if tag is not None:
            return Location(tag_name=tag.name)
        if sha in await self._release_branch_shas():
            return Location(on_release_branch=True)
        return None

    async def _release_branch_shas(self) -> set[str]:
        """Load the release branch ancestry once per run."""
        if self._branch_lock is None:
            self._branch_lock = asyncio.Lock()
        async with self._branch_lock:
            if self._branch_shas is None:
                branch = self._release_branch or await self._fetcher.default_branch()
                self._branch_shas = await self._fetcher.commits_in_branch(branch)
                logger.debug(
                    "release_branch_loaded", branch=branch, commits=len(self._branch_shas)
                )
            return self._branch_shas

    async def _rebase_sha(self, pull_request: PullRequest) -> str | None:
        comments = pull_request.comments
        if comments is None:
            fetched = await self._fetcher.fetch_comments([pull_request])
            comments = fetched.get(pull_request.number)
        return find_rebase_sha(comments)
