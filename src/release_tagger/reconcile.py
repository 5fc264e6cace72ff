"""Closed-date reconciliation for issues and pull requests.

GitHub's closed_at is when the issue was closed on the website. When an
issue was closed by a commit, or a PR was merged by rebase, the author date
of that commit better reflects when the change was made. This module picks
the most recent closing (or merging) event and resolves its commit.

Failures to fetch the commit never abort the run: commits that live in a
fork are commonly unreachable from the base repository, so the reconciler
falls back to closed_at and logs a warning.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from release_tagger.context.github import FetcherProtocol
from release_tagger.logging_config import get_logger
from release_tagger.schemas import (
    DateSource,
    Event,
    EventKind,
    Issue,
    ReconciliationResult,
)

logger = get_logger(__name__)


def closing_event(issue: Issue) -> Event | None:
    """Return the latest "merged" event of a PR, or "closed" event of an issue."""
    kind = EventKind.CLOSED if issue.merged_at is None else EventKind.MERGED
    for event in reversed(issue.events or []):
        if event.event == kind:
            return event
    return None


class ClosedDateReconciler:
    """Resolves the actual closing date of issues and pull requests.

    Usage:
        reconciler = ClosedDateReconciler(fetcher)
        result = await reconciler.reconcile(issue)
        result.actual_date
    """

    def __init__(self, fetcher: FetcherProtocol, *, max_concurrency: int = 8) -> None:
        self._fetcher = fetcher
        self._max_concurrency = max_concurrency

    async def reconcile(self, issue: Issue) -> ReconciliationResult:
        """Resolve the actual closing date of one issue.

        Args:
            issue: Issue or PR with its events already fetched

        Returns:
            The reconciled date and where it came from. Issues without
            events, or without a matching event, are skipped.
        """
        if issue.events is None:
            return ReconciliationResult(issue_number=issue.number)

        event = closing_event(issue)
        if event is None:
            logger.debug("closing_event_missing", issue_number=issue.number)
            return ReconciliationResult(issue_number=issue.number)

        if event.commit_id is None:
            return ReconciliationResult(
                issue_number=issue.number,
                actual_date=issue.closed_at,
                source=DateSource.CLOSED_AT,
            )

        try:
            commit = await self._fetcher.fetch_commit(event.commit_id)
        except Exception as exc:
            logger.warning(
                "commit_fetch_failed",
                issue_number=issue.number,
                commit_id=event.commit_id,
                error=str(exc),
                detail="commit is probably referenced from another repo",
            )
            return ReconciliationResult(
                issue_number=issue.number,
                actual_date=issue.closed_at,
                source=DateSource.CLOSED_AT,
            )

        return ReconciliationResult(
            issue_number=issue.number,
            actual_date=commit.author_date,
            source=DateSource.COMMIT_AUTHOR,
        )

    async def reconcile_all(
        self, issues: Sequence[Issue]
    ) -> list[ReconciliationResult]:
        """Reconcile every issue concurrently, preserving input order."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(issue: Issue) -> ReconciliationResult:
            async with semaphore:
                return await self.reconcile(issue)

        results = await asyncio.gather(*(run_one(issue) for issue in issues))
        logger.info(
            "closed_dates_detected",
            total=len(issues),
            from_commits=sum(r.source == DateSource.COMMIT_AUTHOR for r in results),
        )
        return list(results)
