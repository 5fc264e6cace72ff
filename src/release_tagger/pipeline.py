"""Pipeline that prepares issues and pull requests for a changelog.

This module ties together all the components:
- Fetching (context/github.py)
- Closed-date reconciliation (reconcile.py)
- Tag association (association.py)

The pipeline follows this flow:
1. Fetch event timelines for issues and PRs that don't have them yet
2. Fetch the dates of all tags
3. Detect the actual closed date of every issue and PR
4. Associate every PR with the first tag containing it
5. Merge the explicit results back into copies of the records

Rendering the changelog itself is left to the caller.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from typing import TypeVar

from pydantic import BaseModel, Field, ValidationError

from release_tagger.association import TagAssociator
from release_tagger.config import TaggerConfig, load_config
from release_tagger.context.github import FetcherProtocol, GitHubFetcher, MockFetcher
from release_tagger.exceptions import AssociationError, ReleaseTaggerError
from release_tagger.logging_config import bind_run_context, get_logger, setup_logging
from release_tagger.reconcile import ClosedDateReconciler
from release_tagger.schemas import (
    AssociationReport,
    DateSource,
    Issue,
    PullRequest,
    ReconciliationResult,
    Tag,
)

logger = get_logger(__name__)

IssueT = TypeVar("IssueT", bound=Issue)


class PipelineResult(BaseModel):
    """Issues, PRs and tags with reconciled dates and first tags filled in.

    Attributes:
        issues: Closed issues with actual_date set where it could be resolved
        pull_requests: Merged PRs with actual_date and first_occurring_tag
        tags: Tags with their commit dates
        unassociated: PRs found in no tag and not on the release branch
    """

    issues: list[Issue] = Field(default_factory=list)
    pull_requests: list[PullRequest] = Field(default_factory=list)
    tags: list[Tag] = Field(default_factory=list)
    unassociated: list[PullRequest] = Field(default_factory=list)


def apply_reconciliations(
    items: Sequence[IssueT], results: Sequence[ReconciliationResult]
) -> list[IssueT]:
    """Return copies of items with actual_date set from reconciliation results."""
    by_number = {r.issue_number: r for r in results if r.source != DateSource.SKIPPED}
    return [
        item.model_copy(update={"actual_date": by_number[item.number].actual_date})
        if item.number in by_number
        else item
        for item in items
    ]


def apply_associations(
    prs: Sequence[PullRequest], report: AssociationReport
) -> list[PullRequest]:
    """Return copies of prs with first_occurring_tag set where a tag was found."""
    tags = {r.pr_number: r.tag_name for r in report.results if r.tag_name}
    return [
        pr.model_copy(update={"first_occurring_tag": tags[pr.number]})
        if pr.number in tags
        else pr
        for pr in prs
    ]


class ChangelogPipeline:
    """Orchestrates fetching, date reconciliation and tag association.

    Usage:
        pipeline = ChangelogPipeline(fetcher, TaggerConfig(release_branch="develop"))
        result = await pipeline.run(issues, prs, tags)
    """

    def __init__(
        self,
        fetcher: FetcherProtocol,
        config: TaggerConfig | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            fetcher: Source of repository data
            config: Run configuration. Uses defaults if None.
        """
        self.config = config or TaggerConfig()
        self._fetcher = fetcher
        self.associator = TagAssociator(
            fetcher,
            release_branch=self.config.release_branch,
            verbose=self.config.verbose,
            max_concurrency=self.config.max_concurrency,
        )
        self.reconciler = ClosedDateReconciler(
            fetcher, max_concurrency=self.config.max_concurrency
        )

    async def fetch_events_for_issues_and_prs(
        self, issues: Sequence[Issue], prs: Sequence[PullRequest]
    ) -> tuple[list[Issue], list[PullRequest]]:
        """Fetch events for every issue and PR whose timeline is missing."""
        missing = [item for item in [*issues, *prs] if item.events is None]
        if self.config.verbose:
            logger.info("fetching_events", count=len(missing), total=len(issues) + len(prs))
        events = await self._fetcher.fetch_events(missing) if missing else {}

        def with_events(item: IssueT) -> IssueT:
            if item.events is None and item.number in events:
                return item.model_copy(update={"events": events[item.number]})
            return item

        return [with_events(i) for i in issues], [with_events(p) for p in prs]

    async def fetch_tags_dates(self, tags: Sequence[Tag]) -> list[Tag]:
        """Fill in the commit date of every tag that doesn't have one."""
        undated = [tag for tag in tags if tag.date is None]
        dates = await asyncio.gather(*(self._fetcher.fetch_tag_date(t) for t in undated))
        by_name = dict(zip((t.name for t in undated), dates))
        if self.config.verbose:
            logger.info("fetching_tag_dates", count=len(undated), total=len(tags))
        return [
            tag.model_copy(update={"date": by_name[tag.name]})
            if tag.name in by_name
            else tag
            for tag in tags
        ]

    async def detect_actual_closed_dates(self, items: Sequence[IssueT]) -> list[IssueT]:
        results = await self.reconciler.reconcile_all(items)
        return apply_reconciliations(items, results)

    async def add_first_occurring_tag_to_prs(
        self, tags: Sequence[Tag], prs: Sequence[PullRequest]
    ) -> tuple[list[PullRequest], list[PullRequest]]:
        """Associate PRs with tags.

        Returns:
            The updated PRs and the subset that could not be associated
        """
        report = await self.associator.associate(tags, prs)
        return apply_associations(prs, report), report.unassociated

    async def run(
        self,
        issues: Sequence[Issue],
        prs: Sequence[PullRequest],
        tags: Sequence[Tag],
    ) -> PipelineResult:
        """Run the whole pipeline.

        Args:
            issues: Closed issues
            prs: Merged pull requests
            tags: Tags sorted newest to oldest

        Returns:
            The updated records and the unassociated PRs

        Raises:
            AssociationError: If a PR cannot be tied to any release evidence
        """
        logger.info(
            "pipeline_started", issues=len(issues), pull_requests=len(prs), tags=len(tags)
        )
        try:
            issues, prs = await self.fetch_events_for_issues_and_prs(issues, prs)
            tags = await self.fetch_tags_dates(tags)
            issues = await self.detect_actual_closed_dates(issues)
            prs = await self.detect_actual_closed_dates(prs)
            prs, unassociated = await self.add_first_occurring_tag_to_prs(tags, prs)
        except AssociationError as e:
            logger.error("association_failed", pr_number=e.pr_number, error=str(e))
            raise

        return PipelineResult(
            issues=issues, pull_requests=prs, tags=list(tags), unassociated=unassociated
        )


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------


async def _run_snapshot(data: dict, config: TaggerConfig) -> PipelineResult:
    fetcher = MockFetcher.from_snapshot(data)
    issues = [Issue.model_validate(i) for i in data.get("issues", [])]
    prs = [PullRequest.model_validate(p) for p in data.get("pull_requests", [])]
    tags = [Tag.model_validate(t) for t in data.get("tags", [])]
    return await ChangelogPipeline(fetcher, config).run(issues, prs, tags)


async def _run_live(config: TaggerConfig) -> PipelineResult:
    fetcher = GitHubFetcher(
        config.repo,
        token=config.token,
        base_url=config.base_url,
        max_concurrency=config.max_concurrency,
    )
    tags = await fetcher.fetch_tags()
    issues, prs = await fetcher.fetch_closed_issues_and_prs()
    return await ChangelogPipeline(fetcher, config).run(issues, prs, tags)


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point.

    Usage:
        release-tagger --input snapshot.json
        release-tagger --repo myorg/api --release-branch develop --verbose
    """
    parser = argparse.ArgumentParser(
        description="Associate pull requests with the first release tag containing them"
    )
    parser.add_argument(
        "--input", "-i", type=str, help="Path to a JSON snapshot of issues, PRs and tags"
    )
    parser.add_argument("--repo", "-r", type=str, help="Repository in owner/name format")
    parser.add_argument("--release-branch", type=str, help="Branch with unreleased work")
    parser.add_argument("--config", "-c", type=str, help="Path to a YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress")
    args = parser.parse_args(argv)

    from dotenv import load_dotenv

    load_dotenv()
    setup_logging()

    try:
        config = load_config(args.config).with_env_defaults()
    except ReleaseTaggerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    overrides = {
        "repo": args.repo,
        "release_branch": args.release_branch,
        "verbose": True if args.verbose else None,
    }
    config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    if not args.input and not config.repo:
        parser.print_usage()
        print("Provide --input FILE or --repo OWNER/NAME.")
        return

    bind_run_context(
        repo=None if args.input else config.repo,
        snapshot=args.input,
        release_branch=config.release_branch,
    )

    try:
        if args.input:
            with open(args.input) as f:
                data = json.load(f)
            result = asyncio.run(_run_snapshot(data, config))
        else:
            result = asyncio.run(_run_live(config))
    except (ReleaseTaggerError, OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(
        result.model_dump_json(
            indent=2, exclude={"tags": {"__all__": {"shas_in_tag"}}}
        )
    )


if __name__ == "__main__":
    main()
