"""Pydantic models for the records the association engine reads and writes.

Inputs mirror the GitHub REST payloads closely enough that the raw JSON of
an issue, an issue event, a comment, a tag or a commit validates directly;
unknown fields are ignored. Outputs are explicit result objects: the engine
never mutates the records it is given, the pipeline merges results back.

Key design decisions:
- Timestamps are parsed into timezone-aware datetimes by pydantic
- Event kinds stay plain strings since GitHub adds new kinds over time;
  EventKind names the ones the engine cares about
- A pull request is an issue that may carry merged_at
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventKind(StrEnum):
    """Issue event kinds inspected by the engine."""

    MERGED = "merged"
    CLOSED = "closed"
    REFERENCED = "referenced"
    REOPENED = "reopened"


class AssociationState(StrEnum):
    """States of the per-PR association decision.

    NO_EVIDENCE: No merged event was found; only a rebase comment can help
    HAVE_MERGE_SHA: A merge commit SHA is known and must be located
    HAVE_REBASE_SHA: A SHA was recovered from a rebase comment
    ASSOCIATED: The SHA is in a tag or on the release branch
    UNASSOCIATED: Merge SHA located nowhere, no rebase comment (warning)
    FATAL: No usable evidence, or an unverifiable rebase comment
    """

    NO_EVIDENCE = "NO_EVIDENCE"
    HAVE_MERGE_SHA = "HAVE_MERGE_SHA"
    HAVE_REBASE_SHA = "HAVE_REBASE_SHA"
    ASSOCIATED = "ASSOCIATED"
    UNASSOCIATED = "UNASSOCIATED"
    FATAL = "FATAL"


class DateSource(StrEnum):
    """Where a reconciled actual_date came from."""

    COMMIT_AUTHOR = "commit_author"
    CLOSED_AT = "closed_at"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Repository records
# ---------------------------------------------------------------------------


class Tag(BaseModel):
    """A release tag and the commits reachable from it.

    Accepts GitHub's /tags payload ({"name": ..., "commit": {"sha": ...}})
    as well as the flat form.

    Attributes:
        name: Tag name (e.g., "v1.2.0")
        commit_sha: SHA of the commit the tag points to
        shas_in_tag: Every commit SHA reachable from the tag, inclusive
        date: Commit date of the tagged commit, once fetched
    """

    name: str = Field(..., min_length=1, description="Tag name")
    commit_sha: str = Field(..., min_length=1, description="Tagged commit SHA")
    shas_in_tag: set[str] = Field(
        default_factory=set, description="Commit SHAs reachable from the tag"
    )
    date: datetime | None = Field(None, description="Date of the tagged commit")

    @model_validator(mode="before")
    @classmethod
    def lift_commit_sha(cls, data: Any) -> Any:
        """Take commit_sha from the nested GitHub commit object if needed."""
        if isinstance(data, dict) and "commit_sha" not in data:
            commit = data.get("commit")
            if isinstance(commit, dict) and "sha" in commit:
                return {**data, "commit_sha": commit["sha"]}
        return data


class Event(BaseModel):
    """A single entry of an issue's event timeline."""

    event: str = Field(..., description="Event kind, e.g. 'merged' or 'closed'")
    commit_id: str | None = Field(None, description="Commit referenced by the event")
    created_at: datetime | None = None


class Comment(BaseModel):
    """An issue or pull request comment."""

    body: str = ""
    created_at: datetime | None = None

    @field_validator("body", mode="before")
    @classmethod
    def none_body_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class CommitAuthor(BaseModel):
    name: str = ""
    email: str = ""
    date: datetime


class CommitDetail(BaseModel):
    author: CommitAuthor
    committer: CommitAuthor | None = None
    message: str = ""


class Commit(BaseModel):
    """A commit as returned by GET /repos/{repo}/commits/{sha}."""

    sha: str
    commit: CommitDetail

    @property
    def author_date(self) -> datetime:
        return self.commit.author.date


class Issue(BaseModel):
    """An issue (or pull request) with its timeline.

    Attributes:
        number: Issue number
        title: Issue title
        events: Chronological events, None until fetched
        comments: Chronological comments, None until fetched
        closed_at: When GitHub recorded the issue as closed
        merged_at: Set only on merged pull requests
        actual_date: Reconciled closing date, filled in by the pipeline
    """

    number: int = Field(..., gt=0, description="Issue number")
    title: str = ""
    events: list[Event] | None = None
    comments: list[Comment] | None = None
    closed_at: datetime | None = None
    merged_at: datetime | None = None
    actual_date: datetime | None = None


class PullRequest(Issue):
    """A pull request; first_occurring_tag is filled in by the pipeline."""

    first_occurring_tag: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class AssociationResult(BaseModel):
    """Outcome of associating one pull request.

    Attributes:
        pr_number: The pull request number
        state: Terminal state of the decision (ASSOCIATED or UNASSOCIATED)
        tag_name: Oldest tag containing the change, if any
        via_sha: The SHA that was located (merge or rebase SHA)
        on_release_branch: True when only the release branch contains it
    """

    pr_number: int
    state: AssociationState
    tag_name: str | None = None
    via_sha: str | None = None
    on_release_branch: bool = False

    @property
    def associated(self) -> bool:
        return self.state == AssociationState.ASSOCIATED


class AssociationReport(BaseModel):
    """All association results of a run plus the PRs left without a tag source."""

    results: list[AssociationResult] = Field(default_factory=list)
    unassociated: list[PullRequest] = Field(default_factory=list)

    def result_for(self, pr_number: int) -> AssociationResult | None:
        for result in self.results:
            if result.pr_number == pr_number:
                return result
        return None


class ReconciliationResult(BaseModel):
    """Reconciled closing date of one issue or pull request."""

    issue_number: int
    actual_date: datetime | None = None
    source: DateSource = DateSource.SKIPPED
