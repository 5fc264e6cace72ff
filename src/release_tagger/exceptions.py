"""Exceptions raised by the association engine, fetchers and config loader."""

from __future__ import annotations


class ReleaseTaggerError(Exception):
    """Base exception for all release-tagger errors."""


class AssociationError(ReleaseTaggerError):
    """A pull request could not be tied to any release evidence.

    Fatal: the whole run stops, since a changelog built without this PR
    would silently misreport a release.
    """

    def __init__(self, message: str, pr_number: int) -> None:
        """Initialize association error.

        Args:
            message: Error message
            pr_number: Number of the offending pull request
        """
        super().__init__(message)
        self.pr_number = pr_number


class UnverifiedRebaseCommitError(AssociationError):
    """Raised when a rebase comment names a SHA found in no tag or branch."""

    def __init__(self, pr_number: int, sha: str) -> None:
        super().__init__(
            f"PR {pr_number} has a rebased SHA comment but that SHA "
            f"({sha}) was not found in the release branch or any tags",
            pr_number,
        )
        self.sha = sha


class MissingMergeEvidenceError(AssociationError):
    """Raised when a PR has neither a merged event nor a rebase comment."""

    def __init__(self, pr_number: int) -> None:
        super().__init__(
            f"No merge sha found for PR {pr_number} via the GitHub API",
            pr_number,
        )


class FetcherError(ReleaseTaggerError):
    """Raised when the upstream API cannot provide a requested object."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize fetcher error.

        Args:
            message: Error message
            status_code: HTTP status code, if the failure came from a response
        """
        super().__init__(message)
        self.status_code = status_code


class CommitNotFoundError(FetcherError):
    """Raised when a commit is not reachable in the configured repository."""

    def __init__(self, commit_id: str, status_code: int | None = None) -> None:
        super().__init__(f"Commit {commit_id} not found", status_code)
        self.commit_id = commit_id


class ConfigError(ReleaseTaggerError):
    """Raised when a configuration file is unreadable or invalid."""
