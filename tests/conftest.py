"""Shared fixtures for the release-tagger test suite."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from release_tagger.schemas import Tag

SHA_V1 = "1" * 40
SHA_V2 = "2" * 40
SHA_BRANCH = "3" * 40
SHA_REBASED = "4" * 40
SHA_NOWHERE = "5" * 40


@pytest.fixture
def tags() -> list[Tag]:
    """Two nested tags, newest first: v2.0.0 contains everything v1.0.0 does."""
    return [
        Tag(name="v2.0.0", commit_sha=SHA_V2, shas_in_tag={SHA_V1, SHA_V2}),
        Tag(name="v1.0.0", commit_sha=SHA_V1, shas_in_tag={SHA_V1}),
    ]


@pytest.fixture
def commit_payload() -> Callable[..., dict]:
    """Factory for raw GitHub commit objects."""

    def make(
        sha: str,
        author_date: str = "2024-03-01T10:00:00Z",
        committer_date: str = "2024-03-05T12:00:00Z",
    ) -> dict:
        return {
            "sha": sha,
            "commit": {
                "author": {"name": "dev", "email": "dev@example.com", "date": author_date},
                "committer": {
                    "name": "bot",
                    "email": "bot@example.com",
                    "date": committer_date,
                },
                "message": "fix: something",
            },
        }

    return make
