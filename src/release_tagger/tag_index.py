"""Index of the commit SHAs reachable from each release tag."""

from __future__ import annotations

from collections.abc import Sequence

from release_tagger.context.github import FetcherProtocol
from release_tagger.logging_config import get_logger
from release_tagger.schemas import Tag

logger = get_logger(__name__)


class TagShaIndex:
    """Read-only lookup from commit SHA to the oldest tag containing it.

    Tags are kept in the caller's newest-first order; lookups walk them
    oldest-first so the first hit is the earliest release of a commit.
    """

    def __init__(self, tags: Sequence[Tag]) -> None:
        self._tags = list(tags)

    @classmethod
    async def build(cls, tags: Sequence[Tag], fetcher: FetcherProtocol) -> TagShaIndex:
        """Populate every tag's SHA set and return the finished index.

        Tags that already carry SHAs are reused; the rest are fetched in
        one batch. Nothing is looked up until the whole batch completes.
        """
        missing = [tag for tag in tags if not tag.shas_in_tag]
        fetched = await fetcher.fetch_tag_shas(missing) if missing else {}

        populated = [
            tag.model_copy(update={"shas_in_tag": fetched[tag.name]})
            if tag.name in fetched
            else tag
            for tag in tags
        ]
        logger.debug("tag_index_built", tags=len(populated), fetched=len(missing))
        return cls(populated)

    @property
    def tags(self) -> list[Tag]:
        """Tags with populated SHA sets, newest first."""
        return list(self._tags)

    def oldest_tag_containing(self, sha: str) -> Tag | None:
        for tag in reversed(self._tags):
            if sha in tag.shas_in_tag:
                return tag
        return None

    def __len__(self) -> int:
        return len(self._tags)
