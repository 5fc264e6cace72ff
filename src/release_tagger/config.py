"""Run configuration for release-tagger.

Configuration comes from three places, later ones winning:
1. Field defaults below
2. An optional YAML file (``--config release-tagger.yaml``)
3. Environment variables (GITHUB_TOKEN, RELEASE_BRANCH) for unset fields

Example YAML:

    repo: myorg/api
    release_branch: develop
    verbose: true
    max_concurrency: 16
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from release_tagger.exceptions import ConfigError


class TaggerConfig(BaseModel):
    """Configuration for a tagging run.

    Attributes:
        repo: Repository in "owner/name" format (live mode only)
        token: GitHub token; falls back to GITHUB_TOKEN
        release_branch: Branch holding unreleased work; the repository's
                        default branch is used when unset
        verbose: Emit per-PR progress events
        max_concurrency: Upper bound on in-flight API requests
        base_url: GitHub API root (override for GitHub Enterprise)
    """

    repo: str | None = None
    token: str | None = None
    release_branch: str | None = None
    verbose: bool = False
    max_concurrency: int = Field(8, ge=1)
    base_url: str = "https://api.github.com"

    def with_env_defaults(self) -> TaggerConfig:
        """Return a copy with unset fields filled from the environment."""
        updates: dict[str, str] = {}
        if not self.token and os.environ.get("GITHUB_TOKEN"):
            updates["token"] = os.environ["GITHUB_TOKEN"]
        if not self.release_branch and os.environ.get("RELEASE_BRANCH"):
            updates["release_branch"] = os.environ["RELEASE_BRANCH"]
        return self.model_copy(update=updates)


def load_config(path: str | Path | None = None) -> TaggerConfig:
    """Load and validate a YAML config file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A validated TaggerConfig. Returns defaults if no path is given or
        the file doesn't exist.

    Raises:
        ConfigError: If the YAML content is invalid or fails validation.
    """
    if path is None:
        return TaggerConfig()

    config_path = Path(path)
    if not config_path.exists():
        return TaggerConfig()

    try:
        raw = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config in {path}: expected a mapping")

    try:
        return TaggerConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {path}: {exc}") from exc
