"""On-disk cache of normalized repository indices."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from hoard.models.package import IndexEntry

logger = logging.getLogger(__name__)


class CachedIndex(BaseModel):
    repo_name: str
    url: str
    fetched_at: datetime
    entries: list[IndexEntry] = Field(default_factory=list)

    def is_fresh(self, max_age_seconds: int, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.fetched_at < timedelta(seconds=max_age_seconds)


class IndexCache:
    """One JSON file per repository under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, repo_name: str) -> Path:
        return self.root / f"{repo_name}.json"

    def load(self, repo_name: str) -> CachedIndex | None:
        path = self.path_for(repo_name)
        if not path.exists():
            return None
        try:
            return CachedIndex.model_validate_json(path.read_bytes())
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("Ignoring unreadable index cache %s: %s", path, exc)
            return None

    def store(self, cached: CachedIndex) -> None:
        """Write atomically: a crash never leaves a truncated cache file."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(cached.repo_name)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(cached.model_dump(mode="json")), encoding="utf-8")
        os.replace(tmp, path)
