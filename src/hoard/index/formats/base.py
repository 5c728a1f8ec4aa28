"""Abstract base class for repository index formats."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from hoard.models.package import IndexEntry

logger = logging.getLogger(__name__)


class IndexFormat(ABC):
    """Parses one repository's raw index document into IndexEntry objects."""

    format_name: str = "unknown"

    def parse(self, repo_name: str, raw: bytes) -> list[IndexEntry]:
        """Decode *raw* and normalize it.

        Raises:
            ValueError: the document is not valid JSON or has the wrong shape.
        """
        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"{repo_name}: index is not valid JSON: {exc}") from exc
        return list(self.normalize(repo_name, document))

    @abstractmethod
    def normalize(self, repo_name: str, document: Any) -> list[IndexEntry]:
        """Convert a decoded document into entries for *repo_name*."""
        ...

    @staticmethod
    def _entry(repo_name: str, record: dict[str, Any], **overrides: Any) -> IndexEntry | None:
        """Build one entry, mapping the common field aliases.

        Returns ``None`` (and logs) for records that fail validation so one bad
        record does not hide the rest of the repository.
        """
        data = dict(record)
        data.update(overrides)
        data["repo_name"] = repo_name
        data.setdefault("pkg_name", data.get("name") or data.get("pkg") or data.get("pkg_id"))
        data.setdefault("pkg", data.get("pkg_name"))
        data.setdefault("pkg_id", data.get("pkg_name"))
        if "checksum" not in data:
            for alias in ("shasum", "sha256", "bsum"):
                if data.get(alias):
                    data["checksum"] = data[alias]
                    break
        data.setdefault("download_url", data.get("url") or data.get("download"))
        for field, alias in (("icon_url", "icon"), ("desktop_url", "desktop"), ("appstream_url", "appstream")):
            if field not in data and data.get(alias):
                data[field] = data[alias]
        try:
            return IndexEntry(**data)
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid index record %s in %s: %s",
                record.get("pkg_id") or record.get("pkg_name") or record.get("name") or "<unknown>",
                repo_name,
                exc.errors(include_url=False),
            )
            return None
