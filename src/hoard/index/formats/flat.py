"""Flat index format: a JSON array of package records.

Accepted documents::

    [{"pkg_id": "...", "pkg_name": "...", ...}, ...]
    {"packages": [...]}
"""

from __future__ import annotations

from typing import Any

from hoard.index.formats.base import IndexFormat
from hoard.models.enums import IndexFormatName
from hoard.models.package import IndexEntry


class FlatIndexFormat(IndexFormat):
    format_name: str = IndexFormatName.FLAT

    def normalize(self, repo_name: str, document: Any) -> list[IndexEntry]:
        if isinstance(document, dict):
            document = document.get("packages")
        if not isinstance(document, list):
            raise ValueError(f"{repo_name}: flat index must be a list of packages")

        entries: list[IndexEntry] = []
        for record in document:
            if not isinstance(record, dict):
                continue
            entry = self._entry(repo_name, record)
            if entry is not None:
                entries.append(entry)
        return entries
