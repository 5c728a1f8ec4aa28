"""Grouped index format: packages keyed by collection, then by name.

::

    {
      "bin": {"jq": [{"name": "jq", "version": "1.7", "bsum": "...", ...}]},
      "appimage": {...}
    }

Records rarely carry a stable identifier in this layout, so one is derived
as ``<collection>.<name>`` (``<collection>.<name>.<variant>`` for variants).
"""

from __future__ import annotations

from typing import Any

from hoard.index.formats.base import IndexFormat
from hoard.models.enums import IndexFormatName
from hoard.models.package import IndexEntry


class GroupedIndexFormat(IndexFormat):
    format_name: str = IndexFormatName.GROUPED

    def normalize(self, repo_name: str, document: Any) -> list[IndexEntry]:
        if not isinstance(document, dict):
            raise ValueError(f"{repo_name}: grouped index must be an object of collections")

        entries: list[IndexEntry] = []
        for collection, packages in document.items():
            if not isinstance(packages, dict):
                continue
            for name, records in packages.items():
                if isinstance(records, dict):
                    records = [records]
                if not isinstance(records, list):
                    continue
                for record in records:
                    if not isinstance(record, dict):
                        continue
                    entry = self._entry(repo_name, record, **self._defaults(collection, name, record))
                    if entry is not None:
                        entries.append(entry)
        return entries

    @staticmethod
    def _defaults(collection: str, name: str, record: dict[str, Any]) -> dict[str, Any]:
        pkg_name = record.get("pkg_name") or record.get("name") or name
        derived = f"{collection}.{pkg_name}"
        if record.get("variant"):
            derived = f"{derived}.{record['variant']}"
        defaults = {"pkg_name": pkg_name, "pkg_id": record.get("pkg_id") or derived}
        if record.get("bin_name") and not record.get("pkg"):
            defaults["pkg"] = record["bin_name"]
        return defaults
