"""Immutable, queryable view over every synchronized repository index."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from types import MappingProxyType

from hoard.errors import RepositoryUnavailableError
from hoard.models.package import IndexEntry


class IndexSnapshot:
    """Entries from all repositories, valid for one command invocation.

    ``stale`` names repositories served from an outdated cache because the
    remote could not be reached; ``unavailable`` names repositories with no
    index at all.
    """

    __slots__ = ("_entries", "_by_id", "_by_name", "_repos", "stale", "unavailable", "synced_at")

    def __init__(
        self,
        entries: Iterable[IndexEntry],
        repos: Iterable[str] = (),
        stale: Iterable[str] = (),
        unavailable: Iterable[str] = (),
        synced_at: dict[str, datetime] | None = None,
    ) -> None:
        self._entries: tuple[IndexEntry, ...] = tuple(entries)
        by_id: dict[str, list[IndexEntry]] = defaultdict(list)
        by_name: dict[str, list[IndexEntry]] = defaultdict(list)
        for entry in self._entries:
            by_id[entry.pkg_id].append(entry)
            by_name[entry.pkg_name].append(entry)
        self._by_id = MappingProxyType({k: tuple(v) for k, v in by_id.items()})
        self._by_name = MappingProxyType({k: tuple(v) for k, v in by_name.items()})
        self._repos = tuple(dict.fromkeys([*repos, *(e.repo_name for e in self._entries)]))
        self.stale = frozenset(stale)
        self.unavailable = frozenset(unavailable)
        self.synced_at = MappingProxyType(dict(synced_at or {}))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[IndexEntry, ...]:
        return self._entries

    @property
    def repos(self) -> tuple[str, ...]:
        return self._repos

    def require_available(self, repo_name: str) -> None:
        """Raise if a query scoped to *repo_name* cannot be answered."""
        if repo_name in self.unavailable:
            raise RepositoryUnavailableError(repo_name)

    def by_repo(self, repo_name: str) -> tuple[IndexEntry, ...]:
        return tuple(e for e in self._entries if e.repo_name == repo_name)

    def by_id(self, pkg_id: str, repo_name: str | None = None) -> tuple[IndexEntry, ...]:
        entries = self._by_id.get(pkg_id, ())
        if repo_name:
            entries = tuple(e for e in entries if e.repo_name == repo_name)
        return entries

    def by_name(self, pkg_name: str, repo_name: str | None = None) -> tuple[IndexEntry, ...]:
        entries = self._by_name.get(pkg_name, ())
        if repo_name:
            entries = tuple(e for e in entries if e.repo_name == repo_name)
        return entries

    def versions_of(self, repo_name: str, pkg_id: str) -> tuple[IndexEntry, ...]:
        return self.by_id(pkg_id, repo_name)

    def family_members(self, repo_name: str, family: str) -> tuple[IndexEntry, ...]:
        return tuple(e for e in self._entries if e.repo_name == repo_name and e.family == family)
