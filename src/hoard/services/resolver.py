"""Resolver: maps a package query to concrete index entries.

Matching precedence, first non-empty step wins:

1. exact (repository, identifier) when the query names a repository
2. exact identifier across repositories
3. exact name across repositories
4. case-insensitive / fuzzy name match, suggestions only, never selected

A repository qualifier restricts every step to that repository. When
steps 2-3 match more than one (repository, identifier) identity, the query is
ambiguous unless exactly one of those identities is installed and pinned in
the target profile.

The resolver never touches the store; callers pass the pinned identities in.
"""

from __future__ import annotations

import difflib
from collections.abc import Collection

from hoard.errors import AmbiguousPackageError, NotFoundError
from hoard.index.snapshot import IndexSnapshot
from hoard.models.package import IndexEntry, PackageQuery
from hoard.services.versioning import version_key

_MAX_SUGGESTIONS = 5


def resolve(
    query: PackageQuery,
    snapshot: IndexSnapshot,
    pinned: Collection[tuple[str, str]] = (),
) -> list[IndexEntry]:
    """Resolve *query* to the entry to install.

    Returns a single-element list; the list shape leaves room for callers that
    expand a family afterwards.

    Raises:
        NotFoundError: nothing matched (carries suggestions).
        AmbiguousPackageError: several identities tied.
        RepositoryUnavailableError: the qualified repository has no index.
    """
    if query.repo:
        snapshot.require_available(query.repo)

    matches = _exact_matches(query, snapshot)
    if not matches:
        raise NotFoundError(str(query), suggest(query.name, snapshot, query.repo), repo=query.repo)

    identities = _group_by_identity(matches)
    if len(identities) > 1:
        identity = _break_tie(identities, pinned)
        if identity is None:
            raise AmbiguousPackageError(
                str(query),
                sorted(f"{repo}/{pkg_id}" for repo, pkg_id in identities),
            )
        chosen = identities[identity]
    else:
        chosen = next(iter(identities.values()))

    return [_select_version(query, chosen)]


def candidates(query: PackageQuery, snapshot: IndexSnapshot) -> list[IndexEntry]:
    """Every entry the exact steps match, newest first, without tie-breaking."""
    matches = _exact_matches(query, snapshot)
    if not query.is_latest:
        matches = [e for e in matches if e.version == query.version]
    newest_first = sorted(matches, key=lambda e: version_key(e.version), reverse=True)
    return sorted(newest_first, key=lambda e: (e.repo_name, e.pkg_id))


def search(term: str, snapshot: IndexSnapshot, case_sensitive: bool = False, limit: int | None = None) -> list[IndexEntry]:
    """Score entries by name: exact match 2, substring 1.

    Only the newest version of each identity is listed.
    """
    needle = term.strip() if case_sensitive else term.strip().lower()
    newest: dict[tuple[str, str], tuple[int, IndexEntry]] = {}
    for entry in snapshot.entries:
        haystacks = (entry.pkg_name, entry.pkg_id)
        if not case_sensitive:
            haystacks = tuple(h.lower() for h in haystacks)
        if needle in haystacks:
            score = 2
        elif any(needle in h for h in haystacks):
            score = 1
        else:
            continue
        current = newest.get(entry.identity)
        if current is None or version_key(entry.version) > version_key(current[1].version):
            newest[entry.identity] = (score, entry)

    ranked = sorted(newest.values(), key=lambda item: (-item[0], item[1].pkg_name, item[1].repo_name))
    results = [entry for _, entry in ranked]
    return results[:limit] if limit else results


def suggest(term: str, snapshot: IndexSnapshot, repo_name: str | None = None) -> list[str]:
    """Case-insensitive and close-match names, for NotFound messages."""
    entries = snapshot.by_repo(repo_name) if repo_name else snapshot.entries
    names = sorted({e.pkg_name for e in entries} | {e.pkg_id for e in entries})
    lowered = term.lower()

    found = [n for n in names if n.lower() == lowered]
    found += [n for n in names if lowered in n.lower() and n not in found]
    lookup = {n.lower(): n for n in names}
    for close in difflib.get_close_matches(lowered, list(lookup), n=_MAX_SUGGESTIONS, cutoff=0.75):
        if lookup[close] not in found:
            found.append(lookup[close])
    return found[:_MAX_SUGGESTIONS]


def newest_for(snapshot: IndexSnapshot, repo_name: str, pkg_id: str) -> IndexEntry | None:
    """Latest advertised version of one identity."""
    versions = snapshot.versions_of(repo_name, pkg_id)
    if not versions:
        return None
    return max(versions, key=lambda e: version_key(e.version))


def _exact_matches(query: PackageQuery, snapshot: IndexSnapshot) -> list[IndexEntry]:
    by_id = snapshot.by_id(query.name, query.repo)
    if by_id:
        return list(by_id)
    return list(snapshot.by_name(query.name, query.repo))


def _group_by_identity(entries: list[IndexEntry]) -> dict[tuple[str, str], list[IndexEntry]]:
    grouped: dict[tuple[str, str], list[IndexEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.identity, []).append(entry)
    return grouped


def _break_tie(
    identities: dict[tuple[str, str], list[IndexEntry]],
    pinned: Collection[tuple[str, str]],
) -> tuple[str, str] | None:
    pinned_hits = [identity for identity in identities if identity in pinned]
    if len(pinned_hits) == 1:
        return pinned_hits[0]
    return None


def _select_version(query: PackageQuery, entries: list[IndexEntry]) -> IndexEntry:
    if query.is_latest:
        return max(entries, key=lambda e: version_key(e.version))
    for entry in entries:
        if entry.version == query.version:
            return entry
    available = sorted({e.version for e in entries}, key=version_key, reverse=True)
    raise NotFoundError(str(query), [f"{entries[0].pkg_id}@{v}" for v in available[:_MAX_SUGGESTIONS]], repo=query.repo)
