"""Tests for query resolution.

Covers:
- an unambiguous name resolves regardless of how many repositories exist
- identifier matches win over name matches
- the same name in two repositories is ambiguous and lists both
- a pinned, installed candidate breaks the tie
- a repository qualifier restricts every step
- "latest" picks the greatest version numerically; explicit versions match exactly
- not-found carries case-insensitive and close-match suggestions
- an unavailable qualified repository raises RepositoryUnavailableError
- search scoring
"""

import pytest

from hoard.errors import AmbiguousPackageError, NotFoundError, RepositoryUnavailableError
from hoard.index.snapshot import IndexSnapshot
from hoard.models.package import IndexEntry, PackageQuery
from hoard.services.resolver import candidates, resolve, search


def _entry(repo: str, pkg_id: str, version: str = "1.0.0", name: str | None = None) -> IndexEntry:
    return IndexEntry(
        repo_name=repo,
        pkg=f"{name or pkg_id}.AppImage",
        pkg_id=pkg_id,
        pkg_name=name or pkg_id,
        version=version,
        checksum=f"{repo}{pkg_id}{version}".encode().hex().ljust(64, "0")[:64],
        download_url=f"https://{repo}.invalid/{pkg_id}/{version}",
    )


def _query(spec: str) -> PackageQuery:
    return PackageQuery.parse(spec, profile="default")


@pytest.fixture
def snapshot() -> IndexSnapshot:
    return IndexSnapshot(
        [
            _entry("main", "org.mozilla.firefox", "120.0", name="firefox"),
            _entry("main", "org.mozilla.firefox", "121.0", name="firefox"),
            _entry("extra", "firefox-nightly", "122.0a1", name="firefox"),
            _entry("main", "jq", "1.9.0"),
            _entry("main", "jq", "1.10.0"),
            _entry("main", "jq", "2.0.0-beta"),
            _entry("extra", "ripgrep", "14.0.0", name="rg"),
            _entry("other", "btop", "1.3.0"),
        ],
        repos=["main", "extra", "other", "down"],
        unavailable=["down"],
    )


def test_unambiguous_name_resolves_across_repositories(snapshot):
    [entry] = resolve(_query("rg"), snapshot)
    assert entry.identity == ("extra", "ripgrep")


def test_single_repo_snapshot_gives_same_answer():
    only = IndexSnapshot([_entry("extra", "ripgrep", "14.0.0", name="rg")])
    [entry] = resolve(_query("rg"), only)
    assert entry.identity == ("extra", "ripgrep")


def test_identifier_beats_name(snapshot):
    [entry] = resolve(_query("firefox-nightly"), snapshot)
    assert entry.identity == ("extra", "firefox-nightly")


def test_same_name_in_two_repositories_is_ambiguous(snapshot):
    with pytest.raises(AmbiguousPackageError) as exc_info:
        resolve(_query("firefox"), snapshot)
    assert exc_info.value.candidates == ["extra/firefox-nightly", "main/org.mozilla.firefox"]
    assert exc_info.value.exit_code == 11


def test_pinned_installed_candidate_breaks_tie(snapshot):
    [entry] = resolve(_query("firefox"), snapshot, pinned={("main", "org.mozilla.firefox")})
    assert entry.identity == ("main", "org.mozilla.firefox")
    assert entry.version == "121.0"


def test_two_pinned_candidates_stay_ambiguous(snapshot):
    pinned = {("main", "org.mozilla.firefox"), ("extra", "firefox-nightly")}
    with pytest.raises(AmbiguousPackageError):
        resolve(_query("firefox"), snapshot, pinned=pinned)


def test_repository_qualifier_restricts_matching(snapshot):
    [entry] = resolve(_query("extra/firefox"), snapshot)
    assert entry.identity == ("extra", "firefox-nightly")
    with pytest.raises(NotFoundError):
        resolve(_query("other/jq"), snapshot)


def test_latest_uses_numeric_ordering(snapshot):
    [entry] = resolve(_query("jq"), snapshot)
    assert entry.version == "2.0.0-beta"


def test_explicit_version_must_match(snapshot):
    [entry] = resolve(_query("jq@1.9.0"), snapshot)
    assert entry.version == "1.9.0"
    with pytest.raises(NotFoundError) as exc_info:
        resolve(_query("jq@3.0"), snapshot)
    assert "jq@2.0.0-beta" in exc_info.value.suggestions


def test_fuzzy_matches_are_suggestions_only(snapshot):
    with pytest.raises(NotFoundError) as exc_info:
        resolve(_query("BTOP"), snapshot)
    assert exc_info.value.suggestions[0] == "btop"
    assert exc_info.value.exit_code == 10


def test_unavailable_repository(snapshot):
    with pytest.raises(RepositoryUnavailableError):
        resolve(_query("down/anything"), snapshot)


def test_candidates_lists_every_identity(snapshot):
    found = candidates(_query("firefox"), snapshot)
    assert [(e.repo_name, e.version) for e in found] == [
        ("extra", "122.0a1"),
        ("main", "121.0"),
        ("main", "120.0"),
    ]


def test_search_scores_exact_above_substring(snapshot):
    results = search("jq", snapshot)
    assert results[0].pkg_id == "jq"
    assert results[0].version == "2.0.0-beta"

    results = search("fire", snapshot)
    assert {e.pkg_id for e in results} == {"org.mozilla.firefox", "firefox-nightly"}
    assert search("FIRE", snapshot, case_sensitive=True) == []
