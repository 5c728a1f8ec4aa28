"""Tests for settings and the repository file.

Covers:
- a missing config.toml yields no repositories
- repositories are parsed, disabled ones filtered
- duplicate or malformed repository names are rejected
- config.toml overrides settings; HOARD_ environment variables are read
"""

import pytest
from pydantic import ValidationError

from hoard.config import RepositoryFile, Settings, apply_overrides, load_repository_file
from hoard.models.enums import IndexFormatName


def test_missing_file(tmp_path):
    repo_file = load_repository_file(tmp_path / "absent.toml")
    assert repo_file.repositories == []


def test_parses_repositories(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
default_profile = "work"

[[repositories]]
name = "main"
url = "https://repo.test/main/index.json"

[[repositories]]
name = "legacy"
url = "https://repo.test/legacy.json"
format = "grouped"
enabled = false
sync_interval = 60
"""
    )

    repo_file = load_repository_file(path)

    assert [r.name for r in repo_file.repositories] == ["main", "legacy"]
    assert repo_file.repositories[1].format == IndexFormatName.GROUPED
    assert [r.name for r in repo_file.enabled_repositories()] == ["main"]
    assert repo_file.default_profile == "work"


def test_duplicate_names_rejected():
    with pytest.raises(ValidationError, match="duplicate repository name"):
        RepositoryFile(repositories=[{"name": "a", "url": "u1"}, {"name": "a", "url": "u2"}])


@pytest.mark.parametrize("name", ["a/b", "a@b", ""])
def test_bad_names_rejected(name):
    with pytest.raises(ValidationError):
        RepositoryFile(repositories=[{"name": name, "url": "u"}])


def test_unknown_repository_key_rejected():
    with pytest.raises(ValidationError):
        RepositoryFile(repositories=[{"name": "a", "url": "u", "mirror": "x"}])


def test_apply_overrides(settings):
    updated = apply_overrides(settings, RepositoryFile(default_profile="work", parallel_limit=8))
    assert updated.default_profile == "work"
    assert updated.parallel_limit == 8
    assert settings.default_profile == "default"
    assert apply_overrides(settings, RepositoryFile()) is settings


def test_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("HOARD_DATA_DIR", str(tmp_path / "d"))
    monkeypatch.setenv("HOARD_PARALLEL_LIMIT", "7")

    settings = Settings()

    assert settings.parallel_limit == 7
    assert settings.effective_database_url == f"sqlite+aiosqlite:///{tmp_path / 'd' / 'hoard.db'}"
    assert settings.bin_dir("p") == tmp_path / "d" / "profiles" / "p" / "bin"
