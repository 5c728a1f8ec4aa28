"""Application configuration via environment variables and the repository file."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

from hoard.models.enums import IndexFormatName

logger = logging.getLogger(__name__)


def _xdg_data_home() -> Path:
    return Path.home() / ".local" / "share"


class Settings(BaseSettings):
    # Filesystem layout
    data_dir: Path = Field(default_factory=lambda: _xdg_data_home() / "hoard")
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".cache" / "hoard")
    desktop_dir: Path = Field(default_factory=lambda: _xdg_data_home() / "applications")
    icons_dir: Path = Field(default_factory=lambda: _xdg_data_home() / "icons")
    appstream_dir: Path = Field(default_factory=lambda: _xdg_data_home() / "metainfo")
    config_file: Path = Field(default_factory=lambda: Path.home() / ".config" / "hoard" / "config.toml")

    # Database (defaults to a SQLite file under data_dir)
    database_url: str | None = None

    # Profiles
    default_profile: str = "default"

    # Acquisition
    parallel_limit: int = Field(4, ge=1)
    download_retries: int = Field(3, ge=0)
    retry_backoff: float = Field(0.5, ge=0)
    http_timeout: float = 30.0

    # Index cache freshness, seconds
    sync_interval: int = 3 * 60 * 60

    # Logging
    log_level: str = "info"
    json_logs: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "HOARD_",
    }

    @property
    def effective_database_url(self) -> str:
        """Return the configured URL, or the SQLite file under data_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir / 'hoard.db'}"

    @property
    def staging_dir(self) -> Path:
        return self.cache_dir / "staging"

    @property
    def index_cache_dir(self) -> Path:
        return self.cache_dir / "index"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / "hoard.lock"

    def profile_dir(self, profile: str) -> Path:
        return self.data_dir / "profiles" / profile

    def packages_dir(self, profile: str) -> Path:
        return self.profile_dir(profile) / "packages"

    def bin_dir(self, profile: str) -> Path:
        return self.profile_dir(profile) / "bin"

    def portable_root(self, profile: str) -> Path:
        return self.profile_dir(profile) / "portable"


class RepositoryConfig(BaseModel):
    """A configured remote repository."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    format: IndexFormatName = IndexFormatName.FLAT
    enabled: bool = True
    sync_interval: int | None = None

    @field_validator("name")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        if "/" in value or "@" in value:
            raise ValueError("repository name must not contain '/' or '@'")
        return value


class RepositoryFile(BaseModel):
    """Contents of config.toml."""

    repositories: list[RepositoryConfig] = Field(default_factory=list)
    default_profile: str | None = None
    parallel_limit: int | None = Field(None, ge=1)

    @field_validator("repositories")
    @classmethod
    def _unique_names(cls, repos: list[RepositoryConfig]) -> list[RepositoryConfig]:
        seen: set[str] = set()
        for repo in repos:
            if repo.name in seen:
                raise ValueError(f"duplicate repository name: {repo.name}")
            seen.add(repo.name)
        return repos

    def enabled_repositories(self) -> list[RepositoryConfig]:
        return [r for r in self.repositories if r.enabled]


def load_repository_file(path: Path) -> RepositoryFile:
    """Load config.toml.

    A missing file is not an error: it yields an empty repository list.
    """
    if not path.exists():
        logger.warning("Config file not found: %s (no repositories configured)", path)
        return RepositoryFile()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return RepositoryFile(**raw)


def apply_overrides(settings: Settings, repo_file: RepositoryFile) -> Settings:
    """Return settings with the values config.toml overrides."""
    updates: dict = {}
    if repo_file.default_profile:
        updates["default_profile"] = repo_file.default_profile
    if repo_file.parallel_limit:
        updates["parallel_limit"] = repo_file.parallel_limit
    if not updates:
        return settings
    return settings.model_copy(update=updates)

