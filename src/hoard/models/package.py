"""Pydantic models for index entries, queries and install options."""

from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

LATEST = "latest"


class IndexEntry(BaseModel):
    """One artifact advertised by a remote repository."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    repo_name: str
    pkg: str
    pkg_id: str = Field(..., min_length=1)
    pkg_name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    checksum: str = Field(..., min_length=8)
    size: int = Field(0, ge=0)
    download_url: str
    icon_url: str | None = None
    desktop_url: str | None = None
    appstream_url: str | None = None
    build_log: str | None = None
    description: str | None = None
    family: str | None = None

    @field_validator("download_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        if urlsplit(value).scheme not in ("http", "https") or not value.isprintable() or " " in value:
            raise ValueError(f"not a usable http(s) URL: {value!r}")
        return value

    @property
    def identity(self) -> tuple[str, str]:
        return (self.repo_name, self.pkg_id)

    @property
    def label(self) -> str:
        return f"{self.repo_name}/{self.pkg_id}@{self.version}"


class PackageQuery(BaseModel):
    """A user query: ``[<repo>/]<name-or-id>[@<version>]``."""

    model_config = ConfigDict(frozen=True)

    repo: str | None = None
    name: str = Field(..., min_length=1)
    version: str = LATEST
    profile: str | None = None

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("package name must not be empty")
        return value

    @classmethod
    def parse(cls, spec: str, profile: str | None = None) -> "PackageQuery":
        text = spec.strip()
        repo = None
        version = LATEST
        if "@" in text:
            text, _, version = text.rpartition("@")
            version = version.strip() or LATEST
        if "/" in text:
            repo, _, text = text.partition("/")
            repo = repo.strip() or None
        return cls(repo=repo, name=text, version=version, profile=profile)

    @property
    def is_latest(self) -> bool:
        return self.version == LATEST

    def __str__(self) -> str:
        text = f"{self.repo}/{self.name}" if self.repo else self.name
        if not self.is_latest:
            text += f"@{self.version}"
        return text


class InstallOptions(BaseModel):
    """Per-install options.

    For each portable directory: ``None`` means not requested, an empty
    string means the default location, anything else is an explicit path.
    """

    model_config = ConfigDict(frozen=True)

    portable: str | None = None
    portable_home: str | None = None
    portable_config: str | None = None
    force: bool = False

    @property
    def wants_portable(self) -> bool:
        return any(v is not None for v in (self.portable, self.portable_home, self.portable_config))
