"""packages and portable_package tables."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hoard.db.base import Base


class PackageRow(Base):
    __tablename__ = "packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    pkg: Mapped[str] = mapped_column(String(255), nullable=False)
    pkg_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    pkg_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(128), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum: Mapped[str] = mapped_column(String(200), nullable=False)
    installed_path: Mapped[str] = mapped_column(Text, nullable=False)
    installed_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=lambda: datetime.now(timezone.utc),
    )
    bin_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    desktop_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    appstream_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    profile: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    is_installed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    installed_with_family: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    # Groups the rows written by one atomic multi-artifact operation.
    family_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    @property
    def label(self) -> str:
        return f"{self.repo_name}/{self.pkg_id}@{self.version} [{self.profile}]"

    def recorded_paths(self) -> list[str]:
        """Every path this row registered, in placement order."""
        paths = [self.installed_path, self.bin_path, self.icon_path, self.desktop_path, self.appstream_path]
        return [p for p in paths if p]


class PortablePackageRow(Base):
    __tablename__ = "portable_package"

    package_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("packages.id", ondelete="CASCADE"), primary_key=True
    )
    portable_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    portable_home: Mapped[str | None] = mapped_column(Text, nullable=True)
    portable_config: Mapped[str | None] = mapped_column(Text, nullable=True)

    def recorded_paths(self) -> list[str]:
        paths = [self.portable_path, self.portable_home, self.portable_config]
        return [p for p in paths if p]
