"""Filesystem integrator: owns the on-disk layout of installed packages.

Layout for one package in one profile::

    <data>/profiles/<profile>/packages/<pkg_id>-<version>-<digest8>/<pkg>   artifact
    <data>/profiles/<profile>/bin/<pkg_name>                               entry point symlink
    <desktop_dir>/<pkg_id>-<profile>.desktop                               desktop entry
    <icons_dir>/<pkg_id>-<profile>.<ext>                                   icon
    <appstream_dir>/<pkg_id>-<profile>.appdata.xml                         AppStream metadata
    <data>/profiles/<profile>/portable/<pkg_id>/{data,home,config}         portable dirs

``place`` records every mutation in a journal; until the placement is
finalized it can be rolled back, restoring any file it replaced. ``remove``
is idempotent and keeps going past individual failures.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from hoard.config import Settings
from hoard.db.models.package import PackageRow, PortablePackageRow
from hoard.errors import PlacementFailure
from hoard.models.package import IndexEntry, InstallOptions
from hoard.services.acquisition import StagedArtifact
from hoard.services.id_generator import safe_name
from hoard.services.integrity import matches, parse_checksum

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".hoard-bak"


@dataclass
class Layout:
    """Final paths for one package in one profile."""

    profile: str
    install_dir: Path
    artifact_path: Path
    bin_path: Path
    icon_path: Path | None = None
    desktop_path: Path | None = None
    appstream_path: Path | None = None
    portable_path: Path | None = None
    portable_home: Path | None = None
    portable_config: Path | None = None

    @property
    def has_portable(self) -> bool:
        return any(p is not None for p in (self.portable_path, self.portable_home, self.portable_config))

    def shared_paths(self) -> set[str]:
        """Paths outside install_dir that a replacement reuses."""
        paths = [
            self.bin_path, self.icon_path, self.desktop_path, self.appstream_path,
            self.portable_path, self.portable_home, self.portable_config,
        ]
        return {str(p) for p in paths if p is not None}

    def owned_paths(self) -> set[str]:
        return self.shared_paths() | {str(self.install_dir), str(self.artifact_path)}


@dataclass
class RemovalOutcome:
    removed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class _Journal:
    """Undo log for one placement."""

    def __init__(self) -> None:
        self._undo: list[tuple[str, Callable[[], None]]] = []
        self._backups: list[Path] = []

    def created(self, path: Path) -> None:
        self._undo.append((f"remove {path}", lambda: _remove_path(path)))

    def replaced(self, path: Path, backup: Path) -> None:
        def restore() -> None:
            _remove_path(path)
            os.replace(backup, path)

        self._backups.append(backup)
        self._undo.append((f"restore {path}", restore))

    def rollback(self) -> list[tuple[str, str]]:
        failures: list[tuple[str, str]] = []
        for description, undo in reversed(self._undo):
            try:
                undo()
            except OSError as exc:
                logger.error("Rollback step failed (%s): %s", description, exc)
                failures.append((description, str(exc)))
        self._undo.clear()
        self._backups.clear()
        return failures

    def finalize(self) -> None:
        for backup in self._backups:
            try:
                _remove_path(backup)
            except OSError as exc:
                logger.warning("Could not delete backup %s: %s", backup, exc)
        self._undo.clear()
        self._backups.clear()


@dataclass
class Placement:
    """A completed placement that can still be undone until finalized."""

    layout: Layout
    journal: _Journal = field(repr=False)
    changed: bool = True

    def rollback(self) -> list[tuple[str, str]]:
        return self.journal.rollback()

    def finalize(self) -> None:
        self.journal.finalize()


class FilesystemIntegrator:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def plan(self, entry: IndexEntry, profile: str, options: InstallOptions | None = None) -> Layout:
        options = options or InstallOptions()
        _, digest = parse_checksum(entry.checksum)
        ident = safe_name(entry.pkg_id)
        install_dir = self.settings.packages_dir(profile) / f"{ident}-{safe_name(entry.version)}-{digest[:8]}"
        layout = Layout(
            profile=profile,
            install_dir=install_dir,
            artifact_path=install_dir / safe_name(entry.pkg),
            bin_path=self.settings.bin_dir(profile) / safe_name(entry.pkg_name),
        )
        if entry.desktop_url:
            layout.desktop_path = self.settings.desktop_dir / f"{ident}-{profile}.desktop"
        if entry.appstream_url:
            layout.appstream_path = self.settings.appstream_dir / f"{ident}-{profile}.appdata.xml"
        if entry.icon_url:
            layout.icon_path = self.settings.icons_dir / f"{ident}-{profile}.png"

        portable_base = self.settings.portable_root(profile) / ident
        layout.portable_path = _portable_dir(options.portable, portable_base / "data")
        layout.portable_home = _portable_dir(options.portable_home, portable_base / "home")
        layout.portable_config = _portable_dir(options.portable_config, portable_base / "config")
        return layout

    @staticmethod
    def layout_from_row(row: PackageRow, portable: PortablePackageRow | None = None) -> Layout:
        install_dir = Path(row.installed_path)
        return Layout(
            profile=row.profile,
            install_dir=install_dir,
            artifact_path=install_dir / safe_name(row.pkg),
            bin_path=Path(row.bin_path) if row.bin_path else install_dir / safe_name(row.pkg),
            icon_path=Path(row.icon_path) if row.icon_path else None,
            desktop_path=Path(row.desktop_path) if row.desktop_path else None,
            appstream_path=Path(row.appstream_path) if row.appstream_path else None,
            portable_path=_opt_path(portable.portable_path) if portable else None,
            portable_home=_opt_path(portable.portable_home) if portable else None,
            portable_config=_opt_path(portable.portable_config) if portable else None,
        )

    # ------------------------------------------------------------------
    # Place
    # ------------------------------------------------------------------

    def place(self, layout: Layout, staged: StagedArtifact, replaces: Path | None = None) -> Placement:
        """Move a verified artifact into *layout* and register its extras.

        Placing over an identical existing layout changes nothing. Any error
        undoes this call's own changes before PlacementFailure is raised.

        *replaces* is the install dir of the version being replaced, whose
        entry point this placement may take over. An entry point that leads
        into any other installed package is never touched.
        """
        journal = _Journal()
        label = staged.entry.label
        try:
            self._check_entry_point(layout, replaces, label)
            changed = self._place_artifact(layout, staged, journal)
            self._place_portable(layout, journal)
            self._link(layout.bin_path, layout.artifact_path, journal)

            icon = staged.assets.get("icon")
            if icon is not None and layout.icon_path is not None:
                layout.icon_path = layout.icon_path.with_suffix(icon.suffix)
                self._write(layout.icon_path, icon.read_bytes(), journal)
            else:
                layout.icon_path = None

            desktop = staged.assets.get("desktop")
            if desktop is not None and layout.desktop_path is not None:
                text = rewrite_desktop_entry(
                    desktop.read_text(encoding="utf-8", errors="replace"),
                    exec_path=layout.bin_path,
                    icon_path=layout.icon_path,
                )
                self._write(layout.desktop_path, text.encode("utf-8"), journal)
            else:
                layout.desktop_path = None

            appstream = staged.assets.get("appstream")
            if appstream is not None and layout.appstream_path is not None:
                self._write(layout.appstream_path, appstream.read_bytes(), journal)
            else:
                layout.appstream_path = None
        except OSError as exc:
            failures = journal.rollback()
            raise PlacementFailure(
                label,
                f"could not place files: {exc}",
                paths=[getattr(exc, "filename", None) or str(layout.install_dir), *(d for d, _ in failures)],
            ) from exc
        except PlacementFailure:
            journal.rollback()
            raise
        finally:
            for asset in staged.assets.values():
                asset.unlink(missing_ok=True)

        logger.info("Placed %s at %s", label, layout.artifact_path)
        return Placement(layout=layout, journal=journal, changed=changed)

    def _check_entry_point(self, layout: Layout, replaces: Path | None, label: str) -> None:
        link = layout.bin_path
        if not link.is_symlink() or not link.exists():
            return
        if _points_into(link, layout.install_dir) or (replaces is not None and _points_into(link, replaces)):
            return
        if _points_into(link, self.settings.packages_dir(layout.profile)):
            raise PlacementFailure(
                label,
                f"entry point {link} already belongs to {os.readlink(link)}",
                paths=[str(link)],
            )

    def _place_artifact(self, layout: Layout, staged: StagedArtifact, journal: _Journal) -> bool:
        if matches(layout.artifact_path, staged.checksum):
            staged.path.unlink(missing_ok=True)
            logger.debug("Artifact already in place: %s", layout.artifact_path)
            return False

        if not layout.install_dir.exists():
            layout.install_dir.mkdir(parents=True)
            journal.created(layout.install_dir)
        elif layout.artifact_path.exists() or layout.artifact_path.is_symlink():
            self._backup(layout.artifact_path, journal)

        _move(staged.path, layout.artifact_path)
        journal.created(layout.artifact_path)
        mode = layout.artifact_path.stat().st_mode
        layout.artifact_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return True

    def _place_portable(self, layout: Layout, journal: _Journal) -> None:
        name = layout.artifact_path.name
        for path, sibling_suffix in (
            (layout.portable_path, None),
            (layout.portable_home, ".home"),
            (layout.portable_config, ".config"),
        ):
            if path is None:
                continue
            if not path.exists():
                path.mkdir(parents=True)
                journal.created(path)
            if sibling_suffix:
                # AppImage runtimes look for <name>.home / <name>.config beside the binary.
                self._link(layout.install_dir / f"{name}{sibling_suffix}", path, journal)

    def _link(self, link: Path, target: Path, journal: _Journal) -> None:
        if link.is_symlink() and Path(os.readlink(link)) == target:
            return
        if link.exists() and not link.is_symlink():
            raise PlacementFailure(
                str(link.name), f"refusing to replace non-symlink at {link}", paths=[str(link)]
            )
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink():
            self._backup(link, journal)
        link.symlink_to(target)
        journal.created(link)

    def _write(self, path: Path, data: bytes, journal: _Journal) -> None:
        if path.is_file() and not path.is_symlink() and path.read_bytes() == data:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() or path.is_symlink():
            self._backup(path, journal)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        journal.created(path)

    @staticmethod
    def _backup(path: Path, journal: _Journal) -> None:
        backup = path.with_name(path.name + BACKUP_SUFFIX)
        _remove_path(backup)
        os.replace(path, backup)
        journal.replaced(path, backup)

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    def remove(self, layout: Layout, keep: Iterable[str] = ()) -> RemovalOutcome:
        """Remove every registered path in reverse placement order.

        Already-missing paths count as removed. Paths in *keep* (owned by a
        replacement) are left alone. The entry point symlink is removed
        exactly when it still points into this layout's install dir, even if
        another row records the same path.
        """
        keep_set = {str(p) for p in keep}
        outcome = RemovalOutcome()

        steps: list[tuple[Path | None, str]] = [
            (layout.appstream_path, "file"),
            (layout.desktop_path, "file"),
            (layout.icon_path, "file"),
            (layout.bin_path, "link"),
            (layout.portable_config, "tree"),
            (layout.portable_home, "tree"),
            (layout.portable_path, "tree"),
            (layout.install_dir, "tree"),
        ]
        for path, kind in steps:
            if path is None:
                continue
            owned_link = kind == "link" and _points_into(path, layout.install_dir)
            if str(path) in keep_set and not owned_link:
                outcome.skipped.append(str(path))
                continue
            if not (path.exists() or path.is_symlink()):
                outcome.missing.append(str(path))
                continue
            if kind == "link" and not owned_link:
                logger.info("Leaving %s: it no longer points into %s", path, layout.install_dir)
                outcome.skipped.append(str(path))
                continue
            try:
                _remove_path(path)
                outcome.removed.append(str(path))
            except OSError as exc:
                logger.error("Could not remove %s: %s", path, exc)
                outcome.failed.append((str(path), str(exc)))
        return outcome

    def relink(self, layout: Layout) -> bool:
        """Restore a missing or dangling entry point. Returns True if changed."""
        if not layout.artifact_path.exists():
            return False
        link = layout.bin_path
        if link.exists():
            return False
        link.parent.mkdir(parents=True, exist_ok=True)
        _remove_path(link)
        link.symlink_to(layout.artifact_path)
        return True


def rewrite_desktop_entry(text: str, exec_path: Path, icon_path: Path | None) -> str:
    """Point ``Exec=``/``TryExec=``/``Icon=`` at the placed files."""
    lines = []
    for line in text.splitlines():
        if line.startswith("Exec="):
            parts = line[len("Exec="):].split(maxsplit=1)
            args = f" {parts[1]}" if len(parts) > 1 else ""
            line = f"Exec={exec_path}{args}"
        elif line.startswith("TryExec="):
            line = f"TryExec={exec_path}"
        elif line.startswith("Icon=") and icon_path is not None:
            line = f"Icon={icon_path}"
        lines.append(line)
    return "\n".join(lines) + "\n"


def _portable_dir(value: str | None, default: Path) -> Path | None:
    if value is None:
        return None
    if value == "":
        return default
    return Path(value).expanduser().absolute()


def _opt_path(value: str | None) -> Path | None:
    return Path(value) if value else None


def _under(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def _points_into(link: Path, directory: Path) -> bool:
    if not link.is_symlink():
        return False
    target = Path(os.readlink(link))
    if not target.is_absolute():
        target = link.parent / target
    return _under(Path(os.path.normpath(target)), Path(os.path.normpath(directory)))


def _remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree; missing is fine."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)


def _move(src: Path, dst: Path) -> None:
    """Rename, falling back to copy-then-rename across filesystems."""
    try:
        os.replace(src, dst)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        tmp = dst.with_name(f".{dst.name}.tmp")
        shutil.copy2(src, tmp)
        os.replace(tmp, dst)
        src.unlink(missing_ok=True)
