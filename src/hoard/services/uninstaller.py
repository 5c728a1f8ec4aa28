"""Uninstall and reconcile.

Removal always deletes files before rows. A crash in between leaves a row
whose files are gone, which ``reconcile`` purges; the reverse order could
leave files nothing records.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from hoard.config import Settings
from hoard.db.models.package import PackageRow, PortablePackageRow
from hoard.db.store import StateStore
from hoard.errors import HoardError, NotFoundError, PlacementFailure
from hoard.index.snapshot import IndexSnapshot
from hoard.models.enums import ReconcileAction
from hoard.repositories.package_repo import PackageRepository
from hoard.repositories.portable_repo import PortablePackageRepository
from hoard.services.filesystem import BACKUP_SUFFIX, FilesystemIntegrator
from hoard.services.installer import Installer
from hoard.services.integrity import same_checksum
from hoard.services.locks import KeyedLocks, OperationLock

logger = logging.getLogger(__name__)


@dataclass
class UninstallReport:
    removed: list[str] = field(default_factory=list)
    package_ids: list[int] = field(default_factory=list)
    missing_paths: list[str] = field(default_factory=list)


@dataclass
class ReconcileReport:
    actions: list[tuple[ReconcileAction, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, action: ReconcileAction, subject: str) -> None:
        logger.info("reconcile: %s %s", action.value, subject)
        self.actions.append((action, subject))

    def count(self, action: ReconcileAction) -> int:
        return sum(1 for a, _ in self.actions if a == action)

    @property
    def clean(self) -> bool:
        return not self.actions and not self.errors


class Uninstaller:
    def __init__(
        self,
        store: StateStore,
        integrator: FilesystemIntegrator,
        settings: Settings,
        locks: KeyedLocks | None = None,
        installer: Installer | None = None,
        oplock: OperationLock | None = None,
    ) -> None:
        self.store = store
        self.integrator = integrator
        self.settings = settings
        self.locks = locks or KeyedLocks()
        self.installer = installer
        self.oplock = oplock or OperationLock(None)

    async def uninstall(self, package_id: int) -> UninstallReport:
        """Remove a package, and every sibling if it belongs to a family.

        Raises:
            NotFoundError: no row has *package_id*.
            PlacementFailure: some path could not be removed; no row was deleted.
        """
        async with self.oplock.shared():
            return await self._uninstall(package_id)

    async def _uninstall(self, package_id: int) -> UninstallReport:
        rows, _ = await self._load_removal_set(package_id)
        async with self.locks.hold((r.pkg_id, r.profile) for r in rows):
            # Re-read under the lock; a concurrent operation may have changed the set.
            rows, portables = await self._load_removal_set(package_id)
            ids = [r.id for r in rows]
            keep = await self._paths_in_use(exclude=ids)

            report = UninstallReport()
            failed: list[tuple[str, str]] = []
            for row in reversed(rows):
                layout = self.integrator.layout_from_row(row, portables.get(row.id))
                outcome = self.integrator.remove(layout, keep=keep)
                report.missing_paths.extend(outcome.missing)
                failed.extend(outcome.failed)

            labels = [r.label for r in rows]
            if failed:
                raise PlacementFailure(
                    ", ".join(labels),
                    f"could not remove {len(failed)} path(s); records kept, re-run remove",
                    paths=[path for path, _ in failed],
                    stage="removal",
                )

            async with self.store.transaction(packages=labels) as session:
                await PortablePackageRepository(session).delete_for(ids)
                await PackageRepository(session).delete(ids)

        report.removed = labels
        report.package_ids = ids
        logger.info("Removed %s", ", ".join(labels))
        return report

    async def _load_removal_set(
        self, package_id: int
    ) -> tuple[list[PackageRow], dict[int, PortablePackageRow]]:
        async with self.store.session() as session:
            packages = PackageRepository(session)
            row = await packages.get(package_id)
            if row is None:
                raise NotFoundError(f"#{package_id}")
            rows = await packages.list_family(row.family_id) if row.family_id else [row]
            portables = {}
            portable_repo = PortablePackageRepository(session)
            for r in rows:
                portable = await portable_repo.get(r.id)
                if portable is not None:
                    portables[r.id] = portable
        return rows, portables

    async def _paths_in_use(self, exclude: list[int]) -> set[str]:
        """Every path recorded by a row outside *exclude*."""
        excluded = set(exclude)
        paths: set[str] = set()
        async with self.store.session() as session:
            portable_repo = PortablePackageRepository(session)
            for row in await PackageRepository(session).list_all():
                if row.id in excluded:
                    continue
                paths.update(row.recorded_paths())
                portable = await portable_repo.get(row.id)
                if portable is not None:
                    paths.update(portable.recorded_paths())
        return paths

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile(self, repair: bool = False, snapshot: IndexSnapshot | None = None) -> ReconcileReport:
        """Bring the store and the filesystem back in line.

        1. superseded rows left by an interrupted upgrade are collected
        2. installed rows whose artifact is gone are re-placed (with
           *repair*, when *snapshot* still offers the same checksum) or purged
        3. missing entry point links are restored (with *repair*)
        4. staged downloads, rollback backups and unrecorded install
           directories are deleted, once no other operation is running
        """
        report = ReconcileReport()
        await self._collect_superseded(report)
        await self._check_installed(report, repair, snapshot)
        async with self.oplock.exclusive():
            self._clean_staging(report)
            self._clean_backups(report)
            await self._clean_orphans(report)
        if report.clean:
            logger.info("reconcile: store and filesystem agree")
        return report

    async def _collect_superseded(self, report: ReconcileReport) -> None:
        async with self.store.session() as session:
            superseded = await PackageRepository(session).list_superseded()
        for row in superseded:
            await self._drop_row(row, ReconcileAction.COLLECTED, report)

    async def _check_installed(self, report: ReconcileReport, repair: bool, snapshot: IndexSnapshot | None) -> None:
        async with self.store.session() as session:
            rows = await PackageRepository(session).list_installed()
            portable_repo = PortablePackageRepository(session)
            portables = {r.id: await portable_repo.get(r.id) for r in rows}

        for row in rows:
            layout = self.integrator.layout_from_row(row, portables.get(row.id))
            if layout.artifact_path.is_file():
                if repair and self.integrator.relink(layout):
                    report.add(ReconcileAction.REPAIRED, f"{row.label} entry point")
                continue

            logger.warning("%s is recorded but %s is missing", row.label, layout.artifact_path)
            if repair and await self._repair(row, snapshot, report):
                continue
            await self._drop_row(row, ReconcileAction.PURGED, report)

    async def _repair(self, row: PackageRow, snapshot: IndexSnapshot | None, report: ReconcileReport) -> bool:
        if snapshot is None or self.installer is None:
            return False
        entry = next(
            (e for e in snapshot.versions_of(row.repo_name, row.pkg_id) if same_checksum(e.checksum, row.checksum)),
            None,
        )
        if entry is None:
            logger.info("Cannot repair %s: %s no longer offers checksum %s", row.label, row.repo_name, row.checksum)
            return False
        result = await self.installer.install([entry], row.profile)
        if not result.ok:
            report.errors.extend(e.describe() for e in result.errors())
            return False
        report.add(ReconcileAction.REPAIRED, row.label)
        return True

    async def _drop_row(self, row: PackageRow, action: ReconcileAction, report: ReconcileReport) -> None:
        """Remove what is left of *row* on disk, then the row itself."""
        async with self.locks.hold([(row.pkg_id, row.profile)]):
            async with self.store.session() as session:
                portable = await PortablePackageRepository(session).get(row.id)
            keep = await self._paths_in_use(exclude=[row.id])
            outcome = self.integrator.remove(self.integrator.layout_from_row(row, portable), keep=keep)
            if not outcome.ok:
                report.errors.extend(f"{path}: {reason}" for path, reason in outcome.failed)
                return
            try:
                async with self.store.transaction(packages=[row.label]) as session:
                    await PortablePackageRepository(session).delete_for([row.id])
                    await PackageRepository(session).delete([row.id])
            except HoardError as exc:
                report.errors.append(exc.describe())
                return
        report.add(action, row.label)

    def _clean_staging(self, report: ReconcileReport) -> None:
        staging = self.settings.staging_dir
        if not staging.is_dir():
            return
        for path in sorted(staging.iterdir()):
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink(missing_ok=True)
            except OSError as exc:
                report.errors.append(f"{path}: {exc}")
                continue
            report.add(ReconcileAction.CLEANED, str(path))

    def _clean_backups(self, report: ReconcileReport) -> None:
        roots = [
            self.settings.data_dir / "profiles",
            self.settings.desktop_dir,
            self.settings.icons_dir,
            self.settings.appstream_dir,
        ]
        for root in roots:
            if not root.is_dir():
                continue
            pattern = f"**/*{BACKUP_SUFFIX}" if root == roots[0] else f"*{BACKUP_SUFFIX}"
            for path in sorted(root.glob(pattern)):
                try:
                    if path.is_dir() and not path.is_symlink():
                        shutil.rmtree(path)
                    else:
                        path.unlink(missing_ok=True)
                except OSError as exc:
                    report.errors.append(f"{path}: {exc}")
                    continue
                report.add(ReconcileAction.CLEANED, str(path))

    async def _clean_orphans(self, report: ReconcileReport) -> None:
        async with self.store.session() as session:
            recorded = {Path(r.installed_path) for r in await PackageRepository(session).list_all()}
        profiles = self.settings.data_dir / "profiles"
        if not profiles.is_dir():
            return
        for install_dir in sorted(profiles.glob("*/packages/*")):
            if install_dir in recorded or not install_dir.is_dir():
                continue
            try:
                shutil.rmtree(install_dir)
            except OSError as exc:
                report.errors.append(f"{install_dir}: {exc}")
                continue
            report.add(ReconcileAction.CLEANED, str(install_dir))
