"""Installation state machine.

Every package moves REQUESTED -> STAGING -> VERIFIED -> PLACED -> COMMITTED,
or ends in FAILED. Nothing touches the final layout before VERIFIED, and a
store row is written only after placement succeeded.

A family is one unit: every member must reach VERIFIED before any member is
placed, placements are undone in reverse order if one fails, and all rows are
committed in a single transaction.

Replacing an installed version inserts the new row and marks the old one
``is_installed=False`` in the same transaction. The old files are removed
afterwards, then the old row is deleted; if that cleanup is interrupted the
superseded row is left for ``reconcile``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from hoard.db.models.package import PackageRow, PortablePackageRow
from hoard.db.store import StateStore
from hoard.errors import HoardError, NotFoundError, PartialFamilyRollback, StoreFailure
from hoard.events import EventSink, LoggingEventSink, StageEvent, safe_emit
from hoard.index.snapshot import IndexSnapshot
from hoard.models.enums import InstallAction, InstallStage
from hoard.models.package import IndexEntry, InstallOptions, PackageQuery
from hoard.repositories.package_repo import PackageRepository
from hoard.repositories.portable_repo import PortablePackageRepository
from hoard.services.acquisition import AcquisitionPipeline, StagedArtifact
from hoard.services.filesystem import FilesystemIntegrator, Layout, Placement
from hoard.services.id_generator import generate_id
from hoard.services.integrity import same_checksum
from hoard.services.locks import KeyedLocks, OperationLock
from hoard.services.resolver import newest_for
from hoard.services.versioning import is_newer

logger = logging.getLogger(__name__)


@dataclass
class PackageOutcome:
    """What happened to one package in one profile."""

    package: str
    profile: str
    action: InstallAction
    stage: InstallStage
    reached: InstallStage
    package_id: int | None = None
    previous_version: str | None = None
    family_id: str | None = None
    error: HoardError | None = None


@dataclass
class InstallReport:
    outcomes: list[PackageOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[PackageOutcome]:
        return [o for o in self.outcomes if o.error is not None]

    @property
    def ok(self) -> bool:
        return not self.failed

    def errors(self) -> list[HoardError]:
        """Distinct errors; family members share one."""
        seen: list[HoardError] = []
        for outcome in self.failed:
            if not any(outcome.error is e for e in seen):
                seen.append(outcome.error)
        return seen

    def raise_for_failures(self) -> None:
        errors = self.errors()
        if errors:
            raise errors[0]


@dataclass
class _Task:
    entry: IndexEntry
    profile: str
    options: InstallOptions
    stage: InstallStage = InstallStage.REQUESTED
    reached: InstallStage = InstallStage.REQUESTED
    existing: PackageRow | None = None
    existing_portable: PortablePackageRow | None = None
    unchanged: bool = False
    staged: StagedArtifact | None = None
    layout: Layout | None = None
    placement: Placement | None = None
    row_id: int | None = None
    error: HoardError | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.entry.pkg_id, self.profile)

    @property
    def label(self) -> str:
        return f"{self.entry.label} [{self.profile}]"

    @property
    def action(self) -> InstallAction:
        if self.error is not None:
            return InstallAction.FAILED
        if self.unchanged:
            return InstallAction.UNCHANGED
        if self.existing is None:
            return InstallAction.INSTALLED
        if self.row_id == self.existing.id:
            return InstallAction.REINSTALLED
        return InstallAction.UPGRADED


@dataclass
class _Group:
    tasks: list[_Task]
    is_family: bool = False
    family_id: str | None = None


class Installer:
    """Drives install and upgrade through the stage machine."""

    def __init__(
        self,
        store: StateStore,
        pipeline: AcquisitionPipeline,
        integrator: FilesystemIntegrator,
        locks: KeyedLocks | None = None,
        sink: EventSink | None = None,
        oplock: OperationLock | None = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.integrator = integrator
        self.locks = locks or KeyedLocks()
        self.sink = sink or LoggingEventSink()
        self.oplock = oplock or OperationLock(None)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def install(
        self,
        entries: Iterable[IndexEntry],
        profile: str,
        options: InstallOptions | None = None,
        family: bool = False,
    ) -> InstallReport:
        """Install *entries* into *profile*.

        With ``family=True`` all entries form one family. Otherwise entries
        that declare the same index ``family`` are grouped, and the rest are
        installed independently of each other.
        """
        options = options or InstallOptions()
        tasks = _dedupe(_Task(entry, profile, options) for entry in entries)
        if family and tasks:
            return await self._run([_Group(tasks, is_family=True)])

        groups: list[_Group] = []
        families: dict[tuple[str, str], _Group] = {}
        for task in tasks:
            if task.entry.family:
                key = (task.entry.repo_name, task.entry.family)
                if key not in families:
                    families[key] = _Group([], is_family=True)
                    groups.append(families[key])
                families[key].tasks.append(task)
            else:
                groups.append(_Group([task]))
        return await self._run(groups)

    async def upgrade(
        self,
        snapshot: IndexSnapshot,
        query: PackageQuery | None = None,
        profile: str | None = None,
    ) -> InstallReport:
        """Upgrade installed packages to the newest version in *snapshot*.

        Without *query* every installed, unpinned package in *profile* (all
        profiles when None) is considered. A query selects matching rows even
        when they are pinned. Rows sharing a ``family_id`` are upgraded as one
        family and keep their id.
        """
        plans = await self._plan_upgrades(snapshot, query, profile)
        if not plans:
            logger.info("Nothing to upgrade")
            return InstallReport()

        groups: list[_Group] = []
        families: dict[tuple[str, str], _Group] = {}
        for row, target in plans:
            task = _Task(target, row.profile, InstallOptions())
            if row.family_id:
                key = (row.family_id, row.profile)
                if key not in families:
                    families[key] = _Group([], is_family=True, family_id=row.family_id)
                    groups.append(families[key])
                families[key].tasks.append(task)
            else:
                groups.append(_Group([task]))
        return await self._run(groups)

    async def _plan_upgrades(
        self,
        snapshot: IndexSnapshot,
        query: PackageQuery | None,
        profile: str | None,
    ) -> list[tuple[PackageRow, IndexEntry]]:
        async with self.store.session() as session:
            packages = PackageRepository(session)
            if query is not None:
                rows = await packages.find_installed(query.name, query.profile or profile, query.repo)
                if not rows:
                    raise NotFoundError(str(query), repo=query.repo)
            else:
                rows = await packages.list_installed(profile)
                pinned = [r.label for r in rows if r.pinned]
                if pinned:
                    logger.info("Skipping pinned packages: %s", ", ".join(pinned))
                rows = [r for r in rows if not r.pinned]

            plans = [(row, target) for row in rows if (target := _upgrade_target(row, snapshot, query))]

            # Family members move together, so pull in siblings that also have an update.
            planned = {row.id for row, _ in plans}
            for family_id in sorted({row.family_id for row, _ in plans if row.family_id}):
                for sibling in await packages.list_family(family_id):
                    if sibling.id in planned or not sibling.is_installed or sibling.pinned:
                        continue
                    target = _upgrade_target(sibling, snapshot, None)
                    if target is not None:
                        plans.append((sibling, target))
                        planned.add(sibling.id)
        return plans

    # ------------------------------------------------------------------
    # Group execution
    # ------------------------------------------------------------------

    async def _run(self, groups: list[_Group]) -> InstallReport:
        async with self.oplock.shared():
            results = await asyncio.gather(*(self._run_group(group) for group in groups))
        report = InstallReport()
        for outcomes in results:
            report.outcomes.extend(outcomes)
        return report

    async def _run_group(self, group: _Group) -> list[PackageOutcome]:
        for task in group.tasks:
            self._transition(task, InstallStage.REQUESTED, group.family_id)
        async with self.locks.hold(task.key for task in group.tasks):
            await self._load_existing(group.tasks)
            if group.is_family:
                return await self._run_family(group)
            return [await self._run_single(group.tasks[0])]

    async def _load_existing(self, tasks: list[_Task]) -> None:
        async with self.store.session() as session:
            packages = PackageRepository(session)
            portables = PortablePackageRepository(session)
            for task in tasks:
                existing = await packages.get_installed(task.entry.repo_name, task.entry.pkg_id, task.profile)
                task.existing = existing
                if existing is None:
                    continue
                task.existing_portable = await portables.get(existing.id)
                if task.existing_portable is not None and not task.options.wants_portable:
                    # Keep the portable directories of the version being replaced.
                    task.options = task.options.model_copy(
                        update={
                            "portable": task.existing_portable.portable_path,
                            "portable_home": task.existing_portable.portable_home,
                            "portable_config": task.existing_portable.portable_config,
                        }
                    )
                task.unchanged = (
                    not task.options.force
                    and same_checksum(existing.checksum, task.entry.checksum)
                    and self.integrator.layout_from_row(existing).artifact_path.is_file()
                )

    async def _run_single(self, task: _Task) -> PackageOutcome:
        if task.unchanged:
            logger.info("%s is already installed", task.label)
            task.row_id = task.existing.id
            self._transition(task, InstallStage.COMMITTED, detail="already installed")
            return self._outcome(task)

        await self._stage([task], None)
        if task.error is not None:
            return self._fail(task, task.error)
        try:
            await _run_to_completion(self._apply([task], None))
        except HoardError as exc:
            return self._fail(task, exc)
        await self._collect_superseded(task)
        return self._outcome(task)

    async def _run_family(self, group: _Group) -> list[PackageOutcome]:
        tasks = group.tasks
        family_id = group.family_id or _shared_family_id(tasks) or generate_id("fam_")
        group.family_id = family_id

        if all(t.unchanged and t.existing.family_id == family_id for t in tasks):
            for task in tasks:
                task.row_id = task.existing.id
                self._transition(task, InstallStage.COMMITTED, family_id, detail="already installed")
            return [self._outcome(t, family_id) for t in tasks]

        pending = [t for t in tasks if not t.unchanged]
        await self._stage(pending, family_id)

        # Barrier: nothing is placed unless every member verified.
        failed = next((t for t in pending if t.error is not None), None)
        if failed is not None:
            for task in pending:
                self.pipeline.discard(task.staged)
            return self._fail_family(tasks, family_id, failed, failed.error)

        try:
            await _run_to_completion(self._apply(tasks, family_id))
        except HoardError as exc:
            member = next((t for t in tasks if t.error is exc), None)
            return self._fail_family(tasks, family_id, member, exc)

        for task in tasks:
            await self._collect_superseded(task)
        return [self._outcome(t, family_id) for t in tasks]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _stage(self, tasks: list[_Task], family_id: str | None) -> None:
        for task in tasks:
            self._transition(task, InstallStage.STAGING, family_id)
        outcomes = await self.pipeline.acquire([t.entry for t in tasks])
        for task, outcome in zip(tasks, outcomes):
            if outcome.ok:
                task.staged = outcome.staged
                self._transition(task, InstallStage.VERIFIED, family_id)
            else:
                task.error = outcome.error

    async def _apply(self, tasks: list[_Task], family_id: str | None) -> None:
        """Place every task, then commit all rows in one transaction.

        On any failure the placements made here are rolled back in reverse
        order and the error propagates.
        """
        placed: list[_Task] = []
        current: _Task | None = None
        try:
            for current in tasks:
                if current.unchanged:
                    continue
                current.layout = self.integrator.plan(current.entry, current.profile, current.options)
                current.placement = self.integrator.place(
                    current.layout, current.staged, replaces=_install_dir(current.existing)
                )
                placed.append(current)
                self._transition(current, InstallStage.PLACED, family_id)
            current = None
            await self._commit(tasks, family_id)
        except HoardError as exc:
            if current is not None:
                current.error = exc
            if isinstance(exc, StoreFailure) and exc.stage is None:
                exc.stage = InstallStage.PLACED.value
            for task in reversed(placed):
                failures = task.placement.rollback()
                if failures:
                    logger.error("Rollback of %s left %d step(s) undone: %s", task.label, len(failures), failures)
                task.placement = None
            for task in tasks:
                self.pipeline.discard(task.staged)
            raise

        for task in placed:
            task.placement.finalize()
        for task in tasks:
            self._transition(task, InstallStage.COMMITTED, family_id)

    async def _commit(self, tasks: list[_Task], family_id: str | None) -> None:
        async with self.store.transaction(packages=[t.label for t in tasks]) as session:
            packages = PackageRepository(session)
            portables = PortablePackageRepository(session)
            for task in tasks:
                await self._record(task, family_id, packages, portables)

    async def _record(
        self,
        task: _Task,
        family_id: str | None,
        packages: PackageRepository,
        portables: PortablePackageRepository,
    ) -> None:
        existing = await packages.get(task.existing.id) if task.existing else None
        if family_id is None and existing is not None:
            family_id = existing.family_id

        if task.unchanged:
            await packages.update(existing, family_id=family_id, installed_with_family=family_id is not None)
            task.row_id = existing.id
            return

        entry, layout = task.entry, task.layout
        fields = {
            "repo_name": entry.repo_name,
            "pkg": entry.pkg,
            "pkg_id": entry.pkg_id,
            "pkg_name": entry.pkg_name,
            "version": entry.version,
            "size": entry.size or layout.artifact_path.stat().st_size,
            "checksum": task.staged.checksum,
            "installed_path": str(layout.install_dir),
            "installed_date": datetime.now(timezone.utc),
            "bin_path": str(layout.bin_path),
            "icon_path": _str(layout.icon_path),
            "desktop_path": _str(layout.desktop_path),
            "appstream_path": _str(layout.appstream_path),
            "profile": task.profile,
            "is_installed": True,
            "installed_with_family": family_id is not None,
            "family_id": family_id,
        }
        if existing is not None and same_checksum(existing.checksum, task.staged.checksum):
            row = await packages.update(existing, **fields)
        else:
            if existing is not None:
                fields["pinned"] = existing.pinned
                await packages.update(existing, is_installed=False)
            row = await packages.create(**fields)
        task.row_id = row.id

        if layout.has_portable:
            await portables.upsert(
                row.id,
                _str(layout.portable_path),
                _str(layout.portable_home),
                _str(layout.portable_config),
            )

    async def _collect_superseded(self, task: _Task) -> None:
        """Remove the files and row of the version *task* replaced."""
        old = task.existing
        if old is None or task.unchanged or task.row_id == old.id:
            return
        old_layout = self.integrator.layout_from_row(old, task.existing_portable)
        removal = self.integrator.remove(old_layout, keep=task.layout.owned_paths())
        if not removal.ok:
            logger.warning("Could not fully remove %s, reconcile will retry: %s", old.label, removal.failed)
            return
        try:
            async with self.store.transaction(packages=[old.label]) as session:
                await PortablePackageRepository(session).delete_for([old.id])
                await PackageRepository(session).delete([old.id])
        except StoreFailure as exc:
            logger.warning("Superseded row for %s kept for reconcile: %s", old.label, exc.message)
            return
        logger.info("Replaced %s with %s", old.label, task.label)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _transition(
        self,
        task: _Task,
        stage: InstallStage,
        family_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        if stage != InstallStage.FAILED:
            task.reached = stage
        task.stage = stage
        safe_emit(
            self.sink,
            StageEvent(package=task.entry.label, profile=task.profile, stage=stage, family_id=family_id, detail=detail),
        )

    def _fail(self, task: _Task, error: HoardError, family_id: str | None = None) -> PackageOutcome:
        task.error = error
        self._transition(task, InstallStage.FAILED, family_id, detail=error.describe())
        logger.error("Install of %s failed at %s: %s", task.label, task.reached.value, error.describe())
        return self._outcome(task, family_id)

    def _fail_family(
        self,
        tasks: list[_Task],
        family_id: str,
        member: _Task | None,
        cause: HoardError,
    ) -> list[PackageOutcome]:
        error = PartialFamilyRollback(
            family_id,
            member.label if member is not None else "commit",
            cause,
            [t.label for t in tasks],
        )
        logger.error("%s", error.describe())
        outcomes = []
        for task in tasks:
            task.error = error
            self._transition(task, InstallStage.FAILED, family_id, detail=cause.describe())
            outcomes.append(self._outcome(task, family_id))
        return outcomes

    def _outcome(self, task: _Task, family_id: str | None = None) -> PackageOutcome:
        return PackageOutcome(
            package=task.entry.label,
            profile=task.profile,
            action=task.action,
            stage=task.stage,
            reached=task.reached,
            package_id=task.row_id if task.error is None else None,
            previous_version=task.existing.version if task.existing else None,
            family_id=family_id,
            error=task.error,
        )


def _upgrade_target(row: PackageRow, snapshot: IndexSnapshot, query: PackageQuery | None) -> IndexEntry | None:
    if row.repo_name in snapshot.unavailable:
        logger.warning("Cannot upgrade %s: repository %s is unavailable", row.label, row.repo_name)
        return None

    if query is not None and not query.is_latest:
        target = next((e for e in snapshot.versions_of(row.repo_name, row.pkg_id) if e.version == query.version), None)
        if target is None:
            raise NotFoundError(f"{row.repo_name}/{row.pkg_id}@{query.version}", repo=row.repo_name)
        return None if same_checksum(target.checksum, row.checksum) else target

    target = newest_for(snapshot, row.repo_name, row.pkg_id)
    if target is None:
        logger.warning("%s is no longer offered by %s", row.pkg_id, row.repo_name)
        return None
    if is_newer(target.version, row.version):
        return target
    if target.version == row.version and not same_checksum(target.checksum, row.checksum):
        return target
    return None


def _dedupe(tasks: Iterable[_Task]) -> list[_Task]:
    seen: set[tuple[str, str, str]] = set()
    unique = []
    for task in tasks:
        key = (task.entry.repo_name, task.entry.pkg_id, task.profile)
        if key in seen:
            continue
        seen.add(key)
        unique.append(task)
    return unique


async def _run_to_completion(work: Awaitable[None]) -> None:
    """Await *work*; a cancellation meanwhile waits for it to finish first.

    Once files are being placed the operation ends committed or rolled back,
    never half-way.
    """
    task = asyncio.ensure_future(work)
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        if task.done():
            raise
        logger.warning("Cancellation requested during placement; finishing the current commit first")
        while not task.done():
            try:
                await asyncio.wait([task])
            except asyncio.CancelledError:
                continue
        if not task.cancelled():
            task.exception()
        raise


def _shared_family_id(tasks: list[_Task]) -> str | None:
    """The family id every task already shares, or None.

    A grouping that only overlaps an existing family gets a fresh id.
    """
    ids = {t.existing.family_id if t.existing else None for t in tasks}
    if len(ids) == 1:
        return ids.pop()
    return None


def _install_dir(row: PackageRow | None) -> Path | None:
    return Path(row.installed_path) if row is not None else None


def _str(path) -> str | None:
    return str(path) if path is not None else None
