"""PackageManager wires the components together for one process.

Every component receives explicit handles (store, transport, settings); nothing
reaches for module-level state. One manager serves one command invocation and
keeps the index snapshot it synced for the rest of it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from hoard.config import RepositoryConfig, Settings, apply_overrides, load_repository_file
from hoard.db.models.package import PackageRow, PortablePackageRow
from hoard.db.store import StateStore
from hoard.errors import AcquisitionFailure, AmbiguousPackageError, NotFoundError
from hoard.events import EventSink
from hoard.index.cache import IndexCache
from hoard.index.client import IndexClient
from hoard.index.snapshot import IndexSnapshot
from hoard.models.package import IndexEntry, InstallOptions, PackageQuery
from hoard.repositories.package_repo import PackageRepository
from hoard.repositories.portable_repo import PortablePackageRepository
from hoard.services import resolver
from hoard.services.acquisition import AcquisitionPipeline
from hoard.services.filesystem import FilesystemIntegrator
from hoard.services.installer import InstallReport, Installer
from hoard.services.locks import KeyedLocks, OperationLock
from hoard.services.uninstaller import ReconcileReport, Uninstaller, UninstallReport
from hoard.services.versioning import version_key
from hoard.transport import FETCH_ERRORS, HttpTransport

logger = logging.getLogger(__name__)


@dataclass
class PackageInfo:
    query: str
    installed: list[PackageRow] = field(default_factory=list)
    portable: dict[int, PortablePackageRow] = field(default_factory=dict)
    available: list[IndexEntry] = field(default_factory=list)


class PackageManager:
    def __init__(
        self,
        settings: Settings,
        repositories: list[RepositoryConfig],
        transport: HttpTransport | None = None,
        sink: EventSink | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.repositories = repositories
        self.store = StateStore(settings.effective_database_url)
        self.transport = transport or HttpTransport(timeout=settings.http_timeout)
        self.index = IndexClient(self.transport, IndexCache(settings.index_cache_dir), settings.sync_interval)
        self.pipeline = AcquisitionPipeline(
            self.transport,
            settings.staging_dir,
            parallel_limit=settings.parallel_limit,
            retries=settings.download_retries,
            backoff=settings.retry_backoff,
            sleep=sleep,
        )
        self.integrator = FilesystemIntegrator(settings)
        self.locks = KeyedLocks()
        self.oplock = OperationLock(settings.lock_file)
        self.installer = Installer(self.store, self.pipeline, self.integrator, self.locks, sink, self.oplock)
        self.uninstaller = Uninstaller(
            self.store, self.integrator, settings, self.locks, self.installer, self.oplock
        )
        self._snapshot: IndexSnapshot | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "PackageManager":
        """Build a manager from settings plus the repository file they name."""
        repo_file = load_repository_file(settings.config_file)
        return cls(apply_overrides(settings, repo_file), repo_file.enabled_repositories(), **kwargs)

    async def open(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.transport.aclose()
        await self.store.dispose()

    async def __aenter__(self) -> "PackageManager":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def query(self, spec: str, profile: str | None = None) -> PackageQuery:
        return PackageQuery.parse(spec, profile or self.settings.default_profile)

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    async def sync(self, force: bool = False) -> IndexSnapshot:
        if not self.repositories:
            logger.warning("No repositories configured (%s)", self.settings.config_file)
        self._snapshot = await self.index.sync(self.repositories, force=force)
        return self._snapshot

    async def snapshot(self) -> IndexSnapshot:
        if self._snapshot is None:
            return await self.sync()
        return self._snapshot

    async def search(self, term: str, case_sensitive: bool = False, limit: int | None = None) -> list[IndexEntry]:
        return resolver.search(term, await self.snapshot(), case_sensitive=case_sensitive, limit=limit)

    async def resolve(self, query: PackageQuery) -> IndexEntry:
        async with self.store.session() as session:
            pinned = await PackageRepository(session).pinned_keys(query.profile)
        return resolver.resolve(query, await self.snapshot(), pinned)[0]

    # ------------------------------------------------------------------
    # Install / upgrade / remove
    # ------------------------------------------------------------------

    async def install(
        self,
        specs: list[str],
        profile: str | None = None,
        options: InstallOptions | None = None,
        family: bool = False,
    ) -> InstallReport:
        """Resolve every spec first, then install.

        An entry whose index record names a ``family`` brings the newest
        version of every other member of that family along.
        """
        profile = profile or self.settings.default_profile
        snapshot = await self.snapshot()
        entries: list[IndexEntry] = []
        for spec in specs:
            entry = await self.resolve(self.query(spec, profile))
            entries.append(entry)
            if entry.family:
                entries.extend(_family_members(snapshot, entry))
        return await self.installer.install(entries, profile, options, family=family)

    async def upgrade(self, spec: str | None = None, profile: str | None = None) -> InstallReport:
        """Without *spec*, sweep *profile* (all profiles when None)."""
        snapshot = await self.snapshot()
        query = self.query(spec, profile) if spec else None
        return await self.installer.upgrade(snapshot, query=query, profile=profile)

    async def remove(self, spec: str, profile: str | None = None) -> UninstallReport:
        row = await self._installed(self.query(spec, profile))
        return await self.uninstaller.uninstall(row.id)

    async def reconcile(self, repair: bool = False) -> ReconcileReport:
        snapshot = await self.snapshot() if repair else None
        return await self.uninstaller.reconcile(repair=repair, snapshot=snapshot)

    # ------------------------------------------------------------------
    # Queries on installed state
    # ------------------------------------------------------------------

    async def list(self, profile: str | None = None) -> list[PackageRow]:
        async with self.store.session() as session:
            return await PackageRepository(session).list_installed(profile)

    async def info(self, spec: str, profile: str | None = None) -> PackageInfo:
        query = self.query(spec, profile)
        info = PackageInfo(query=str(query))
        async with self.store.session() as session:
            info.installed = await PackageRepository(session).find_installed(query.name, query.profile, query.repo)
            portable_repo = PortablePackageRepository(session)
            for row in info.installed:
                portable = await portable_repo.get(row.id)
                if portable is not None:
                    info.portable[row.id] = portable

        snapshot = await self.snapshot()
        if not query.repo or query.repo not in snapshot.unavailable:
            info.available = resolver.candidates(query, snapshot)
        if not info.installed and not info.available:
            raise NotFoundError(str(query), resolver.suggest(query.name, snapshot, query.repo), repo=query.repo)
        return info

    async def pin(self, spec: str, profile: str | None = None) -> PackageRow:
        return await self._set_pinned(self.query(spec, profile), True)

    async def unpin(self, spec: str, profile: str | None = None) -> PackageRow:
        return await self._set_pinned(self.query(spec, profile), False)

    async def _set_pinned(self, query: PackageQuery, pinned: bool) -> PackageRow:
        row = await self._installed(query)
        async with self.locks.hold([(row.pkg_id, row.profile)]):
            async with self.store.transaction(packages=[row.label]) as session:
                packages = PackageRepository(session)
                current = await packages.get(row.id)
                if current is None:
                    raise NotFoundError(str(query), repo=query.repo)
                await packages.update(current, pinned=pinned)
        logger.info("%s %s", "Pinned" if pinned else "Unpinned", current.label)
        return current

    async def _installed(self, query: PackageQuery) -> PackageRow:
        """The single installed row *query* names in its profile."""
        async with self.store.session() as session:
            rows = await PackageRepository(session).find_installed(query.name, query.profile, query.repo)
        if not query.is_latest:
            rows = [r for r in rows if r.version == query.version]
        if not rows:
            raise NotFoundError(str(query), repo=query.repo)
        identities = sorted({f"{r.repo_name}/{r.pkg_id}" for r in rows})
        if len(identities) > 1:
            raise AmbiguousPackageError(str(query), identities)
        return rows[0]

    # ------------------------------------------------------------------
    # Build logs
    # ------------------------------------------------------------------

    async def inspect(self, spec: str, profile: str | None = None) -> str:
        """Fetch the build log an index entry links to."""
        entry = await self.resolve(self.query(spec, profile))
        if not entry.build_log:
            raise NotFoundError(f"build log for {entry.label}")
        try:
            data = await self.transport.fetch_bytes(entry.build_log)
        except FETCH_ERRORS as exc:
            raise AcquisitionFailure(entry.label, f"could not fetch build log: {exc}", url=entry.build_log) from exc
        return data.decode("utf-8", errors="replace")


def _family_members(snapshot: IndexSnapshot, entry: IndexEntry) -> list[IndexEntry]:
    """Newest version of each other member of *entry*'s family."""
    newest: dict[str, IndexEntry] = {}
    for member in snapshot.family_members(entry.repo_name, entry.family):
        if member.pkg_id == entry.pkg_id:
            continue
        current = newest.get(member.pkg_id)
        if current is None or version_key(member.version) > version_key(current.version):
            newest[member.pkg_id] = member
    return [newest[k] for k in sorted(newest)]
