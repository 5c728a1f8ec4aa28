"""Repository index client: sync every configured repository into a snapshot."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from hoard.config import RepositoryConfig
from hoard.index.cache import CachedIndex, IndexCache
from hoard.index.formats import get_format
from hoard.index.snapshot import IndexSnapshot
from hoard.transport import FETCH_ERRORS, HttpTransport

logger = logging.getLogger(__name__)


class IndexClient:
    """Fetches repository indices and owns the cache freshness policy."""

    def __init__(self, transport: HttpTransport, cache: IndexCache, sync_interval: int) -> None:
        self.transport = transport
        self.cache = cache
        self.sync_interval = sync_interval

    async def sync(self, repositories: list[RepositoryConfig], force: bool = False) -> IndexSnapshot:
        """Return a snapshot of every enabled repository.

        One unreachable repository never fails the sync: it falls back to its
        cache (reported as stale) or, with no cache, is reported unavailable.
        """
        enabled = [r for r in repositories if r.enabled]
        results = await asyncio.gather(*(self._sync_one(repo, force) for repo in enabled))

        entries = []
        stale: list[str] = []
        unavailable: list[str] = []
        synced_at: dict[str, datetime] = {}
        for repo, (cached, is_stale) in zip(enabled, results):
            if cached is None:
                unavailable.append(repo.name)
                continue
            if is_stale:
                stale.append(repo.name)
            entries.extend(cached.entries)
            synced_at[repo.name] = cached.fetched_at

        snapshot = IndexSnapshot(
            entries,
            repos=[r.name for r in enabled],
            stale=stale,
            unavailable=unavailable,
            synced_at=synced_at,
        )
        logger.info(
            "Index snapshot ready: %d packages from %d repositories (stale=%s, unavailable=%s)",
            len(snapshot),
            len(enabled) - len(unavailable),
            sorted(stale) or "-",
            sorted(unavailable) or "-",
        )
        return snapshot

    async def _sync_one(self, repo: RepositoryConfig, force: bool) -> tuple[CachedIndex | None, bool]:
        cached = self.cache.load(repo.name)
        max_age = repo.sync_interval if repo.sync_interval is not None else self.sync_interval
        if cached is not None and cached.url == repo.url and not force and cached.is_fresh(max_age):
            logger.debug("Using fresh cache for %s", repo.name)
            return cached, False

        try:
            raw = await self.transport.fetch_bytes(repo.url)
            entries = get_format(repo.format).parse(repo.name, raw)
        except (*FETCH_ERRORS, ValueError) as exc:
            if cached is not None:
                logger.warning("Could not refresh %s (%s); using cached index from %s", repo.name, exc, cached.fetched_at.isoformat())
                return cached, True
            logger.error("Could not fetch index for %s and no cache exists: %s", repo.name, exc)
            return None, False

        fresh = CachedIndex(
            repo_name=repo.name,
            url=repo.url,
            fetched_at=datetime.now(timezone.utc),
            entries=entries,
        )
        try:
            self.cache.store(fresh)
        except OSError as exc:
            logger.warning("Could not write index cache for %s: %s", repo.name, exc)
        logger.info("Synced %s: %d packages", repo.name, len(entries))
        return fresh, False
