"""Acquisition pipeline: concurrent, verified downloads into staging.

Each attempt streams into ``<staging>/<pkg_id>-<unique>.part`` while hashing,
checks the byte count and the checksum, and only then renames the file to its
staged name. A ``.part`` file never survives its attempt, so an interrupted
download cannot be mistaken for a verified one.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from hoard.errors import AcquisitionFailure, HoardError, IntegrityFailure
from hoard.models.package import IndexEntry
from hoard.services.id_generator import generate_id, safe_name
from hoard.services.integrity import format_checksum, new_hasher, parse_checksum
from hoard.transport import FETCH_ERRORS, HttpTransport, is_transient

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"

# asset kind -> default file suffix
_ASSET_SUFFIXES = {
    "icon": ".png",
    "desktop": ".desktop",
    "appstream": ".xml",
}


@dataclass
class StagedArtifact:
    """A verified artifact waiting in staging, plus any optional assets."""

    entry: IndexEntry
    path: Path
    checksum: str
    assets: dict[str, Path] = field(default_factory=dict)

    def paths(self) -> list[Path]:
        return [self.path, *self.assets.values()]


@dataclass
class AcquisitionOutcome:
    entry: IndexEntry
    staged: StagedArtifact | None = None
    error: HoardError | None = None

    @property
    def ok(self) -> bool:
        return self.staged is not None


class AcquisitionPipeline:
    """Downloads entries with bounded parallelism and verifies them."""

    def __init__(
        self,
        transport: HttpTransport,
        staging_dir: Path,
        parallel_limit: int = 4,
        retries: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.staging_dir = staging_dir
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self._slots = asyncio.Semaphore(parallel_limit)

    async def acquire(self, entries: list[IndexEntry]) -> list[AcquisitionOutcome]:
        """Stage every entry; one outcome per entry, in input order."""
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        tasks = [asyncio.ensure_future(self._acquire_one(entry)) for entry in entries]
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            # Entries that finished before the cancellation still hold staged files.
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is None:
                    self.discard(task.result().staged)
            raise

    def discard(self, staged: StagedArtifact | None) -> None:
        """Delete staged files. Safe to call twice."""
        if staged is None:
            return
        for path in staged.paths():
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not discard staged file %s: %s", path, exc)

    async def _acquire_one(self, entry: IndexEntry) -> AcquisitionOutcome:
        stem = f"{safe_name(entry.pkg_id)}-{generate_id('stg_')}"
        staged: StagedArtifact | None = None
        try:
            async with self._slots:
                path, checksum = await self._download_with_retry(entry, stem)
                staged = StagedArtifact(entry=entry, path=path, checksum=checksum)
                await self._stage_assets(entry, stem, staged)
            logger.info("Staged %s (%s)", entry.label, checksum)
            return AcquisitionOutcome(entry=entry, staged=staged)
        except HoardError as exc:
            self.discard(staged)
            logger.error("Acquisition failed for %s: %s", entry.label, exc.describe())
            return AcquisitionOutcome(entry=entry, error=exc)
        except asyncio.CancelledError:
            self.discard(staged)
            raise

    async def _download_with_retry(self, entry: IndexEntry, stem: str) -> tuple[Path, str]:
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._download(entry, stem)
            except IntegrityFailure:
                # Corrupt or tampered data: retrying as-is cannot help.
                raise
            except FETCH_ERRORS as exc:
                if is_transient(exc) and attempt < attempts:
                    delay = self.backoff * (2 ** (attempt - 1))
                    logger.warning(
                        "Transient error downloading %s (attempt %d/%d): %s; retrying in %.2fs",
                        entry.label, attempt, attempts, exc, delay,
                    )
                    await self._sleep(delay)
                    continue
                raise AcquisitionFailure(
                    entry.label, f"download failed: {exc}", url=entry.download_url, attempts=attempt
                ) from exc
            except OSError as exc:
                raise AcquisitionFailure(
                    entry.label, f"could not write staging file: {exc}", url=entry.download_url, attempts=attempt
                ) from exc
        raise AcquisitionFailure(entry.label, "retries exhausted", url=entry.download_url, attempts=attempts)

    async def _download(self, entry: IndexEntry, stem: str) -> tuple[Path, str]:
        try:
            algorithm, expected_digest = parse_checksum(entry.checksum)
        except ValueError as exc:
            raise IntegrityFailure(entry.label, entry.checksum, str(exc), what="checksum format") from exc
        hasher = new_hasher(algorithm)
        part = self.staging_dir / f"{stem}{PART_SUFFIX}"
        final = self.staging_dir / stem
        received = 0
        try:
            async with self.transport.stream(entry.download_url) as stream:
                if entry.size and stream.expected_size is not None and stream.expected_size != entry.size:
                    raise IntegrityFailure(
                        entry.label, str(entry.size), str(stream.expected_size), what="announced size"
                    )
                with open(part, "wb") as f:
                    async for chunk in stream.aiter_bytes():
                        received += len(chunk)
                        if entry.size and received > entry.size:
                            raise IntegrityFailure(entry.label, str(entry.size), f">{entry.size}", what="size")
                        hasher.update(chunk)
                        f.write(chunk)

            if entry.size and received != entry.size:
                raise IntegrityFailure(entry.label, str(entry.size), str(received), what="size")
            digest = hasher.hexdigest()
            if digest != expected_digest:
                raise IntegrityFailure(entry.label, expected_digest, digest)

            os.replace(part, final)
            return final, format_checksum(algorithm, digest)
        finally:
            part.unlink(missing_ok=True)

    async def _stage_assets(self, entry: IndexEntry, stem: str, staged: StagedArtifact) -> None:
        """Fetch icon/desktop/AppStream files. Failures only warn."""
        for kind, url in (("icon", entry.icon_url), ("desktop", entry.desktop_url), ("appstream", entry.appstream_url)):
            if not url:
                continue
            target = self.staging_dir / f"{stem}.{kind}{_asset_suffix(kind, url)}"
            try:
                data = await self.transport.fetch_bytes(url)
                target.write_bytes(data)
            except (*FETCH_ERRORS, OSError) as exc:
                logger.warning("Skipping %s for %s: %s", kind, entry.label, exc)
                target.unlink(missing_ok=True)
                continue
            staged.assets[kind] = target


def _asset_suffix(kind: str, url: str) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    if kind == "icon" and suffix in (".png", ".svg", ".xpm"):
        return suffix
    return _ASSET_SUFFIXES[kind]
