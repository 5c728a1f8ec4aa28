"""Shared test fixtures."""

import hashlib
import json

import httpx
import pytest
import pytest_asyncio

from hoard.config import RepositoryConfig, Settings
from hoard.db.store import StateStore
from hoard.events import RecordingEventSink
from hoard.manager import PackageManager
from hoard.models.package import IndexEntry
from hoard.services.acquisition import AcquisitionPipeline
from hoard.services.filesystem import FilesystemIntegrator
from hoard.services.installer import Installer
from hoard.services.locks import KeyedLocks, OperationLock
from hoard.services.uninstaller import Uninstaller
from hoard.transport import HttpTransport

BASE_URL = "https://repo.test"


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeRemote:
    """In-memory web server for httpx.MockTransport.

    ``fail(url, ...)`` queues responses (status codes or httpx exception
    classes) served before the real content.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.queued: dict[str, list] = {}
        self.requests: list[str] = []

    def add(self, path: str, data: bytes) -> str:
        url = f"{BASE_URL}/{path}"
        self.files[url] = data
        return url

    def fail(self, url: str, *responses) -> None:
        self.queued.setdefault(url, []).extend(responses)

    def count(self, url: str) -> int:
        return self.requests.count(url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        queued = self.queued.get(url)
        if queued:
            item = queued.pop(0)
            if isinstance(item, int):
                return httpx.Response(item)
            raise item("simulated failure", request=request)
        if url not in self.files:
            return httpx.Response(404)
        return httpx.Response(200, content=self.files[url])

    def publish(self, repo: str, entries: list[IndexEntry]) -> str:
        """Serve a flat index for *repo* and return its URL."""
        document = [e.model_dump(mode="json", exclude={"repo_name"}) for e in entries]
        return self.add(f"{repo}/index.json", json.dumps(document).encode())


def make_entry(
    remote: FakeRemote,
    pkg_id: str = "app",
    version: str = "1.0.0",
    repo: str = "main",
    name: str | None = None,
    data: bytes | None = None,
    **extra,
) -> IndexEntry:
    """An index entry whose artifact *remote* serves."""
    data = data if data is not None else f"{repo}:{pkg_id}:{version}".encode()
    url = remote.add(f"{repo}/{pkg_id}-{version}.AppImage", data)
    return IndexEntry(
        repo_name=repo,
        pkg=f"{name or pkg_id}.AppImage",
        pkg_id=pkg_id,
        pkg_name=name or pkg_id,
        version=version,
        checksum=f"sha256:{sha256(data)}",
        size=len(data),
        download_url=url,
        **extra,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        cache_dir=tmp_path / "cache",
        desktop_dir=tmp_path / "applications",
        icons_dir=tmp_path / "icons",
        appstream_dir=tmp_path / "metainfo",
        config_file=tmp_path / "config.toml",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'hoard.db'}",
        default_profile="default",
        parallel_limit=2,
        download_retries=2,
        retry_backoff=0.5,
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest_asyncio.fixture
async def transport(remote):
    t = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(remote.handler)))
    yield t
    await t.aclose()


@pytest_asyncio.fixture
async def store(settings):
    """File-backed SQLite store with all tables created."""
    s = StateStore(settings.effective_database_url)
    await s.initialize()
    yield s
    await s.dispose()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the pipeline (nothing actually sleeps)."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def pipeline(transport, settings, fake_sleep) -> AcquisitionPipeline:
    return AcquisitionPipeline(
        transport,
        settings.staging_dir,
        parallel_limit=settings.parallel_limit,
        retries=settings.download_retries,
        backoff=settings.retry_backoff,
        sleep=fake_sleep,
    )


@pytest.fixture
def integrator(settings) -> FilesystemIntegrator:
    return FilesystemIntegrator(settings)


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def oplock(settings) -> OperationLock:
    return OperationLock(settings.lock_file, poll_interval=0.01)


@pytest.fixture
def installer(store, pipeline, integrator, locks, sink, oplock) -> Installer:
    return Installer(store, pipeline, integrator, locks, sink, oplock)


@pytest.fixture
def uninstaller(store, integrator, settings, locks, installer, oplock) -> Uninstaller:
    return Uninstaller(store, integrator, settings, locks, installer, oplock)


@pytest.fixture
def repositories() -> list[RepositoryConfig]:
    return [
        RepositoryConfig(name="main", url=f"{BASE_URL}/main/index.json"),
        RepositoryConfig(name="extra", url=f"{BASE_URL}/extra/index.json"),
    ]


@pytest_asyncio.fixture
async def manager(settings, repositories, transport, sink, fake_sleep):
    m = PackageManager(settings, repositories, transport=transport, sink=sink, sleep=fake_sleep)
    await m.open()
    yield m
    await m.close()
