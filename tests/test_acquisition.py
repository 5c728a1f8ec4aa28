"""Tests for the acquisition pipeline.

Covers:
- verified downloads are staged under their final name; no .part survives
- checksum and size mismatches (announced or counted) raise IntegrityFailure
  and are never retried
- transient failures (5xx, connection errors) are retried with exponential backoff
- HTTP 4xx, malformed URLs and unsupported protocols fail immediately
- a blake2b checksum is verified like sha256
- optional assets that cannot be fetched only warn
- concurrency never exceeds parallel_limit
- cancellation discards everything already staged
"""

import asyncio
import hashlib

import httpx
import pytest

from conftest import make_entry, sha256
from hoard.errors import AcquisitionFailure, IntegrityFailure
from hoard.services.acquisition import PART_SUFFIX, AcquisitionPipeline
from hoard.transport import HttpTransport, is_transient


def _staged_files(settings):
    if not settings.staging_dir.exists():
        return []
    return sorted(p.name for p in settings.staging_dir.iterdir())


@pytest.mark.asyncio
async def test_download_is_verified_and_staged(pipeline, remote, settings):
    entry = make_entry(remote, "jq", data=b"jq-binary")

    [outcome] = await pipeline.acquire([entry])

    assert outcome.ok
    assert outcome.staged.path.read_bytes() == b"jq-binary"
    assert outcome.staged.checksum == f"sha256:{sha256(b'jq-binary')}"
    assert not any(name.endswith(PART_SUFFIX) for name in _staged_files(settings))


@pytest.mark.asyncio
async def test_checksum_mismatch_is_not_retried(pipeline, remote, settings, sleeps):
    entry = make_entry(remote, "jq", data=b"expected")
    remote.files[entry.download_url] = b"tampered"

    [outcome] = await pipeline.acquire([entry])

    assert isinstance(outcome.error, IntegrityFailure)
    assert outcome.error.exit_code == 13
    assert remote.count(entry.download_url) == 1
    assert sleeps == []
    assert _staged_files(settings) == []


@pytest.mark.asyncio
async def test_announced_size_mismatch_fails_before_reading(pipeline, remote, settings):
    entry = make_entry(remote, "jq", data=b"12345")
    remote.files[entry.download_url] = b"123456"

    [outcome] = await pipeline.acquire([entry])

    assert isinstance(outcome.error, IntegrityFailure)
    assert outcome.error.details["what"] == "announced size"
    assert outcome.error.actual == "6"
    assert _staged_files(settings) == []


@pytest.mark.asyncio
async def test_size_mismatch_without_content_length(remote, settings):
    entry = make_entry(remote, "jq", data=b"12345")

    async def body():
        yield b"123"
        yield b"456"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    transport = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    pipeline = AcquisitionPipeline(transport, settings.staging_dir)
    try:
        [outcome] = await pipeline.acquire([entry])
    finally:
        await transport.aclose()

    assert isinstance(outcome.error, IntegrityFailure)
    assert outcome.error.details["what"] == "size"
    assert _staged_files(settings) == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(pipeline, remote, sleeps):
    entry = make_entry(remote, "jq")
    remote.fail(entry.download_url, 503, httpx.ConnectError)

    [outcome] = await pipeline.acquire([entry])

    assert outcome.ok
    assert remote.count(entry.download_url) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retries_exhausted(pipeline, remote, sleeps):
    entry = make_entry(remote, "jq")
    remote.fail(entry.download_url, httpx.ReadTimeout, httpx.ReadTimeout, httpx.ReadTimeout)

    [outcome] = await pipeline.acquire([entry])

    assert isinstance(outcome.error, AcquisitionFailure)
    assert outcome.error.attempts == 3
    assert outcome.error.stage == "staging"
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_client_error_is_permanent(pipeline, remote, sleeps):
    entry = make_entry(remote, "jq")
    remote.fail(entry.download_url, 403)

    [outcome] = await pipeline.acquire([entry])

    assert isinstance(outcome.error, AcquisitionFailure)
    assert remote.count(entry.download_url) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_malformed_url_is_permanent(pipeline, remote, sleeps):
    entry = make_entry(remote, "jq").model_copy(update={"download_url": "https://repo.test/j\x00q"})

    [outcome] = await pipeline.acquire([entry])

    assert isinstance(outcome.error, AcquisitionFailure)
    assert outcome.error.attempts == 1
    assert sleeps == []


def test_unsupported_protocol_is_not_transient():
    assert not is_transient(httpx.UnsupportedProtocol("ftp"))
    assert is_transient(httpx.ConnectError("refused"))


@pytest.mark.asyncio
async def test_blake2b_checksum_is_verified(pipeline, remote):
    entry = make_entry(remote, "jq", data=b"jq-binary")
    entry = entry.model_copy(update={"checksum": f"blake2b:{hashlib.blake2b(b'jq-binary').hexdigest()}"})

    [outcome] = await pipeline.acquire([entry])

    assert outcome.ok
    assert outcome.staged.checksum.startswith("blake2b:")


@pytest.mark.asyncio
async def test_unknown_checksum_algorithm(pipeline, remote):
    entry = make_entry(remote, "jq").model_copy(update={"checksum": "md5:abcdef0123"})
    [outcome] = await pipeline.acquire([entry])
    assert isinstance(outcome.error, IntegrityFailure)
    assert remote.count(entry.download_url) == 0


@pytest.mark.asyncio
async def test_missing_optional_assets_only_warn(pipeline, remote):
    icon = remote.add("main/jq.png", b"png")
    entry = make_entry(
        remote,
        "jq",
        icon_url=icon,
        desktop_url="https://repo.test/main/missing.desktop",
    )

    [outcome] = await pipeline.acquire([entry])

    assert outcome.ok
    assert set(outcome.staged.assets) == {"icon"}
    assert outcome.staged.assets["icon"].suffix == ".png"


@pytest.mark.asyncio
async def test_outcomes_keep_input_order(pipeline, remote):
    good = make_entry(remote, "good")
    bad = make_entry(remote, "bad")
    remote.fail(bad.download_url, 404)

    outcomes = await pipeline.acquire([bad, good])

    assert [o.entry.pkg_id for o in outcomes] == ["bad", "good"]
    assert [o.ok for o in outcomes] == [False, True]


@pytest.mark.asyncio
async def test_parallelism_is_bounded(remote, settings):
    active = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return remote.handler(request)

    transport = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    pipeline = AcquisitionPipeline(transport, settings.staging_dir, parallel_limit=2)
    entries = [make_entry(remote, f"pkg{i}") for i in range(5)]
    try:
        outcomes = await pipeline.acquire(entries)
    finally:
        await transport.aclose()

    assert all(o.ok for o in outcomes)
    assert peak == 2


@pytest.mark.asyncio
async def test_cancellation_discards_staged_files(remote, settings):
    release = asyncio.Event()
    fast = make_entry(remote, "fast")
    slow = make_entry(remote, "slow")

    async def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == slow.download_url:
            await release.wait()
        return remote.handler(request)

    transport = HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    pipeline = AcquisitionPipeline(transport, settings.staging_dir, parallel_limit=2)
    task = asyncio.create_task(pipeline.acquire([fast, slow]))
    try:
        for _ in range(200):
            if _staged_files(settings):
                break
            await asyncio.sleep(0.01)
        assert _staged_files(settings)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    finally:
        await transport.aclose()

    assert _staged_files(settings) == []
