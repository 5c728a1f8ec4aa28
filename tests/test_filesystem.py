"""Tests for the filesystem integrator.

Covers:
- plan() lays packages out per profile and per version
- place() moves the artifact, links the entry point and registers desktop/icon files
- placing an identical artifact again changes nothing
- rollback restores files a placement replaced
- remove() is idempotent, keeps going past missing paths, honours keep and
  leaves entry points that point elsewhere
- an entry point leading into another installed package is never replaced,
  and a package always takes its own entry point with it
- portable directories and their sibling links
"""

import os
import shutil
from pathlib import Path

import pytest

from conftest import make_entry, sha256
from hoard.errors import PlacementFailure
from hoard.models.package import InstallOptions
from hoard.services.acquisition import StagedArtifact
from hoard.services.filesystem import BACKUP_SUFFIX, rewrite_desktop_entry

DESKTOP = "[Desktop Entry]\nName=App\nExec=app %U\nTryExec=app\nIcon=app\n"


def _stage(settings, entry, data: bytes, **assets: bytes) -> StagedArtifact:
    settings.staging_dir.mkdir(parents=True, exist_ok=True)
    path = settings.staging_dir / f"{entry.pkg_id}-{entry.version}"
    path.write_bytes(data)
    staged = StagedArtifact(entry=entry, path=path, checksum=f"sha256:{sha256(data)}")
    for kind, content in assets.items():
        suffix = {"icon": ".png", "desktop": ".desktop", "appstream": ".xml"}[kind]
        asset = settings.staging_dir / f"{entry.pkg_id}.{kind}{suffix}"
        asset.write_bytes(content)
        staged.assets[kind] = asset
    return staged


def test_plan_layout(integrator, remote, settings):
    entry = make_entry(remote, "org.app", version="2.1", name="app", desktop_url="https://repo.test/app.desktop")
    layout = integrator.plan(entry, "nightly")

    assert layout.install_dir.parent == settings.packages_dir("nightly")
    assert layout.install_dir.name.startswith("org.app-2.1-")
    assert layout.artifact_path == layout.install_dir / "app.AppImage"
    assert layout.bin_path == settings.bin_dir("nightly") / "app"
    assert layout.desktop_path == settings.desktop_dir / "org.app-nightly.desktop"
    assert layout.icon_path is None
    assert not layout.has_portable


def test_place_registers_everything(integrator, remote, settings):
    entry = make_entry(
        remote, "app", data=b"binary",
        icon_url="https://repo.test/app.png", desktop_url="https://repo.test/app.desktop",
    )
    layout = integrator.plan(entry, "default")
    staged = _stage(settings, entry, b"binary", icon=b"png", desktop=DESKTOP.encode())

    placement = integrator.place(layout, staged)
    placement.finalize()

    assert layout.artifact_path.read_bytes() == b"binary"
    assert os.access(layout.artifact_path, os.X_OK)
    assert layout.bin_path.is_symlink()
    assert layout.bin_path.resolve() == layout.artifact_path.resolve()
    assert layout.icon_path.read_bytes() == b"png"
    desktop = layout.desktop_path.read_text()
    assert f"Exec={layout.bin_path} %U" in desktop
    assert f"TryExec={layout.bin_path}" in desktop
    assert f"Icon={layout.icon_path}" in desktop
    assert not staged.path.exists()
    assert not any(p.exists() for p in staged.assets.values())


def test_place_identical_is_noop(integrator, remote, settings):
    entry = make_entry(remote, "app", data=b"binary")
    layout = integrator.plan(entry, "default")
    integrator.place(layout, _stage(settings, entry, b"binary")).finalize()
    mtime = layout.artifact_path.stat().st_mtime_ns

    again = _stage(settings, entry, b"binary")
    placement = integrator.place(integrator.plan(entry, "default"), again)

    assert placement.changed is False
    assert layout.artifact_path.stat().st_mtime_ns == mtime
    assert not again.path.exists()


def test_rollback_restores_previous_version(integrator, remote, settings):
    old = make_entry(remote, "app", version="1.0", data=b"v1", desktop_url="https://repo.test/app.desktop")
    new = make_entry(remote, "app", version="2.0", data=b"v2", desktop_url="https://repo.test/app.desktop")
    old_layout = integrator.plan(old, "default")
    integrator.place(old_layout, _stage(settings, old, b"v1", desktop=b"[Desktop Entry]\nExec=v1\n")).finalize()
    old_desktop = old_layout.desktop_path.read_text()

    new_layout = integrator.plan(new, "default")
    placement = integrator.place(
        new_layout,
        _stage(settings, new, b"v2", desktop=b"[Desktop Entry]\nExec=v2\n"),
        replaces=old_layout.install_dir,
    )
    assert new_layout.bin_path.resolve() == new_layout.artifact_path.resolve()

    assert placement.rollback() == []

    assert not new_layout.install_dir.exists()
    assert old_layout.bin_path.resolve() == old_layout.artifact_path.resolve()
    assert old_layout.desktop_path.read_text() == old_desktop
    assert not list(settings.desktop_dir.glob(f"*{BACKUP_SUFFIX}"))


def test_finalize_deletes_backups(integrator, remote, settings):
    old = make_entry(remote, "app", version="1.0", data=b"v1")
    new = make_entry(remote, "app", version="2.0", data=b"v2")
    old_layout = integrator.plan(old, "default")
    integrator.place(old_layout, _stage(settings, old, b"v1")).finalize()
    integrator.place(
        integrator.plan(new, "default"), _stage(settings, new, b"v2"), replaces=old_layout.install_dir
    ).finalize()

    assert not list(settings.bin_dir("default").glob(f"*{BACKUP_SUFFIX}"))


def test_refuses_to_replace_regular_file(integrator, remote, settings):
    entry = make_entry(remote, "app", data=b"binary")
    layout = integrator.plan(entry, "default")
    layout.bin_path.parent.mkdir(parents=True)
    layout.bin_path.write_text("user script")

    with pytest.raises(PlacementFailure) as exc_info:
        integrator.place(layout, _stage(settings, entry, b"binary"))

    assert exc_info.value.exit_code == 14
    assert layout.bin_path.read_text() == "user script"
    assert not layout.install_dir.exists()


def test_remove_is_idempotent(integrator, remote, settings):
    entry = make_entry(remote, "app", data=b"binary", desktop_url="https://repo.test/app.desktop")
    layout = integrator.plan(entry, "default")
    integrator.place(layout, _stage(settings, entry, b"binary", desktop=DESKTOP.encode())).finalize()
    layout.desktop_path.unlink()

    first = integrator.remove(layout)
    assert first.ok
    assert str(layout.desktop_path) in first.missing
    assert not layout.install_dir.exists()
    assert not layout.bin_path.is_symlink()

    second = integrator.remove(layout)
    assert second.ok
    assert second.removed == []


def test_remove_leaves_foreign_entry_point_and_kept_paths(integrator, remote, settings):
    old = make_entry(remote, "app", version="1.0", data=b"v1", desktop_url="https://repo.test/app.desktop")
    new = make_entry(remote, "app", version="2.0", data=b"v2", desktop_url="https://repo.test/app.desktop")
    old_layout = integrator.plan(old, "default")
    integrator.place(old_layout, _stage(settings, old, b"v1", desktop=DESKTOP.encode())).finalize()
    new_layout = integrator.plan(new, "default")
    integrator.place(
        new_layout, _stage(settings, new, b"v2", desktop=DESKTOP.encode()), replaces=old_layout.install_dir
    ).finalize()

    outcome = integrator.remove(old_layout, keep={str(new_layout.desktop_path)})

    assert outcome.ok
    assert not old_layout.install_dir.exists()
    assert new_layout.bin_path.resolve() == new_layout.artifact_path.resolve()
    assert new_layout.desktop_path.exists()


def test_refuses_entry_point_of_another_package(integrator, remote, settings):
    foo = make_entry(remote, "foo", repo="main", name="tool")
    bar = make_entry(remote, "bar", repo="extra", name="tool")
    foo_layout = integrator.plan(foo, "default")
    integrator.place(foo_layout, _stage(settings, foo, b"main:foo:1.0.0")).finalize()
    bar_layout = integrator.plan(bar, "default")
    assert bar_layout.bin_path == foo_layout.bin_path

    with pytest.raises(PlacementFailure) as exc_info:
        integrator.place(bar_layout, _stage(settings, bar, b"extra:bar:1.0.0"))

    assert str(foo_layout.bin_path) in exc_info.value.paths
    assert foo_layout.bin_path.resolve() == foo_layout.artifact_path.resolve()
    assert not bar_layout.install_dir.exists()


def test_takes_over_dangling_entry_point(integrator, remote, settings):
    foo = make_entry(remote, "foo", repo="main", name="tool")
    bar = make_entry(remote, "bar", repo="extra", name="tool")
    foo_layout = integrator.plan(foo, "default")
    integrator.place(foo_layout, _stage(settings, foo, b"main:foo:1.0.0")).finalize()
    shutil.rmtree(foo_layout.install_dir)

    bar_layout = integrator.plan(bar, "default")
    integrator.place(bar_layout, _stage(settings, bar, b"extra:bar:1.0.0")).finalize()

    assert bar_layout.bin_path.resolve() == bar_layout.artifact_path.resolve()


def test_remove_deletes_own_entry_point_even_if_kept(integrator, remote, settings):
    entry = make_entry(remote, "app", data=b"binary")
    layout = integrator.plan(entry, "default")
    integrator.place(layout, _stage(settings, entry, b"binary")).finalize()

    outcome = integrator.remove(layout, keep={str(layout.bin_path)})

    assert outcome.ok
    assert str(layout.bin_path) in outcome.removed
    assert not layout.bin_path.is_symlink()


def test_portable_directories(integrator, remote, settings, tmp_path):
    entry = make_entry(remote, "app", data=b"binary")
    explicit = tmp_path / "my-config"
    layout = integrator.plan(entry, "default", InstallOptions(portable_home="", portable_config=str(explicit)))
    integrator.place(layout, _stage(settings, entry, b"binary")).finalize()

    assert layout.portable_home == settings.portable_root("default") / "app" / "home"
    assert layout.portable_home.is_dir()
    assert layout.portable_config == explicit
    home_link = layout.install_dir / "app.AppImage.home"
    assert Path(os.readlink(home_link)) == layout.portable_home
    assert (layout.install_dir / "app.AppImage.config").is_symlink()

    integrator.remove(layout)
    assert not layout.portable_home.exists()
    assert not explicit.exists()


def test_relink_restores_missing_entry_point(integrator, remote, settings):
    entry = make_entry(remote, "app", data=b"binary")
    layout = integrator.plan(entry, "default")
    integrator.place(layout, _stage(settings, entry, b"binary")).finalize()
    layout.bin_path.unlink()

    assert integrator.relink(layout) is True
    assert layout.bin_path.resolve() == layout.artifact_path.resolve()
    assert integrator.relink(layout) is False


def test_rewrite_desktop_entry_without_icon():
    text = rewrite_desktop_entry("Exec=old --flag\nIcon=old\n", exec_path=Path("/b/app"), icon_path=None)
    assert text == "Exec=/b/app --flag\nIcon=old\n"
