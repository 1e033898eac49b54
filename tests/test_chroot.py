from __future__ import annotations

from pathlib import Path

import pytest

import zbundle.chroot as chroot_module
import zbundle.mounts as mounts
from conftest import build_tar
from zbundle.chroot import BundleSpec, Chroot
from zbundle.errors import AlreadyRunning, MaterializeFailed, MountFailed, NotFound, NotRunning
from zbundle.fs import MountOptions


class FakeHandle:
    def __init__(self, unmount_error: Exception | None = None, wait_error: Exception | None = None):
        self.unmount_error = unmount_error
        self.wait_error = wait_error
        self.unmounted = 0
        self.waited = 0

    def unmount(self) -> None:
        self.unmounted += 1
        if self.unmount_error is not None:
            raise self.unmount_error

    def wait(self) -> None:
        self.waited += 1
        if self.wait_error is not None:
            raise self.wait_error


class FakeFilesystem:
    def __init__(self, handle: FakeHandle | None = None, error: Exception | None = None):
        self.handle = handle or FakeHandle()
        self.error = error
        self.options: list[MountOptions] = []

    def mount(self, options: MountOptions) -> FakeHandle:
        self.options.append(options)
        if self.error is not None:
            raise self.error
        return self.handle


@pytest.fixture()
def binds(monkeypatch, tmp_path: Path) -> dict[str, list[Path]]:
    calls: dict[str, list[Path]] = {"bind": [], "unmount": []}
    monkeypatch.setattr(mounts, "bind_mount", lambda source, target: calls["bind"].append(Path(target)))
    monkeypatch.setattr(mounts, "force_unmount", lambda target: calls["unmount"].append(Path(target)))
    resolv = tmp_path / "host-resolv.conf"
    resolv.write_text("nameserver 10.0.0.1\n", encoding="utf-8")
    monkeypatch.setattr(chroot_module, "HOST_RESOLV_CONF", resolv)
    return calls


@pytest.fixture()
def flist(tmp_path: Path) -> Path:
    path = tmp_path / "app.tar"
    path.write_bytes(build_tar({"rocksdb/CURRENT": b"MANIFEST-000001\n"}, dirs=("rocksdb",)))
    return path


def _chroot(tmp_path: Path, flist: Path, filesystem: FakeFilesystem, *, mounted: bool = False) -> Chroot:
    return Chroot(
        BundleSpec(id="app", flist=str(flist), storage="zdb://hub.example.com:9900"),
        home=tmp_path / "home",
        filesystem=filesystem,
        is_mount=lambda path: mounted,
    )


def test_bundle_spec_rejects_unsafe_ids() -> None:
    for bad in ("", ".", "..", "a/b"):
        with pytest.raises(ValueError, match="id"):
            BundleSpec(id=bad, flist="/x.flist", storage="zdb://hub").validate()


def test_paths_follow_home(tmp_path: Path, flist: Path) -> None:
    ch = _chroot(tmp_path, flist, FakeFilesystem())
    home = (tmp_path / "home").resolve()
    assert ch.mount_root() == home / ".zbundle" / "app"
    assert ch.work_root() == home / ".zbundle.wd" / "app"
    assert ch.cache_root() == home / ".zbundle.cache"
    assert ch.meta_dir() == home / ".zbundle.wd" / "app.db"


def test_start_mounts_and_integrates(tmp_path: Path, flist: Path, binds) -> None:
    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem)

    ch.start()

    assert ch.is_running
    [options] = filesystem.options
    assert options.backend == ch.work_root()
    assert options.target == ch.mount_root()
    assert options.cache == ch.cache_root()
    assert options.meta_store.path == ch.meta_dir()
    assert options.storage.url == "zdb://hub.example.com:9900"
    assert (ch.meta_dir() / "rocksdb" / "CURRENT").read_bytes() == b"MANIFEST-000001\n"

    root = ch.mount_root()
    assert binds["bind"] == [root / "proc", root / "dev", root / "sys"]
    assert all(path.is_dir() for path in binds["bind"])
    assert (root / "etc" / "resolv.conf").read_text(encoding="utf-8") == "nameserver 10.0.0.1\n"


def test_start_fails_fast_when_already_mounted(monkeypatch, tmp_path: Path, flist: Path) -> None:
    def no_fetch(locator):
        raise AssertionError("fetch must not run")

    monkeypatch.setattr(chroot_module.archive, "fetch", no_fetch)
    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem, mounted=True)

    with pytest.raises(AlreadyRunning):
        ch.start()

    assert filesystem.options == []
    assert not ch.mount_root().exists()
    assert not ch.is_running


def test_start_propagates_fetch_errors(tmp_path: Path, binds) -> None:
    ch = _chroot(tmp_path, tmp_path / "missing.flist", FakeFilesystem())

    with pytest.raises(NotFound):
        ch.start()
    assert not ch.is_running
    assert ch.mount_root().is_dir()


def test_start_wraps_mount_os_errors(tmp_path: Path, flist: Path, binds) -> None:
    ch = _chroot(tmp_path, flist, FakeFilesystem(error=OSError("fuse: device not found")))

    with pytest.raises(MountFailed, match="device not found"):
        ch.start()
    assert not ch.is_running
    assert binds["bind"] == []


def test_start_removes_stale_metadata(tmp_path: Path, flist: Path, binds) -> None:
    ch = _chroot(tmp_path, flist, FakeFilesystem())
    stale = ch.meta_dir() / "leftover"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"partial")

    ch.start()

    assert not stale.exists()
    assert (ch.meta_dir() / "rocksdb" / "CURRENT").exists()


def test_prepare_failure_keeps_mount_for_stop(monkeypatch, tmp_path: Path, flist: Path, binds) -> None:
    attempted: list[Path] = []

    def failing_bind(source, target):
        attempted.append(Path(target))
        if Path(target).name == "dev":
            raise PermissionError(1, "Operation not permitted", str(target))

    monkeypatch.setattr(mounts, "bind_mount", failing_bind)
    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem)

    with pytest.raises(MountFailed, match="dev"):
        ch.start()

    assert [path.name for path in attempted] == ["proc", "dev"]
    assert ch.is_running
    ch.stop()
    assert filesystem.handle.unmounted == 1


def test_missing_host_resolv_conf_is_ignored(monkeypatch, tmp_path: Path, flist: Path, binds) -> None:
    monkeypatch.setattr(chroot_module, "HOST_RESOLV_CONF", tmp_path / "absent")
    ch = _chroot(tmp_path, flist, FakeFilesystem())

    ch.start()

    assert (ch.mount_root() / "etc").is_dir()
    assert not (ch.mount_root() / "etc" / "resolv.conf").exists()


def test_stop_without_start_fails(tmp_path: Path, flist: Path) -> None:
    ch = _chroot(tmp_path, flist, FakeFilesystem())
    with pytest.raises(NotRunning):
        ch.stop()
    with pytest.raises(NotRunning):
        ch.wait()


def test_stop_tears_down_and_keeps_work_dir(tmp_path: Path, flist: Path, binds) -> None:
    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem)
    ch.start()
    (ch.work_root() / "content").mkdir(parents=True)

    ch.stop()

    root = ch.mount_root()
    assert binds["unmount"] == [root / "proc", root / "dev", root / "sys"]
    assert filesystem.handle.unmounted == 1
    assert not ch.meta_dir().exists()
    assert (ch.work_root() / "content").is_dir()
    assert not ch.is_running


def test_stop_ignores_bind_teardown_errors(monkeypatch, tmp_path: Path, flist: Path, binds) -> None:
    def failing_unmount(target):
        raise OSError(22, "Invalid argument", str(target))

    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem)
    ch.start()
    monkeypatch.setattr(mounts, "force_unmount", failing_unmount)

    ch.stop()

    assert filesystem.handle.unmounted == 1


def test_stop_returns_unmount_error_and_still_removes_metadata(tmp_path: Path, flist: Path, binds) -> None:
    filesystem = FakeFilesystem(handle=FakeHandle(unmount_error=MountFailed("busy")))
    ch = _chroot(tmp_path, flist, filesystem)
    ch.start()

    with pytest.raises(MountFailed, match="busy"):
        ch.stop()

    assert not ch.meta_dir().exists()
    assert ch.is_running


def test_wait_delegates_to_filesystem(tmp_path: Path, flist: Path, binds) -> None:
    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem)
    ch.start()

    ch.wait()

    assert filesystem.handle.waited == 1


def test_context_manager_starts_and_stops(tmp_path: Path, flist: Path, binds) -> None:
    filesystem = FakeFilesystem()
    with _chroot(tmp_path, flist, filesystem) as ch:
        assert ch.is_running
    assert not ch.is_running
    assert filesystem.handle.unmounted == 1


def test_wait_propagates_engine_error_unchanged(tmp_path: Path, flist: Path, binds) -> None:
    error = MountFailed("filesystem driver exited with 2")
    ch = _chroot(tmp_path, flist, FakeFilesystem(handle=FakeHandle(wait_error=error)))
    ch.start()

    with pytest.raises(MountFailed) as excinfo:
        ch.wait()

    assert excinfo.value is error
    assert ch.is_running


def test_context_manager_stops_when_start_fails_after_mount(monkeypatch, tmp_path: Path, flist: Path, binds) -> None:
    def failing_bind(source, target):
        raise PermissionError(1, "Operation not permitted", str(target))

    monkeypatch.setattr(mounts, "bind_mount", failing_bind)
    filesystem = FakeFilesystem()
    ch = _chroot(tmp_path, flist, filesystem)

    with pytest.raises(MountFailed):
        with ch:
            pass

    assert not ch.is_running
    assert filesystem.handle.unmounted == 1
    assert not ch.meta_dir().exists()


def test_start_wraps_stale_metadata_removal_errors(monkeypatch, tmp_path: Path, flist: Path, binds) -> None:
    ch = _chroot(tmp_path, flist, FakeFilesystem())
    ch.meta_dir().mkdir(parents=True)

    def failing_rmtree(path, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(chroot_module.shutil, "rmtree", failing_rmtree)

    with pytest.raises(MaterializeFailed, match="stale metadata") as excinfo:
        ch.start()

    assert isinstance(excinfo.value.__cause__, PermissionError)
    assert not ch.is_running
