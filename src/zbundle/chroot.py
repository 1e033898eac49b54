"""Bundle lifecycle: fetch, mount, integrate with the host, tear down."""

from __future__ import annotations

import contextlib
import logging
import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import archive, fs, metadata, mounts, runtime_paths
from .errors import AlreadyRunning, MaterializeFailed, MountFailed, NotRunning

log = logging.getLogger("zbundle.chroot")

HOST_BINDS = ("proc", "dev", "sys")
HOST_RESOLV_CONF = Path("/etc/resolv.conf")


@dataclass(frozen=True)
class BundleSpec:
    id: str
    flist: str
    storage: str

    def validate(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ValueError("`id` must be a non-empty string.")
        if self.id in {".", ".."} or "/" in self.id or "\0" in self.id:
            raise ValueError(f"`id` must be usable as a single path component, got: {self.id!r}")
        if not isinstance(self.flist, str) or not self.flist.strip():
            raise ValueError("`flist` must be a non-empty string.")
        if not isinstance(self.storage, str) or not self.storage.strip():
            raise ValueError("`storage` must be a non-empty string.")


@contextlib.contextmanager
def _best_effort(action: str) -> Iterator[None]:
    """Run a step whose failure must not abort the caller; log it instead."""
    try:
        yield
    except OSError as exc:
        log.warning("%s failed (ignored): %s", action, exc)


class Chroot:
    """One mounted bundle, rooted at ``<home>/.zbundle/<id>``.

    ``start``/``stop``/``wait`` are not synchronized; callers serialize them.
    Two controllers sharing an id at the same time is not supported: the
    mountpoint check in :meth:`start` is advisory and can race.
    """

    def __init__(
        self,
        spec: BundleSpec,
        *,
        home: str | Path | None = None,
        filesystem: fs.Filesystem | None = None,
        is_mount: Callable[[Path], bool] | None = None,
    ):
        spec.validate()
        self.spec = spec
        self.home = runtime_paths.get_home_dir(home)
        self.filesystem = filesystem or fs.FuseDriver()
        self._is_mount = is_mount or mounts.is_mount
        self._handle: fs.MountHandle | None = None

    def __enter__(self) -> "Chroot":
        try:
            self.start()
        except BaseException:
            # __exit__ is not called when __enter__ raises.
            if self.is_running:
                self.stop()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.is_running:
            self.stop()
        return None

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    def mount_root(self) -> Path:
        return runtime_paths.mount_root(self.spec.id, self.home)

    def work_root(self) -> Path:
        return runtime_paths.work_root(self.spec.id, self.home)

    def cache_root(self) -> Path:
        return runtime_paths.cache_root(self.home)

    def meta_dir(self) -> Path:
        return runtime_paths.meta_dir(self.spec.id, self.home)

    def start(self) -> None:
        root = self.mount_root()
        if self._is_mount(root):
            raise AlreadyRunning(f"a chroot is running with the same id ({self.spec.id})")

        root.mkdir(mode=0o755, parents=True, exist_ok=True)
        namespace = self.work_root()

        # Metadata is always fetched fresh; a leftover directory can only come
        # from a run that failed or crashed before stop().
        stale = self.meta_dir()
        if stale.exists():
            log.info("removing stale metadata directory %s", stale)
            try:
                shutil.rmtree(stale)
            except OSError as exc:
                raise MaterializeFailed(f"cannot remove stale metadata {stale}: {exc}") from exc

        log.info("fetching flist %s", self.spec.flist)
        meta_path = metadata.materialize(namespace, archive.fetch(self.spec.flist))
        meta_store = fs.open_meta_store(meta_path)
        storage = fs.open_storage(self.spec.storage)

        options = fs.MountOptions(
            backend=namespace,
            target=root,
            meta_store=meta_store,
            storage=storage,
            cache=self.cache_root(),
        )
        log.info("mounting bundle %s at %s", self.spec.id, root)
        try:
            handle = self.filesystem.mount(options)
        except OSError as exc:
            raise MountFailed(f"failed to mount {root}: {exc}") from exc

        self._handle = handle
        self._prepare()

    def stop(self) -> None:
        handle = self._handle
        if handle is None:
            raise NotRunning(f"chroot {self.spec.id} is not started")

        # Only the metadata directory is removed; the work directory keeps
        # downloaded content so the bundle can be resumed.
        try:
            self._unprepare()
            log.info("unmounting bundle %s", self.spec.id)
            handle.unmount()
        finally:
            shutil.rmtree(self.meta_dir(), ignore_errors=True)
        self._handle = None

    def wait(self) -> None:
        """Block until the filesystem engine terminates."""
        if self._handle is None:
            raise NotRunning(f"chroot {self.spec.id} is not started")
        self._handle.wait()

    def _prepare(self) -> None:
        root = self.mount_root()
        for name in HOST_BINDS:
            target = root / name
            source = Path("/") / name
            try:
                target.mkdir(mode=0o755, parents=True, exist_ok=True)
                mounts.bind_mount(source, target)
            except OSError as exc:
                raise MountFailed(f"failed to bind {source} on {target}: {exc}") from exc

        with _best_effort("copying host resolv.conf"):
            etc = root / "etc"
            etc.mkdir(mode=0o755, parents=True, exist_ok=True)
            shutil.copyfile(HOST_RESOLV_CONF, etc / "resolv.conf")

    def _unprepare(self) -> None:
        root = self.mount_root()
        for name in HOST_BINDS:
            with _best_effort(f"unmounting {root / name}"):
                mounts.force_unmount(root / name)
