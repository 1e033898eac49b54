"""Interface to the external FUSE filesystem engine.

The engine serves the bundle: it reads file entries from the metadata store,
pulls content from the storage backend and keeps a local copy under the
backend directory. zbundle only needs ``mount``/``unmount``/``wait`` from it.
"""

from __future__ import annotations

import collections
import logging
import subprocess
import threading
import time
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from . import mounts
from .errors import LocatorInvalid, MountFailed
from .runtime_paths import get_fs_binary

log = logging.getLogger("zbundle.fs")

_MOUNT_TIMEOUT_S = 30.0
_MOUNT_POLL_S = 0.1
_UNMOUNT_TIMEOUT_S = 10.0
_STOP_GRACE_S = 2.0

STORAGE_SCHEMES = frozenset({"", "file", "zdb", "zdbs", "redis", "http", "https"})


@dataclass(frozen=True)
class MetaStore:
    path: Path


@dataclass(frozen=True)
class Storage:
    url: str


@dataclass(frozen=True)
class MountOptions:
    backend: Path
    target: Path
    meta_store: MetaStore
    storage: Storage
    cache: Path


class MountHandle(Protocol):
    def unmount(self) -> None: ...

    def wait(self) -> None: ...


class Filesystem(Protocol):
    def mount(self, options: MountOptions) -> MountHandle: ...


def open_meta_store(path: str | Path) -> MetaStore:
    resolved = Path(path)
    if not resolved.is_dir():
        raise MountFailed(f"metadata store {resolved} is not a directory")
    return MetaStore(path=resolved)


def open_storage(url: str) -> Storage:
    if not isinstance(url, str) or not url.strip():
        raise LocatorInvalid("storage url must be a non-empty string")
    scheme = urllib.parse.urlparse(url).scheme
    if scheme not in STORAGE_SCHEMES:
        raise LocatorInvalid(f"unsupported storage url ({url})")
    return Storage(url=url)


@dataclass
class _DriverState:
    process: subprocess.Popen[str]
    reader_thread: threading.Thread
    recent_logs: collections.deque[str]


def _reader_loop(process: subprocess.Popen[str], recent_logs: collections.deque[str]) -> None:
    assert process.stdout is not None
    for raw_line in process.stdout:
        line = raw_line.rstrip("\r\n")
        log.debug("fs: %s", line)
        recent_logs.append(line)


def _stop_process(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=_STOP_GRACE_S)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=_STOP_GRACE_S)


def _format_recent_logs(recent_logs: collections.deque[str]) -> str:
    if not recent_logs:
        return "(no driver logs captured)"
    return "\n".join(recent_logs)


class FuseMount:
    """A running filesystem driver process serving one mountpoint."""

    def __init__(self, target: Path, state: _DriverState):
        self.target = target
        self._state = state

    def unmount(self) -> None:
        try:
            completed = subprocess.run(
                ["fusermount", "-u", "-z", str(self.target)],
                capture_output=True,
                check=False,
                text=True,
            )
        except OSError as exc:
            raise MountFailed(f"failed to run fusermount for {self.target}: {exc}") from exc
        if completed.returncode != 0:
            raise MountFailed(
                f"failed to unmount {self.target}: {completed.stderr.strip() or completed.returncode}"
            )
        try:
            self._state.process.wait(timeout=_UNMOUNT_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            log.warning("filesystem driver for %s did not exit after unmount; stopping it", self.target)
            _stop_process(self._state.process)
        finally:
            self._close()

    def wait(self) -> None:
        code = self._state.process.wait()
        self._close()
        if code != 0:
            raise MountFailed(
                f"filesystem driver for {self.target} exited with {code}\n"
                + _format_recent_logs(self._state.recent_logs)
            )

    def _close(self) -> None:
        if self._state.reader_thread.is_alive():
            self._state.reader_thread.join(timeout=1.0)


class FuseDriver:
    """Mounts bundles by running the FUSE driver binary (``g8ufs`` by default)."""

    def __init__(
        self,
        binary: str | None = None,
        *,
        timeout_s: float = _MOUNT_TIMEOUT_S,
        is_mount: Callable[[Path], bool] = mounts.is_mount,
    ):
        self.binary = get_fs_binary(binary)
        self.timeout_s = timeout_s
        self._is_mount = is_mount

    def build_args(self, options: MountOptions) -> list[str]:
        return [
            self.binary,
            "-backend",
            str(options.backend),
            "-cache",
            str(options.cache),
            "-meta",
            str(options.meta_store.path),
            "-storage-url",
            options.storage.url,
            str(options.target),
        ]

    def mount(self, options: MountOptions) -> FuseMount:
        options.cache.mkdir(parents=True, exist_ok=True)
        options.backend.mkdir(parents=True, exist_ok=True)
        args = self.build_args(options)
        log.debug("starting filesystem driver: %s", args)
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise MountFailed(f"failed to start filesystem driver {self.binary}: {exc}") from exc

        recent_logs: collections.deque[str] = collections.deque(maxlen=200)
        thread = threading.Thread(target=_reader_loop, args=(process, recent_logs), daemon=True)
        thread.start()
        state = _DriverState(process=process, reader_thread=thread, recent_logs=recent_logs)

        try:
            self._wait_for_mount(options.target, state)
        except MountFailed:
            _stop_process(process)
            raise
        return FuseMount(options.target, state)

    def _wait_for_mount(self, target: Path, state: _DriverState) -> None:
        deadline = time.monotonic() + self.timeout_s
        while True:
            if state.process.poll() is not None:
                state.reader_thread.join(timeout=1.0)
                raise MountFailed(
                    f"filesystem driver exited before {target} was mounted.\n"
                    + _format_recent_logs(state.recent_logs)
                )
            if self._is_mount(target):
                return
            if time.monotonic() >= deadline:
                raise MountFailed(
                    f"timed out waiting for {target} to be mounted.\n"
                    + _format_recent_logs(state.recent_logs)
                )
            time.sleep(_MOUNT_POLL_S)
