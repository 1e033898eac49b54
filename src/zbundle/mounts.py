"""Host mount primitives (Linux only)."""

from __future__ import annotations

import ctypes
import ctypes.util
import functools
import logging
import os
import subprocess
from pathlib import Path

log = logging.getLogger("zbundle.mounts")

MS_BIND = 0x1000
MNT_FORCE = 0x1
MNT_DETACH = 0x2

_PROBE_TIMEOUT_S = 10.0


@functools.lru_cache(maxsize=1)
def _libc() -> ctypes.CDLL:
    libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
    libc.mount.argtypes = [
        ctypes.c_char_p,
        ctypes.c_char_p,
        ctypes.c_char_p,
        ctypes.c_ulong,
        ctypes.c_char_p,
    ]
    libc.mount.restype = ctypes.c_int
    libc.umount2.argtypes = [ctypes.c_char_p, ctypes.c_int]
    libc.umount2.restype = ctypes.c_int
    return libc


def _raise_errno(target: str | Path) -> None:
    errno = ctypes.get_errno()
    raise OSError(errno, os.strerror(errno), str(target))


def bind_mount(source: str | Path, target: str | Path) -> None:
    """Bind ``source`` onto ``target``; raises ``OSError`` on failure."""
    ret = _libc().mount(os.fsencode(source), os.fsencode(target), None, MS_BIND, None)
    if ret != 0:
        _raise_errno(target)


def unmount(target: str | Path, flags: int = 0) -> None:
    ret = _libc().umount2(os.fsencode(target), flags)
    if ret != 0:
        _raise_errno(target)


def force_unmount(target: str | Path) -> None:
    unmount(target, MNT_FORCE | MNT_DETACH)


def is_mount(path: str | Path) -> bool:
    """Return whether ``path`` is currently a mountpoint.

    Asks ``mountpoint -q`` so bind mounts on the same device are detected.
    This is advisory: the answer can be stale by the time it is used, and a
    failing probe reports ``False``.
    """
    try:
        completed = subprocess.run(
            ["mountpoint", "-q", str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
            timeout=_PROBE_TIMEOUT_S,
        )
    except FileNotFoundError:
        log.debug("mountpoint binary missing; falling back to os.path.ismount")
        return os.path.ismount(path)
    except subprocess.TimeoutExpired:
        return False
    return completed.returncode == 0
