"""Host preflight checks."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .runtime_paths import FS_BINARY_ENV, get_fs_binary

FUSE_DEVICE = Path("/dev/fuse")


def required_executables(fs_binary: str | None = None) -> tuple[str, ...]:
    """Return executables zbundle shells out to."""
    return ("mountpoint", "fusermount", get_fs_binary(fs_binary))


@dataclass(frozen=True)
class HostCheckResult:
    missing_executables: list[str]
    is_root: bool
    fuse_available: bool

    @property
    def ok(self) -> bool:
        return not self.missing_executables and self.is_root and self.fuse_available


def _is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


def check_host(fs_binary: str | None = None) -> HostCheckResult:
    """Check that host prerequisites exist."""
    missing = [name for name in required_executables(fs_binary) if shutil.which(name) is None]
    return HostCheckResult(
        missing_executables=missing,
        is_root=_is_root(),
        fuse_available=FUSE_DEVICE.exists(),
    )


def assert_host_ready(fs_binary: str | None = None) -> None:
    """Raise RuntimeError when host prerequisites are missing."""
    result = check_host(fs_binary)
    if result.ok:
        return

    lines = ["zbundle host is not ready.", ""]
    if result.missing_executables:
        lines.append("Missing executables:")
        for name in result.missing_executables:
            lines.append(f"- {name}")
        lines.append("")

    if not result.is_root:
        lines.append("zbundle must run as root (bind mounts and chroot need CAP_SYS_ADMIN).")
        lines.append("")

    if not result.fuse_available:
        lines.append(f"Missing {FUSE_DEVICE}; load the fuse kernel module.")
        lines.append("")

    lines.append(f"Set `{FS_BINARY_ENV}` or pass `--fs-binary` to point at the filesystem driver.")
    raise RuntimeError("\n".join(lines))
