"""Runtime path helpers for zbundle."""

from __future__ import annotations

import os
from pathlib import Path

HOME_DIR_ENV = "ZBUNDLE_HOME"
FS_BINARY_ENV = "ZBUNDLE_FS_BINARY"
DEFAULT_FS_BINARY = "g8ufs"

MOUNT_DIR_NAME = ".zbundle"
WORK_DIR_NAME = ".zbundle.wd"
CACHE_DIR_NAME = ".zbundle.cache"


def get_home_dir(home: str | Path | None = None) -> Path:
    """Return the directory bundle paths are rooted at.

    Priority order:
    1) explicit ``home`` argument
    2) ``ZBUNDLE_HOME`` environment variable
    3) the invoking user's home directory

    A host where the user's home cannot be resolved is broken; the
    ``RuntimeError`` from :meth:`Path.home` is left to propagate.
    """
    if home is not None:
        return Path(home).expanduser().resolve()

    override = os.environ.get(HOME_DIR_ENV)
    if override:
        return Path(override).expanduser().resolve()

    return Path.home().resolve()


def get_fs_binary(binary: str | None = None) -> str:
    if binary:
        return binary
    return os.environ.get(FS_BINARY_ENV) or DEFAULT_FS_BINARY


def mount_root(bundle_id: str, home: str | Path | None = None) -> Path:
    return get_home_dir(home) / MOUNT_DIR_NAME / bundle_id


def work_root(bundle_id: str, home: str | Path | None = None) -> Path:
    return get_home_dir(home) / WORK_DIR_NAME / bundle_id


def cache_root(home: str | Path | None = None) -> Path:
    return get_home_dir(home) / CACHE_DIR_NAME


def meta_dir(bundle_id: str, home: str | Path | None = None) -> Path:
    """Return ``<work_root>.db``, the transient metadata directory."""
    work = work_root(bundle_id, home)
    return work.with_name(f"{work.name}.db")
