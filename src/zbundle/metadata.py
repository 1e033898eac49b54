"""Materialize an flist metadata archive into a local directory."""

from __future__ import annotations

import logging
import shutil
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Any

from .errors import MaterializeFailed

log = logging.getLogger("zbundle.metadata")

_COPY_BUFSIZE = 64 * 1024


def meta_dir_for(namespace: str | Path) -> Path:
    namespace = Path(namespace)
    return namespace.with_name(f"{namespace.name}.db")


def _safe_rel(name: str) -> Path | None:
    posix = PurePosixPath(name)
    parts = []
    for part in posix.parts:
        if part in {"", ".", "/"}:
            continue
        if part == "..":
            return None
        parts.append(part)
    if not parts:
        return None
    return Path(*parts)


def _write_member(archive: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    handle = archive.extractfile(member)
    with target.open("wb") as out:
        if handle is None:
            return
        with handle:
            shutil.copyfileobj(handle, out, _COPY_BUFSIZE)


def materialize(namespace: str | Path, stream: Any) -> Path:
    """Extract the tar ``stream`` into ``<namespace>.db`` and return that path.

    Directory entries are skipped; parents are created on demand for file
    entries. On failure the partially written directory is left behind and
    :class:`MaterializeFailed` is raised. ``stream`` is closed either way.
    """
    db = meta_dir_for(namespace)
    with stream:
        try:
            db.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise MaterializeFailed(f"cannot create meta directory {db}: {exc}") from exc

        files = 0
        try:
            with tarfile.open(fileobj=stream, mode="r|") as archive:
                for member in archive:
                    if member.isdir():
                        continue
                    if not member.isreg():
                        log.debug("skipping non-regular entry %s", member.name)
                        continue
                    rel = _safe_rel(member.name)
                    if rel is None:
                        raise MaterializeFailed(f"refusing to extract unsafe entry {member.name!r} into {db}")
                    _write_member(archive, member, db / rel)
                    files += 1
        except (tarfile.TarError, OSError, EOFError, zlib.error) as exc:
            raise MaterializeFailed(f"failed to extract flist metadata into {db}: {exc}") from exc

    log.debug("materialized %d file(s) into %s", files, db)
    return db
