from __future__ import annotations

import io
import tarfile

import pytest


def build_tar(files: dict[str, bytes], *, dirs: tuple[str, ...] = ()) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.USTAR_FORMAT) as archive:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            archive.addfile(info)
        for name, payload in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


class CloseCounter(io.BytesIO):
    """In-memory reader that records how often it was closed."""

    def __init__(self, data: bytes = b""):
        super().__init__(data)
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        super().close()


@pytest.fixture()
def sample_tar() -> bytes:
    return build_tar(
        {
            "a/b/c.txt": b"payload",
            "root.db": b"\x00\x01\x02metadata",
        },
        dirs=("a", "a/b", "empty"),
    )
