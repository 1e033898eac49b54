"""Run the bundle entry point inside a chroot and capture its output."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable

from .errors import NotStarted, ProcessError

log = logging.getLogger("zbundle.sandbox")

ENV_FILE = "/etc/env"
ENTRY_POINT = "/etc/start"

# Bytes of stdout/stderr kept from the sandbox (tail).
BUFFER_SIZE = 32 * 1024

_CHUNK_SIZE = 64 * 1024


def parse_env(lines: Iterable[str]) -> list[str]:
    env: list[str] = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        env.append(line)
    return env


def environ(root: str | Path) -> list[str]:
    """Return the ``KEY=VALUE`` lines of ``<root>/etc/env`` (empty if missing)."""
    name = Path(root) / ENV_FILE.lstrip("/")
    log.debug("opening file: %s", name)
    try:
        with name.open("r", encoding="utf-8", errors="surrogateescape") as handle:
            return parse_env(handle)
    except FileNotFoundError:
        return []


def _env_mapping(env: Sequence[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for entry in env:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            log.warning("ignoring malformed environment entry %r", entry)
            continue
        mapping[key] = value
    return mapping


class TailBuffer:
    """Byte sink that keeps only the last ``size`` bytes written."""

    def __init__(self, size: int = BUFFER_SIZE):
        if size <= 0:
            raise ValueError("`size` must be positive.")
        self.size = size
        self._data = bytearray()

    def write(self, data: bytes) -> int:
        if len(data) >= self.size:
            self._data[:] = data[-self.size :]
        else:
            self._data += data
            overflow = len(self._data) - self.size
            if overflow > 0:
                del self._data[:overflow]
        return len(data)

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)


@dataclass(frozen=True)
class RunResult:
    stdout: bytes
    stderr: bytes
    exit_code: int


def _make_preexec(root: str) -> Callable[[], None]:
    def enter_root() -> None:
        os.chroot(root)
        os.chdir("/")

    return enter_root


def _binary_stream(stream: object) -> BinaryIO | None:
    return getattr(stream, "buffer", None)


def _pump(source: BinaryIO, forward: BinaryIO | None, tail: TailBuffer) -> None:
    with source:
        while True:
            chunk = source.read1(_CHUNK_SIZE)
            if not chunk:
                break
            tail.write(chunk)
            if forward is not None:
                try:
                    forward.write(chunk)
                    forward.flush()
                except (OSError, ValueError) as exc:
                    log.debug("stopped forwarding sandbox output: %s", exc)
                    forward = None


class Sandbox:
    """Runs ``/etc/start`` chrooted into a mounted bundle.

    Output is forwarded live to ``stdout``/``stderr`` (the parent's own
    streams by default) while the last :data:`BUFFER_SIZE` bytes of each are
    kept for the result.
    """

    def __init__(
        self,
        root: str | Path,
        user_env: Sequence[str] | None = None,
        *,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ):
        self.root = Path(root).absolute()
        self.user_env = list(user_env or [])
        self._stdout = stdout
        self._stderr = stderr
        self._process: subprocess.Popen[bytes] | None = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def environment(self) -> list[str]:
        return environ(self.root) + self.user_env

    def run(self) -> RunResult:
        """Run the entry point and block until it exits.

        Raises :class:`ProcessError` if the entry point cannot be started or
        exits non-zero; the error carries the captured tails.
        """
        log.debug("reading the env")
        env = self.environment()

        stdout_tail = TailBuffer(BUFFER_SIZE)
        stderr_tail = TailBuffer(BUFFER_SIZE)
        forward_out = self._stdout if self._stdout is not None else _binary_stream(sys.stdout)
        forward_err = self._stderr if self._stderr is not None else _binary_stream(sys.stderr)

        try:
            process = subprocess.Popen(
                [ENTRY_POINT],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=_env_mapping(env),
                preexec_fn=_make_preexec(str(self.root)),
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProcessError(
                f"failed to start {ENTRY_POINT} in {self.root}: {exc}",
                exit_code=None,
            ) from exc

        self._process = process
        assert process.stdout is not None
        assert process.stderr is not None
        pumps = [
            threading.Thread(target=_pump, args=(process.stdout, forward_out, stdout_tail), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, forward_err, stderr_tail), daemon=True),
        ]
        try:
            for pump in pumps:
                pump.start()
            exit_code = process.wait()
            for pump in pumps:
                pump.join()
        finally:
            self._process = None

        result = RunResult(
            stdout=stdout_tail.getvalue(),
            stderr=stderr_tail.getvalue(),
            exit_code=exit_code,
        )
        if exit_code != 0:
            raise ProcessError(
                f"{ENTRY_POINT} in {self.root} exited with {exit_code}",
                exit_code=exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def signal(self, sig: int) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            raise NotStarted("sandbox is not started")
        process.send_signal(sig)


def run_sandbox(root: str | Path, user_env: Sequence[str] | None = None) -> RunResult:
    return Sandbox(root, user_env).run()
