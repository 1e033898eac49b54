"""Fetch flist archives from local paths or HTTP(S) URLs."""

from __future__ import annotations

import bz2
import gzip
import logging
import os
import posixpath
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, BinaryIO, Callable

from .errors import FetchFailed, LocatorInvalid, NotFound, UnknownFormat, UnsupportedLocator

log = logging.getLogger("zbundle.archive")

_DEFAULT_TIMEOUT_S = 120
_USER_AGENT = "zbundle/0.1"


def _gzip_layer(raw: BinaryIO) -> BinaryIO:
    return gzip.GzipFile(fileobj=raw, mode="rb")


def _bzip2_layer(raw: BinaryIO) -> BinaryIO:
    return bz2.BZ2File(raw, mode="rb")


# Exact, case-sensitive match on the final path segment's extension.
# ``None`` means the payload is a plain tar stream.
DECODERS: dict[str, Callable[[BinaryIO], BinaryIO] | None] = {
    ".tgz": _gzip_layer,
    ".flist": _gzip_layer,
    ".gz": _gzip_layer,
    ".tbz2": _bzip2_layer,
    ".bz2": _bzip2_layer,
    ".tar": None,
}


class LayeredStream:
    """A stack of readers where only the innermost one is read from.

    Decompressors do not close the reader they wrap, so every layer is owned
    here and closed innermost-first on :meth:`close`. Errors from individual
    layers are ignored so one bad layer does not leak the others.
    """

    def __init__(self, source: Any):
        self.layers: list[Any] = [source]
        self._closed = False

    def push(self, layer: Any) -> None:
        self.layers.append(layer)

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int = -1) -> bytes:
        if self._closed:
            raise ValueError("read from closed LayeredStream")
        return self.layers[-1].read(size)

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for layer in reversed(self.layers):
            close = getattr(layer, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as exc:
                log.debug("ignoring error closing %r: %s", layer, exc)

    def __enter__(self) -> "LayeredStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def archive_extension(locator: str) -> str:
    """Return the extension of the locator's last path segment (``.tar.gz`` -> ``.gz``)."""
    parsed = urllib.parse.urlparse(locator)
    return posixpath.splitext(posixpath.basename(parsed.path))[1]


def _open_local(path: str) -> BinaryIO:
    if not os.path.exists(path):
        raise NotFound(f"flist not found: {path}")
    try:
        return open(path, "rb")
    except OSError as exc:
        raise NotFound(f"cannot open flist {path}: {exc}") from exc


def _open_remote(locator: str, *, timeout_s: float) -> BinaryIO:
    request = urllib.request.Request(locator, headers={"User-Agent": _USER_AGENT})
    try:
        response = urllib.request.urlopen(request, timeout=timeout_s)
    except urllib.error.HTTPError as exc:
        exc.close()
        raise FetchFailed(locator, exc.code, str(exc.reason)) from exc
    except (urllib.error.URLError, OSError) as exc:
        raise FetchFailed(locator, None, str(exc)) from exc

    if response.status != 200:
        response.close()
        raise FetchFailed(locator, response.status, str(response.reason))
    return response


def _open_source(locator: str, *, timeout_s: float) -> BinaryIO:
    try:
        parsed = urllib.parse.urlparse(locator)
    except ValueError as exc:
        raise LocatorInvalid(f"invalid flist url ({locator}): {exc}") from exc

    if parsed.scheme in {"", "file"}:
        return _open_local(parsed.path)
    if parsed.scheme in {"http", "https"}:
        log.debug("downloading flist: %s", locator)
        return _open_remote(locator, timeout_s=timeout_s)
    raise UnsupportedLocator(f"invalid flist url ({locator})")


def fetch(locator: str, *, timeout_s: float = _DEFAULT_TIMEOUT_S) -> LayeredStream:
    """Open ``locator`` and return a stream yielding the uncompressed tar bytes.

    The decompression filter is picked from the file extension only; the
    content is never sniffed. Everything opened here is closed again if the
    stream cannot be assembled.
    """
    if not isinstance(locator, str) or not locator.strip():
        raise LocatorInvalid("flist locator must be a non-empty string")

    stream = LayeredStream(_open_source(locator, timeout_s=timeout_s))
    try:
        ext = archive_extension(locator)
        if ext not in DECODERS:
            raise UnknownFormat(ext)
        decoder = DECODERS[ext]
        if decoder is not None:
            stream.push(decoder(stream.layers[-1]))
    except BaseException:
        stream.close()
        raise

    log.debug("opened flist %s with %d layer(s)", locator, len(stream.layers))
    return stream
