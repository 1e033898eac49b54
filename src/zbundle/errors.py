"""Error kinds raised by zbundle.

Lower level ``OSError``/``tarfile`` failures are chained onto these with
``raise ... from exc`` so callers can branch on the kind and still inspect the
cause.
"""

from __future__ import annotations

__all__ = [
    "ZBundleError",
    "LocatorInvalid",
    "UnsupportedLocator",
    "NotFound",
    "FetchFailed",
    "UnknownFormat",
    "MaterializeFailed",
    "AlreadyRunning",
    "MountFailed",
    "NotRunning",
    "NotStarted",
    "ProcessError",
]


class ZBundleError(RuntimeError):
    """Base error for bundle and sandbox failures."""


class LocatorInvalid(ZBundleError):
    """Raised when an archive or storage locator cannot be used."""


class UnsupportedLocator(LocatorInvalid):
    """Raised when a locator uses a scheme other than file, http or https."""


class NotFound(ZBundleError):
    """Raised when a local archive does not exist."""


class FetchFailed(ZBundleError):
    """Raised when a remote archive could not be downloaded."""

    def __init__(self, locator: str, status: int | None, reason: str = ""):
        detail = f"status {status}" if status is not None else "no response"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(f"failed to download flist {locator} ({detail})")
        self.locator = locator
        self.status = status


class UnknownFormat(ZBundleError):
    """Raised when the archive extension does not map to a known format."""

    def __init__(self, ext: str):
        super().__init__(f"unknown flist format {ext!r}")
        self.ext = ext


class MaterializeFailed(ZBundleError):
    """Raised when extracting the metadata archive fails.

    The meta directory is left as-is and must be removed before retrying.
    """


class AlreadyRunning(ZBundleError):
    """Raised when a bundle with the same id is already mounted."""


class MountFailed(ZBundleError):
    """Raised when the filesystem engine or a bind mount fails."""


class NotRunning(ZBundleError):
    """Raised when a bundle operation needs a mounted bundle."""


class NotStarted(ZBundleError):
    """Raised when a sandbox operation needs a live process."""


class ProcessError(ZBundleError):
    """Raised when the sandboxed entry point fails to start or exits non-zero."""

    def __init__(self, message: str, *, exit_code: int | None, stdout: bytes = b"", stderr: bytes = b""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
