"""zbundle package."""

from .chroot import BundleSpec, Chroot
from .archive import LayeredStream, fetch
from .metadata import materialize
from .preflight import assert_host_ready, check_host
from .runtime_paths import get_home_dir
from .sandbox import BUFFER_SIZE, RunResult, Sandbox, TailBuffer, run_sandbox

__all__ = [
    "BUFFER_SIZE",
    "BundleSpec",
    "Chroot",
    "LayeredStream",
    "RunResult",
    "Sandbox",
    "TailBuffer",
    "assert_host_ready",
    "check_host",
    "fetch",
    "get_home_dir",
    "materialize",
    "run_sandbox",
]
