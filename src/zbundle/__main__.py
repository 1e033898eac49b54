"""Module entrypoint for `python -m zbundle`.

Usage:
    python -m zbundle --id ID --storage URL [--env KEY=VALUE ...] FLIST
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from .chroot import BundleSpec, Chroot
from .errors import NotStarted, ProcessError, ZBundleError
from .fs import FuseDriver
from .preflight import assert_host_ready
from .sandbox import Sandbox

log = logging.getLogger("zbundle")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="zbundle",
        description="Mount an flist and run its /etc/start entry point in a chroot.",
    )
    parser.add_argument("flist", help="Path or http(s) URL of the flist archive.")
    parser.add_argument("--id", required=True, help="Bundle id; names the mount and work directories.")
    parser.add_argument(
        "--storage",
        required=True,
        help="Storage backend URL holding the file contents (e.g. zdb://hub.grid.tf:9900).",
    )
    parser.add_argument(
        "--env",
        "-e",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra environment entry for the entry point; may be repeated.",
    )
    parser.add_argument(
        "--home",
        help="Root for the .zbundle directories (defaults to ZBUNDLE_HOME or the user's home).",
    )
    parser.add_argument(
        "--fs-binary",
        help="Filesystem driver executable (defaults to ZBUNDLE_FS_BINARY or g8ufs).",
    )
    parser.add_argument(
        "--no-exit",
        action="store_true",
        help="Keep the bundle mounted after the entry point exits until the filesystem terminates.",
    )
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Do not check host prerequisites before starting.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _forward_signals(sandbox: Sandbox) -> None:
    def handler(signum, frame) -> None:
        try:
            sandbox.signal(signum)
        except NotStarted:
            log.debug("signal %d received with no sandbox process", signum)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def _exit_status(exit_code: int | None) -> int:
    if exit_code is None:
        return 1
    if exit_code < 0:
        # Killed by a signal; report it the way shells do.
        return 128 - exit_code
    return exit_code


def _run(chroot: Chroot, args: argparse.Namespace) -> int:
    sandbox = Sandbox(chroot.mount_root(), args.env)
    _forward_signals(sandbox)
    try:
        sandbox.run()
        exit_code = 0
    except ProcessError as exc:
        print(str(exc), file=sys.stderr)
        exit_code = _exit_status(exc.exit_code)
    finally:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    if args.no_exit:
        log.info("entry point exited with %d; waiting for the filesystem to terminate", exit_code)
        try:
            chroot.wait()
        except KeyboardInterrupt:
            pass
    return exit_code


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.skip_preflight:
        try:
            assert_host_ready(args.fs_binary)
        except RuntimeError as exc:
            print(str(exc), file=sys.stderr)
            return 1

    try:
        chroot = Chroot(
            BundleSpec(id=args.id, flist=args.flist, storage=args.storage),
            home=args.home,
            filesystem=FuseDriver(args.fs_binary),
        )
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        chroot.start()
    except ZBundleError as exc:
        print(f"failed to start bundle: {exc}", file=sys.stderr)
        if chroot.is_running:
            try:
                chroot.stop()
            except ZBundleError as stop_exc:
                print(f"failed to stop bundle: {stop_exc}", file=sys.stderr)
        return 1

    try:
        return _run(chroot, args)
    finally:
        try:
            chroot.stop()
        except ZBundleError as exc:
            print(f"failed to stop bundle: {exc}", file=sys.stderr)


if __name__ == "__main__":
    raise SystemExit(main())
