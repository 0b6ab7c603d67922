"""Mounting helpers and the session working tree.

Mounting:
    mount_device() and unmount_path() wrap mount(8) and umount(8) with
    argument lists. A failed mount raises MountError; unmounting is used by
    cleanup and only reports failure.

Working Tree:
    WorkingTree owns one temporary directory for a provisioning session.
    Every directory, mount and extra resource (such as an open LUKS mapping)
    is registered on a contextlib.ExitStack at the moment it is acquired and
    released in reverse order however the session ends:

        with WorkingTree("/tmp") as tree:
            image_root = tree.mount("/srv/live.iso", "image", options="ro,loop")
            tree.register_callback(manager.close, description="close mapping")
            with tree.scope():
                overlay = tree.mount("overlay", "overlay", fstype="overlay", ...)
            # overlay is gone here, image_root is still mounted

    Release is tolerant. Paths that are no longer mounted and directories
    that are not empty are skipped with a log entry. A final sweep unmounts
    anything still listed in /proc/mounts below the working directory,
    deepest first. Releasing never raises.

Signals:
    While the tree is active SIGINT, SIGTERM and SIGHUP raise
    SessionInterrupted in the main thread so the with-block unwinds through
    cleanup. Signals are ignored while cleanup itself runs.
"""

from __future__ import annotations

import os
import signal
import tempfile
import threading
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Generator, Optional, Union

from persistusb.logging import LoggerFactory
from persistusb.storage.commands import run_command
from persistusb.storage.devices import active_mountpoints_under, is_mountpoint_active
from persistusb.storage.exceptions import MountError, SessionInterrupted


log = LoggerFactory.for_system()

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
WORK_DIR_PREFIX = "persistusb."

PathLike = Union[str, os.PathLike]


def mount_device(
    source: PathLike,
    target: PathLike,
    *,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
) -> None:
    """Mount ``source`` on ``target``.

    Raises:
        MountError: If mount exits non-zero
    """
    command = ["mount"]
    if fstype:
        command.extend(["-t", fstype])
    if options:
        command.extend(["-o", options])
    command.extend([str(source), str(target)])
    run_command(command, error=MountError)


def unmount_path(target: PathLike) -> bool:
    """Unmount ``target``; returns False when umount fails."""
    result = run_command(["umount", str(target)], error=MountError, check=False)
    if not result.ok:
        log.warning(
            f"Failed to unmount {target}: {result.stderr.strip() or result.returncode}"
        )
    return result.ok


def _raise_interrupted(signum, frame) -> None:
    raise SessionInterrupted(signum)


@contextmanager
def interrupt_on_signals() -> Generator[None, None, None]:
    """Turn termination signals into SessionInterrupted for the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {signum: signal.getsignal(signum) for signum in HANDLED_SIGNALS}
    for signum in HANDLED_SIGNALS:
        signal.signal(signum, _raise_interrupted)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _ignore_signals() -> None:
    if threading.current_thread() is not threading.main_thread():
        return
    for signum in HANDLED_SIGNALS:
        signal.signal(signum, signal.SIG_IGN)


class WorkingTree:
    """Temporary mount tree whose resources are released in reverse order."""

    def __init__(self, parent: PathLike = "/tmp", prefix: str = WORK_DIR_PREFIX):
        self.parent = Path(parent)
        self.prefix = prefix
        self.root: Optional[Path] = None
        self._stack: Optional[ExitStack] = None
        self._released = False

    def __enter__(self) -> WorkingTree:
        stack = ExitStack()
        try:
            stack.enter_context(interrupt_on_signals())
            self.root = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.parent))
        except OSError as error:
            stack.close()
            raise MountError(
                f"Cannot create working directory under {self.parent}", detail=str(error)
            ) from error
        log.debug(f"Working directory {self.root}")
        stack.callback(self._remove_dir, self.root)
        stack.callback(self._sweep_mounts, self.root)
        self._stack = stack
        self._released = False
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False

    @property
    def active(self) -> bool:
        return self._stack is not None and not self._released

    def _require_active(self) -> ExitStack:
        if self._stack is None or self._released:
            raise MountError("Working tree is not active")
        return self._stack

    def path(self, name: PathLike) -> Path:
        if self.root is None:
            raise MountError("Working tree is not active")
        return self.root / name

    def make_dir(self, name: PathLike) -> Path:
        """Create a directory inside the tree and register its removal."""
        stack = self._require_active()
        target = self.path(name)
        try:
            target.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            return target
        except OSError as error:
            raise MountError(f"Cannot create {target}", detail=str(error)) from error
        stack.callback(self._remove_dir, target)
        return target

    def mount(
        self,
        source: PathLike,
        name: PathLike,
        *,
        fstype: Optional[str] = None,
        options: Optional[str] = None,
    ) -> Path:
        """Mount ``source`` at ``<root>/<name>`` and register the unmount."""
        target = self.make_dir(name)
        stack = self._require_active()
        log.debug(f"Mounting {source} on {target}")
        mount_device(source, target, fstype=fstype, options=options)
        stack.callback(self._unmount, target)
        return target

    def register_callback(
        self, callback: Callable[[], object], description: str = ""
    ) -> None:
        """Register an arbitrary release step, such as closing a mapping."""
        stack = self._require_active()
        stack.callback(self._run_callback, callback, description or repr(callback))

    @contextmanager
    def scope(self) -> Generator[WorkingTree, None, None]:
        """Release everything acquired inside the block when it ends."""
        outer = self._require_active()
        inner = ExitStack()
        self._stack = inner
        try:
            yield self
        finally:
            self._stack = outer
            inner.close()

    def release(self) -> None:
        """Release every registered resource in reverse order. Never raises."""
        if self._stack is None or self._released:
            return
        self._released = True
        _ignore_signals()
        log.debug(f"Releasing working directory {self.root}")
        self._stack.close()

    @staticmethod
    def _unmount(target: Path) -> None:
        if not is_mountpoint_active(target):
            log.debug(f"{target} is not mounted, skipping")
            return
        unmount_path(target)

    @staticmethod
    def _remove_dir(target: Path) -> None:
        try:
            target.rmdir()
        except FileNotFoundError:
            log.debug(f"{target} already removed")
        except OSError as error:
            log.warning(f"Leaving {target} in place: {error}")

    @staticmethod
    def _run_callback(callback: Callable[[], object], description: str) -> None:
        try:
            callback()
        except Exception as error:
            log.warning(f"Cleanup step '{description}' failed: {error}")

    @staticmethod
    def _sweep_mounts(root: Path) -> None:
        for mountpoint in active_mountpoints_under(root):
            log.warning(f"Unmounting leftover mount {mountpoint}")
            unmount_path(mountpoint)
