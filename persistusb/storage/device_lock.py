"""Exclusive advisory locks on device nodes.

udev and friends take a shared BSD ``flock`` on a block device before
opening it and back off while someone else holds it exclusively. Holding
the exclusive lock while a filesystem is written keeps scanners from
reading a half-written superblock.

Usage:
    from persistusb.storage.device_lock import exclusive_device_lock

    with exclusive_device_lock("/dev/sdb1"):
        # mkfs runs while scanners stay away
        ...

The lock only guards against background tools, not against a second
instance of this program.
"""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from typing import Generator

from persistusb.logging import LoggerFactory
from persistusb.storage.exceptions import FormatError, StageError


log = LoggerFactory.for_device()


@contextmanager
def exclusive_device_lock(
    device_path: str, error: type[StageError] = FormatError
) -> Generator[None, None, None]:
    """Hold ``LOCK_EX`` on ``device_path`` for the duration of the block.

    Raises:
        error: If the node cannot be opened or locked
    """
    try:
        fd = os.open(device_path, os.O_RDONLY | os.O_CLOEXEC)
    except OSError as exc:
        raise error(f"Cannot open {device_path} for locking", detail=str(exc)) from exc
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise error(f"Cannot lock {device_path}", detail=str(exc)) from exc
        log.debug(f"Exclusive lock acquired on {device_path}")
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            log.debug(f"Exclusive lock released on {device_path}")
    finally:
        os.close(fd)
