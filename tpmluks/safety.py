"""Preflight guards and the single-instance lock."""

from __future__ import annotations

import contextlib
import fcntl
import os
import stat

from .errors import ConfigError, LockError, PrivilegeError
from .executil import trace


def require_root() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError("must be run as root")


def require_device(device: str) -> None:
    try:
        st = os.stat(device)
    except FileNotFoundError as exc:
        raise ConfigError(f"device {device} does not exist") from exc
    if not (stat.S_ISBLK(st.st_mode) or stat.S_ISREG(st.st_mode)):
        # regular files cover LUKS images attached through loop devices
        raise ConfigError(f"{device} is not a block device or image file")


@contextlib.contextmanager
def instance_lock(path: str):
    """Hold an exclusive, non-blocking flock on ``path`` for the block."""

    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = open(path, "a")
    except OSError as exc:
        raise LockError(f"cannot open lock file {path}: {exc}") from exc
    try:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise LockError(f"another instance holds {path}") from exc
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        trace("lock.acquired", path=path)
        try:
            yield path
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            trace("lock.released", path=path)
    finally:
        fh.close()
