"""Volatile tmpfs key store holding cleartext keys for one operation."""

from __future__ import annotations

import contextlib
import os
import re

from .errors import KeyStoreError
from .executil import log, run, trace
from .keyfile import shred_file


_MOUNTINFO_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount_field(field: str) -> str:
    # the kernel octal-escapes space, tab, newline and backslash
    return _MOUNTINFO_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def is_mountpoint(path: str, mountinfo: str = "/proc/self/mountinfo") -> bool:
    real = os.path.realpath(path)
    try:
        with open(mountinfo, "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.split()
                if len(parts) > 4 and _unescape_mount_field(parts[4]) == real:
                    return True
    except FileNotFoundError:
        return os.path.ismount(path)
    return False


class EphemeralKeyStore:
    """tmpfs mounted at ``path`` for the lifetime of one operation.

    ``release()`` is safe to call more than once and on a store whose
    ``acquire()`` failed.
    """

    def __init__(self, path: str, size: str = "1m"):
        self.path = path
        self.size = size
        self.mounted = False
        self.created_dir = False

    def _mount_options(self) -> str:
        return f"size={self.size},mode=0700,uid=0,gid=0,nosuid,nodev,noexec"

    def acquire(self) -> "EphemeralKeyStore":
        if os.path.exists(self.path):
            if not os.path.isdir(self.path):
                raise KeyStoreError(f"{self.path} exists and is not a directory")
            if is_mountpoint(self.path):
                raise KeyStoreError(
                    f"{self.path} is already mounted; another run may be in progress"
                )
        else:
            try:
                os.makedirs(self.path, mode=0o700)
            except OSError as exc:
                raise KeyStoreError(f"could not create {self.path}: {exc}") from exc
            self.created_dir = True

        res = run(["mount", "-t", "tmpfs", "-o", self._mount_options(), "tmpfs", self.path], timeout=30.0)
        if res.rc != 0:
            self._remove_dir()
            raise KeyStoreError(f"could not mount tmpfs at {self.path}: {res.summary()}")
        self.mounted = True
        trace("keystore.acquired", path=self.path, size=self.size)
        return self

    def _scrub(self) -> None:
        try:
            names = os.listdir(self.path)
        except OSError:
            return
        for name in names:
            target = os.path.join(self.path, name)
            if os.path.isfile(target) and not os.path.islink(target):
                try:
                    shred_file(target)
                except OSError as exc:
                    trace("keystore.scrub_error", path=target, error=str(exc))

    def _remove_dir(self) -> None:
        if not self.created_dir:
            return
        try:
            os.rmdir(self.path)
            self.created_dir = False
        except FileNotFoundError:
            self.created_dir = False
        except OSError as exc:
            log("WARN", "keystore.rmdir_failed", path=self.path, error=str(exc))

    def release(self) -> bool:
        """Unmount and remove the store; return False if it could not be unmounted."""

        ok = True
        if self.mounted:
            self._scrub()
            res = run(["umount", self.path], timeout=30.0)
            if res.rc != 0:
                log("WARN", "keystore.umount_failed", path=self.path, rc=res.rc, err=res.summary())
                res = run(["umount", "-l", self.path], timeout=30.0)
            if res.rc == 0:
                self.mounted = False
            else:
                ok = False
                log("ERROR", "keystore.umount_lazy_failed", path=self.path, rc=res.rc)
        if not self.mounted:
            self._remove_dir()
        trace("keystore.released", path=self.path, ok=ok)
        return ok

    def __enter__(self) -> "EphemeralKeyStore":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


@contextlib.contextmanager
def ephemeral_keystore(path: str, size: str = "1m"):
    store = EphemeralKeyStore(path, size)
    store.acquire()
    try:
        yield store
    finally:
        store.release()
