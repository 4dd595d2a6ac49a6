"""Fresh key material and secret files inside the volatile key store."""

from __future__ import annotations

import os
import stat

from .errors import KeyGenerationError
from .executil import trace

KEYFILE_BYTES = 2048


def _write_private(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(path, mode)


def generate_keyfile(path: str, length: int = KEYFILE_BYTES) -> int:
    """Write ``length`` random bytes to ``path`` and return the size written."""

    try:
        data = os.urandom(length)
    except NotImplementedError as exc:
        raise KeyGenerationError(f"no entropy source available: {exc}") from exc
    try:
        if os.path.exists(path):
            os.chmod(path, 0o600)
        _write_private(path, data, 0o400)
        size = os.stat(path).st_size
    except OSError as exc:
        raise KeyGenerationError(f"could not write keyfile {path}: {exc}") from exc
    if size != length:
        raise KeyGenerationError(f"keyfile {path} is {size} bytes, expected {length}")
    trace("keyfile.generated", path=path, length=size)
    return size


def write_secret(path: str, data: bytes) -> None:
    _write_private(path, data, 0o600)


def shred_file(path: str) -> bool:
    """Overwrite ``path`` with zeros and unlink it; return False if absent."""

    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    if stat.S_ISREG(st.st_mode):
        try:
            os.chmod(path, 0o600)
            with open(path, "r+b") as fh:
                fh.write(b"\0" * st.st_size)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            trace("keyfile.shred_error", path=path, error=str(exc))
    os.unlink(path)
    return True
