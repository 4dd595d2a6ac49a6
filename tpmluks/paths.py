from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_STATE_DIR = "/var/lib/tpmluks"
_DEFAULT_LOCK_PATH = "/run/lock/tpmluks.lock"

DEFAULT_KEYFS = "/root/keyfs"
DEFAULT_SEALED_KEYFILE = "/boot/keyfile.enc"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def state_dir() -> str:
    """Return the directory holding the trace log and recovery journal.

    Overridable through ``TPMLUKS_STATE_DIR`` so tests and rescue shells can
    point it at a writable location.
    """

    override = os.environ.get("TPMLUKS_STATE_DIR")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_STATE_DIR)


def lock_path() -> str:
    override = os.environ.get("TPMLUKS_LOCK_PATH")
    if override:
        return _expand(override)
    return _DEFAULT_LOCK_PATH


def recovery_journal_path() -> str:
    return str(Path(state_dir()) / "recovery.jsonl")
