from __future__ import annotations

"""Subprocess wrapper and JSONL trace log."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import state_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "tpmluks.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        state_dir(),
        "/tmp/tpmluks-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, mode=0o700, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0

    def summary(self) -> str:
        text = (self.err or self.out or "").strip()
        return text.splitlines()[-1] if text else f"rc={self.rc}"


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("TPMLUKS_LOG_LEVEL", "INFO").upper()


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    path = _ensure_logger()
    if path:
        append_jsonl(path, rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = False,
    timeout: float | None = 120.0,
) -> Result:
    """Run ``cmd`` and capture its output.

    Tool failures come back as a non-zero ``Result.rc``; a missing binary is
    reported as rc 127 so callers only ever inspect one status.
    """

    trace("exec.start", cmd=list(cmd))
    started = time.time()
    try:
        proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as exc:
        dur = time.time() - started
        log("ERROR", "exec.missing", cmd=list(cmd), error=str(exc))
        if check:
            raise
        return Result(127, "", f"{cmd[0]}: command not found", dur)
    except subprocess.TimeoutExpired:
        dur = time.time() - started
        log("ERROR", "exec.timeout", cmd=list(cmd), timeout=timeout)
        if check:
            raise
        return Result(124, "", f"{' '.join(shlex.quote(c) for c in cmd)}: timed out", dur)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, err=(proc.stderr or "").strip() or None)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)
