from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import ConfigError
from .paths import DEFAULT_KEYFS, DEFAULT_SEALED_KEYFILE

SLOT_RANGE = range(0, 8)
PCR_RANGE = range(0, 24)
DEFAULT_PCRS: Tuple[int, ...] = tuple(range(0, 8))
ACTIONS = ("temp", "reset", "replace", "status")

RESULT_CODES: Dict[str, int] = {
    "TEMP_OK": 0,
    "RESET_OK": 0,
    "REPLACE_OK": 0,
    "STATUS_OK": 0,
    "FAIL_USAGE": 1,
    "FAIL_CONFIG": 1,
    "FAIL_UNHANDLED": 1,
    "FAIL_PRIVILEGE": 2,
    "FAIL_KEYSTORE": 3,
    "FAIL_LOCKED": 3,
    "FAIL_RESET_PARTIAL": 4,
    "FAIL_RESET_ABORTED": 4,
    "FAIL_TEMP": 5,
    "FAIL_REPLACE_SLOT": 6,
    "FAIL_REPLACE_SEAL": 7,
}


@dataclass
class Flags:
    json: bool = True
    passphrase_file: Optional[str] = None


@dataclass
class KeyConfig:
    device: str
    keyfs: str = DEFAULT_KEYFS
    sealed_keyfile: str = DEFAULT_SEALED_KEYFILE
    sealed_slot: int = 1
    reset_slot: int = 2
    pcrs: Tuple[int, ...] = DEFAULT_PCRS
    well_known: bool = False
    keyfs_size: str = "1m"
    keyfile_bytes: int = 2048

    @property
    def keyfile_path(self) -> str:
        return os.path.join(self.keyfs, "keyfile")

    @property
    def original_keyfile_path(self) -> str:
        return os.path.join(self.keyfs, "keyfile.orig")

    @property
    def passphrase_path(self) -> str:
        return os.path.join(self.keyfs, "passphrase")

    def validate(self) -> "KeyConfig":
        if not self.device:
            raise ConfigError("no device given")
        for name in ("sealed_slot", "reset_slot"):
            value = getattr(self, name)
            if value not in SLOT_RANGE:
                raise ConfigError(f"{name.replace('_', ' ')} {value} outside 0-7")
        if self.sealed_slot == self.reset_slot:
            raise ConfigError(
                f"sealed slot and reset slot are both {self.sealed_slot}; they must differ"
            )
        if not self.pcrs:
            raise ConfigError("at least one PCR selector is required")
        bad = [p for p in self.pcrs if p not in PCR_RANGE]
        if bad:
            raise ConfigError(f"PCR selector(s) {bad} outside 0-23")
        if self.keyfile_bytes <= 0:
            raise ConfigError("keyfile size must be positive")
        return self


@dataclass
class StepRecord:
    name: str
    ok: bool
    rc: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class Outcome:
    action: str
    kind: str
    exit_code: int
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    steps: List[StepRecord] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "action": self.action,
            "result": self.kind,
            "exit_code": self.exit_code,
            "message": self.message,
            "warnings": list(self.warnings),
            "steps": [vars(s) for s in self.steps],
            "artifacts": dict(self.artifacts),
        }
