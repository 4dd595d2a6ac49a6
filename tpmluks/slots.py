"""LUKS key slot mutations through cryptsetup."""

from __future__ import annotations

import json
import os
import re
from typing import Optional, Protocol

from .executil import Result, log, run


class SlotManager(Protocol):
    def add_key(self, device: str, slot: int, new_key: str, auth_key: str) -> Result:
        ...

    def kill_slot(self, device: str, slot: int, auth_key: str) -> Result:
        ...

    def change_key(self, device: str, slot: int, new_key: str, auth_key: str) -> Result:
        ...


_TEXT_SLOT_RE = re.compile(r"^\s*Key Slot\s+(\d+):\s+ENABLED", re.IGNORECASE | re.MULTILINE)
_LUKS2_SLOT_RE = re.compile(r"^\s*(\d+):\s+luks2", re.MULTILINE)


class CryptsetupSlots:
    """Adapter over ``cryptsetup``. Credentials are always file paths."""

    def __init__(self, timeout: float = 120.0):
        self.timeout = timeout

    def _mutate(self, event: str, cmd: list[str], device: str, slot: int) -> Result:
        res = run(cmd, timeout=self.timeout)
        if res.rc != 0:
            log("ERROR", f"slots.{event}.failed", device=device, slot=slot, rc=res.rc, err=res.summary())
        else:
            log("INFO", f"slots.{event}.ok", device=device, slot=slot)
        return res

    def add_key(self, device: str, slot: int, new_key: str, auth_key: str) -> Result:
        cmd = [
            "cryptsetup",
            "luksAddKey",
            "--key-slot",
            str(slot),
            "--key-file",
            auth_key,
            device,
            new_key,
        ]
        return self._mutate("add_key", cmd, device, slot)

    def kill_slot(self, device: str, slot: int, auth_key: str) -> Result:
        # no --batch-mode: it skips verifying the authorizing key
        cmd = [
            "cryptsetup",
            "luksKillSlot",
            "--key-file",
            auth_key,
            device,
            str(slot),
        ]
        return self._mutate("kill_slot", cmd, device, slot)

    def change_key(self, device: str, slot: int, new_key: str, auth_key: str) -> Result:
        cmd = [
            "cryptsetup",
            "luksChangeKey",
            "--key-slot",
            str(slot),
            "--key-file",
            auth_key,
            device,
            new_key,
        ]
        return self._mutate("change_key", cmd, device, slot)

    def active_slots(self, device: str) -> set[int]:
        res = run(["cryptsetup", "luksDump", "--dump-json-metadata", device], timeout=self.timeout)
        if res.rc == 0 and (res.out or "").lstrip().startswith("{"):
            try:
                payload = json.loads(res.out)
            except json.JSONDecodeError:
                payload = {}
            keyslots = payload.get("keyslots")
            if isinstance(keyslots, dict):
                slots: set[int] = set()
                for key in keyslots:
                    try:
                        slots.add(int(key))
                    except (TypeError, ValueError):
                        continue
                return slots
        # LUKS1 headers and older cryptsetup only offer the text dump
        res = run(["cryptsetup", "luksDump", device], timeout=self.timeout)
        if res.rc != 0:
            raise RuntimeError(f"cryptsetup luksDump failed: rc={res.rc}")
        text = res.out or ""
        found = {int(m) for m in _TEXT_SLOT_RE.findall(text)}
        if not found:
            found = {int(m) for m in _LUKS2_SLOT_RE.findall(text)}
        return found

    def test_unlock(self, device: str, key: str, slot: Optional[int] = None) -> bool:
        cmd = ["cryptsetup", "open", "--test-passphrase", "--key-file", key]
        if slot is not None:
            cmd += ["--key-slot", str(slot)]
        cmd.append(device)
        if not os.path.exists(key):
            return False
        return run(cmd, timeout=self.timeout).rc == 0
