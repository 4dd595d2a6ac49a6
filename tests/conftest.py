import json
import os
import shutil
from types import SimpleNamespace

import pytest

from tpmluks import executil
from tpmluks.errors import KeyStoreError
from tpmluks.model import KeyConfig
from tpmluks.recovery import RecoveryJournal


def _ok():
    return SimpleNamespace(rc=0, out="", err="", summary=lambda: "rc=0")


def _fail(rc, why):
    return SimpleNamespace(rc=rc, out="", err=why, summary=lambda: why)


def _read(path):
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError:
        return None


class FakeHeader:
    """In-memory LUKS header: slot index -> key bytes."""

    def __init__(self, slots=None):
        self.slots = dict(slots or {})
        self.calls = []
        self.fail = set()

    def _authorized(self, auth_key, slot=None):
        key = _read(auth_key)
        if key is None:
            return False
        if slot is not None:
            return self.slots.get(slot) == key
        return key in self.slots.values()

    def add_key(self, device, slot, new_key, auth_key):
        self.calls.append(("add_key", slot))
        if "add_key" in self.fail:
            return _fail(1, "injected add_key failure")
        if slot in self.slots:
            return _fail(1, f"Key slot {slot} is full")
        if not self._authorized(auth_key):
            return _fail(2, "No key available with this passphrase.")
        self.slots[slot] = _read(new_key)
        return _ok()

    def kill_slot(self, device, slot, auth_key):
        self.calls.append(("kill_slot", slot))
        if slot not in self.slots:
            return _fail(1, f"Key slot {slot} is not used.")
        if not self._authorized(auth_key):
            return _fail(2, "No key available with this passphrase.")
        del self.slots[slot]
        return _ok()

    def change_key(self, device, slot, new_key, auth_key):
        self.calls.append(("change_key", slot))
        if "change_key" in self.fail:
            return _fail(1, "injected change_key failure")
        if not self._authorized(auth_key, slot):
            return _fail(2, "No key available with this passphrase.")
        self.slots[slot] = _read(new_key)
        return _ok()

    def unlocks(self, key_bytes):
        return key_bytes in self.slots.values()


class FakeSealer:
    """Seals by recording the selected PCR values next to the key."""

    def __init__(self, pcr_values=None):
        self.pcr_values = dict(pcr_values or {i: f"pcr{i}" for i in range(24)})
        self.fail_seal = False
        self.calls = []

    def seal(self, source, sealed, pcrs, well_known):
        self.calls.append(("seal", sealed, tuple(pcrs), well_known))
        if self.fail_seal:
            return _fail(1, "Tspi_Data_Seal failed")
        blob = {
            "pcrs": {str(p): self.pcr_values[p] for p in pcrs},
            "well_known": well_known,
            "key": _read(source).hex(),
        }
        with open(sealed, "w", encoding="utf-8") as fh:
            json.dump(blob, fh)
        return _ok()

    def unseal(self, sealed, dest, well_known):
        self.calls.append(("unseal", sealed, well_known))
        try:
            with open(sealed, "r", encoding="utf-8") as fh:
                blob = json.load(fh)
        except (OSError, ValueError):
            return _fail(1, "Tspi_Data_Unseal failed: bad blob")
        if blob["well_known"] != well_known:
            return _fail(1, "Authentication failed")
        for pcr, value in blob["pcrs"].items():
            if self.pcr_values[int(pcr)] != value:
                return _fail(1, "Tspi_Data_Unseal failed: PCR mismatch")
        with open(dest, "wb") as fh:
            fh.write(bytes.fromhex(blob["key"]))
        return _ok()


class FakeKeyStore:
    """Plain directory standing in for the tmpfs mount."""

    events = []

    def __init__(self, path, size="1m"):
        self.path = path
        self.size = size

    def acquire(self):
        assert not os.path.exists(self.path)
        os.makedirs(self.path, mode=0o700)
        FakeKeyStore.events.append(("acquire", self.path))
        return self

    def release(self):
        shutil.rmtree(self.path, ignore_errors=True)
        FakeKeyStore.events.append(("release", self.path))
        return True


class BrokenKeyStore(FakeKeyStore):
    def acquire(self):
        raise KeyStoreError(f"could not mount tmpfs at {self.path}: injected")


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setenv("TPMLUKS_STATE_DIR", str(tmp_path / "state"))
    FakeKeyStore.events = []
    yield


@pytest.fixture
def config(tmp_path):
    boot = tmp_path / "boot"
    boot.mkdir()
    return KeyConfig(
        device="/dev/fake0",
        keyfs=str(tmp_path / "keyfs"),
        sealed_keyfile=str(boot / "keyfile.enc"),
    ).validate()


@pytest.fixture
def journal(tmp_path):
    return RecoveryJournal(str(tmp_path / "state" / "recovery.jsonl"))
