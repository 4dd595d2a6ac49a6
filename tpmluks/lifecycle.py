"""Key lifecycle operations: temp, reset, replace.

Each operation runs inside its own tmpfs key store and checks every slot and
sealing step before moving on. Nothing is rolled back. Instead, the reset
slot is only removed once the new key is both in the header and sealed, so
the operator always keeps one working credential.
"""

from __future__ import annotations

import os
import sys
from typing import Any, Callable, Dict, Optional

from .credentials import CredentialProvider
from .errors import ConfigError, CredentialError, KeyGenerationError
from .executil import Result, log
from .keyfile import generate_keyfile, write_secret
from .keystore import EphemeralKeyStore
from .model import RESULT_CODES, KeyConfig, Outcome, StepRecord
from .recovery import RecoveryJournal, describe
from .sealing import SealingGateway
from .slots import SlotManager

UNCHANGED = "unchanged"


def _print_notice(level: str, message: str) -> None:
    print(f"[{level}] {message}", file=sys.stderr)


class KeyLifecycle:
    def __init__(
        self,
        config: KeyConfig,
        slots: SlotManager,
        sealer: SealingGateway,
        credentials: CredentialProvider,
        journal: Optional[RecoveryJournal] = None,
        keystore_factory: Callable[[str, str], Any] = EphemeralKeyStore,
        notify: Callable[[str, str], None] = _print_notice,
    ):
        self.config = config
        self.slots = slots
        self.sealer = sealer
        self.credentials = credentials
        self.journal = journal or RecoveryJournal()
        self.keystore_factory = keystore_factory
        self.notify = notify
        self._ops = {
            "temp": self.temp,
            "reset": self.reset,
            "replace": self.replace,
        }

    def run(self, action: str) -> Outcome:
        """Run ``action`` inside a freshly acquired key store.

        ``KeyStoreError`` from ``acquire()`` propagates before any key
        material exists. The store is released on every other path.
        """

        op = self._ops.get(action)
        if op is None:
            raise ConfigError(f"unknown action {action!r}")
        store = self.keystore_factory(self.config.keyfs, self.config.keyfs_size)
        store.acquire()
        outcome = None
        try:
            outcome = op()
        finally:
            released = store.release()
            if outcome is not None and released is False:
                self._warn(
                    outcome, f"key store {self.config.keyfs} could not be unmounted; unmount it by hand"
                )
        return outcome

    # -- bookkeeping ---------------------------------------------------

    def _start(self, action: str) -> Outcome:
        log("INFO", f"lifecycle.{action}.start", device=self.config.device)
        return Outcome(
            action=action,
            kind="",
            exit_code=0,
            artifacts={
                "sealed_slot": UNCHANGED,
                "reset_slot": UNCHANGED,
                "sealed_keyfile": UNCHANGED,
            },
        )

    def _step(self, outcome: Outcome, name: str, res: Result, mark: bool = False) -> bool:
        ok = res.rc == 0
        outcome.steps.append(StepRecord(name, ok, res.rc, None if ok else res.summary()))
        if mark:
            cfg = self.config
            self.journal.mark(
                outcome.action,
                cfg.device,
                name,
                ok,
                rc=res.rc,
                sealed_slot=cfg.sealed_slot,
                reset_slot=cfg.reset_slot,
                sealed_keyfile=cfg.sealed_keyfile,
            )
        return ok

    def _fail_step(self, outcome: Outcome, name: str, exc: Exception) -> None:
        outcome.steps.append(StepRecord(name, False, None, str(exc)))

    def _warn(self, outcome: Outcome, message: str) -> None:
        outcome.warnings.append(message)
        self.notify("WARN", message)

    def _finish(self, outcome: Outcome, kind: str, message: str) -> Outcome:
        outcome.kind = kind
        outcome.exit_code = RESULT_CODES[kind]
        outcome.message = message
        self.notify("INFO" if outcome.ok else "FAIL", message)
        log(
            "INFO" if outcome.ok else "ERROR",
            f"lifecycle.{outcome.action}.done",
            device=self.config.device,
            result=kind,
            artifacts=outcome.artifacts,
        )
        return outcome

    # -- operations ----------------------------------------------------

    def temp(self) -> Outcome:
        cfg = self.config
        outcome = self._start("temp")

        res = self.sealer.unseal(cfg.sealed_keyfile, cfg.keyfile_path, cfg.well_known)
        if not self._step(outcome, "unseal", res):
            return self._finish(
                outcome,
                "FAIL_TEMP",
                f"could not unseal {cfg.sealed_keyfile} ({res.summary()}); no key slot was changed",
            )

        try:
            passphrase = self.credentials.new_passphrase(
                f"Enter temporary passphrase for key slot {cfg.reset_slot}: "
            )
            write_secret(cfg.passphrase_path, passphrase)
        except (CredentialError, OSError) as exc:
            self._fail_step(outcome, "collect_passphrase", exc)
            return self._finish(outcome, "FAIL_TEMP", f"{exc}; no key slot was changed")
        outcome.steps.append(StepRecord("collect_passphrase", True))

        res = self.slots.add_key(cfg.device, cfg.reset_slot, cfg.passphrase_path, cfg.keyfile_path)
        if not self._step(outcome, "add_reset_slot", res, mark=True):
            return self._finish(
                outcome,
                "FAIL_TEMP",
                f"could not add the temporary passphrase to key slot {cfg.reset_slot} "
                f"({res.summary()}); the slot may already be in use. Nothing was changed",
            )
        outcome.artifacts["reset_slot"] = "populated"
        return self._finish(
            outcome,
            "TEMP_OK",
            f"temporary passphrase added to key slot {cfg.reset_slot}. After the next boot, "
            f"run 'reset' on {cfg.device} to seal a fresh key and remove it",
        )

    def reset(self) -> Outcome:
        cfg = self.config
        outcome = self._start("reset")

        try:
            passphrase = self.credentials.existing_passphrase(
                f"Enter any existing passphrase for {cfg.device}: "
            )
            write_secret(cfg.passphrase_path, passphrase)
        except (CredentialError, OSError) as exc:
            self._fail_step(outcome, "collect_passphrase", exc)
            return self._finish(outcome, "FAIL_RESET_ABORTED", f"{exc}; no key slot was changed")
        outcome.steps.append(StepRecord("collect_passphrase", True))

        try:
            generate_keyfile(cfg.keyfile_path, cfg.keyfile_bytes)
        except KeyGenerationError as exc:
            self._fail_step(outcome, "generate_keyfile", exc)
            return self._finish(outcome, "FAIL_RESET_ABORTED", f"{exc}; no key slot was changed")
        outcome.steps.append(StepRecord("generate_keyfile", True))

        res = self.slots.kill_slot(cfg.device, cfg.sealed_slot, cfg.passphrase_path)
        if self._step(outcome, "kill_sealed_slot", res, mark=True):
            outcome.artifacts["sealed_slot"] = "killed"
        else:
            # an empty slot on first use fails here too; adding decides
            self._warn(
                outcome,
                f"could not clear key slot {cfg.sealed_slot} ({res.summary()}); it may already be empty",
            )

        res = self.slots.add_key(cfg.device, cfg.sealed_slot, cfg.keyfile_path, cfg.passphrase_path)
        added = self._step(outcome, "add_sealed_slot", res, mark=True)
        sealed = False
        if added:
            outcome.artifacts["sealed_slot"] = "replaced"
            res = self.sealer.seal(cfg.keyfile_path, cfg.sealed_keyfile, cfg.pcrs, cfg.well_known)
            sealed = self._step(outcome, "seal", res, mark=True)
            if sealed:
                outcome.artifacts["sealed_keyfile"] = "replaced"
            else:
                self._warn(
                    outcome,
                    f"sealing failed ({res.summary()}); {cfg.sealed_keyfile} was left as it was and "
                    f"no longer matches key slot {cfg.sealed_slot}",
                )
        else:
            self._warn(
                outcome,
                f"could not add the new key to slot {cfg.sealed_slot} ({res.summary()}); "
                f"sealing was skipped and {cfg.sealed_keyfile} was left as it was",
            )

        if not (added and sealed):
            self._warn(
                outcome,
                f"key slot {cfg.reset_slot} was NOT removed; use its passphrase to unlock "
                f"{cfg.device} and run reset again",
            )
            return self._finish(
                outcome,
                "FAIL_RESET_PARTIAL",
                f"reset did not complete: key slot {cfg.sealed_slot} is "
                f"{outcome.artifacts['sealed_slot']}, {cfg.sealed_keyfile} is "
                f"{outcome.artifacts['sealed_keyfile']}",
            )

        res = self.slots.kill_slot(cfg.device, cfg.reset_slot, cfg.keyfile_path)
        if self._step(outcome, "kill_reset_slot", res, mark=True):
            outcome.artifacts["reset_slot"] = "killed"
        else:
            self._warn(
                outcome,
                f"could not clear reset key slot {cfg.reset_slot} ({res.summary()}); "
                "it may already be empty",
            )
        return self._finish(
            outcome,
            "RESET_OK",
            f"new key sealed to {cfg.sealed_keyfile} and enrolled in key slot {cfg.sealed_slot}",
        )

    def replace(self) -> Outcome:
        cfg = self.config
        outcome = self._start("replace")

        res = self.sealer.unseal(cfg.sealed_keyfile, cfg.original_keyfile_path, cfg.well_known)
        if not self._step(outcome, "unseal", res):
            return self._finish(
                outcome,
                "FAIL_REPLACE_SLOT",
                f"could not unseal {cfg.sealed_keyfile} ({res.summary()}); no key slot was changed",
            )

        try:
            generate_keyfile(cfg.keyfile_path, cfg.keyfile_bytes)
        except KeyGenerationError as exc:
            self._fail_step(outcome, "generate_keyfile", exc)
            return self._finish(outcome, "FAIL_REPLACE_SLOT", f"{exc}; no key slot was changed")
        outcome.steps.append(StepRecord("generate_keyfile", True))

        res = self.slots.change_key(cfg.device, cfg.sealed_slot, cfg.keyfile_path, cfg.original_keyfile_path)
        if not self._step(outcome, "change_key", res, mark=True):
            return self._finish(
                outcome,
                "FAIL_REPLACE_SLOT",
                f"could not change the key in slot {cfg.sealed_slot} ({res.summary()}); "
                f"{cfg.sealed_keyfile} still matches the old key",
            )
        outcome.artifacts["sealed_slot"] = "replaced"

        res = self.sealer.seal(cfg.keyfile_path, cfg.sealed_keyfile, cfg.pcrs, cfg.well_known)
        if not self._step(outcome, "seal", res, mark=True):
            self._warn(
                outcome,
                f"key slot {cfg.sealed_slot} now holds a key that was never sealed and is discarded "
                f"with {cfg.keyfs}; {cfg.sealed_keyfile} still holds the old key. Unlock with "
                f"another passphrase and run reset",
            )
            return self._finish(
                outcome,
                "FAIL_REPLACE_SEAL",
                f"key slot {cfg.sealed_slot} changed but sealing failed ({res.summary()})",
            )
        outcome.artifacts["sealed_keyfile"] = "replaced"
        return self._finish(
            outcome,
            "REPLACE_OK",
            f"key slot {cfg.sealed_slot} and {cfg.sealed_keyfile} now hold a fresh key",
        )


def status_report(config: KeyConfig, slots: Any, journal: RecoveryJournal) -> Dict[str, Any]:
    """Describe the header, the sealed keyfile, and the last recorded step."""

    report: Dict[str, Any] = {
        "device": config.device,
        "sealed_slot": config.sealed_slot,
        "reset_slot": config.reset_slot,
        "sealed_keyfile": config.sealed_keyfile,
    }
    try:
        active = sorted(slots.active_slots(config.device))
        report["active_slots"] = active
        report["sealed_slot_active"] = config.sealed_slot in active
        report["reset_slot_active"] = config.reset_slot in active
    except RuntimeError as exc:
        report["active_slots"] = None
        report["error"] = str(exc)
    report["sealed_keyfile_present"] = os.path.isfile(config.sealed_keyfile)
    marker = journal.last_marker(config.device)
    report["last_marker"] = marker
    report["hint"] = describe(
        marker,
        sealed_slot=config.sealed_slot,
        reset_slot=config.reset_slot,
        sealed_keyfile=config.sealed_keyfile,
    )
    return report
