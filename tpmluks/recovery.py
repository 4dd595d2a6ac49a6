from __future__ import annotations

# Recovery markers: one JSON line per destructive or sealing step
import json
import os
import time
from typing import Any, Dict, Optional

from .executil import append_jsonl, trace
from .paths import recovery_journal_path

_HINTS = {
    ("reset", "kill_sealed_slot"): "sealed slot {sealed_slot} was cleared; the reset slot passphrase still unlocks the device",
    ("reset", "add_sealed_slot"): "sealed slot {sealed_slot} holds a new key; check that {sealed_keyfile} was re-sealed",
    ("reset", "seal"): "{sealed_keyfile} was re-sealed; reset slot {reset_slot} may still hold the temporary passphrase",
    ("reset", "kill_reset_slot"): "reset completed; reset slot {reset_slot} is empty",
    ("replace", "change_key"): "sealed slot {sealed_slot} holds a new key; {sealed_keyfile} may still hold the old one",
    ("replace", "seal"): "replace completed; {sealed_keyfile} matches sealed slot {sealed_slot}",
    ("temp", "add_reset_slot"): "reset slot {reset_slot} holds a temporary passphrase; run reset after the next boot",
}


class RecoveryJournal:
    def __init__(self, path: Optional[str] = None):
        self.path = path or recovery_journal_path()

    def mark(self, op: str, device: str, step: str, ok: bool, **fields: Any) -> Dict[str, Any]:
        rec: Dict[str, Any] = {
            "ts": int(time.time()),
            "op": op,
            "device": device,
            "step": step,
            "status": "ok" if ok else "failed",
        }
        rec.update(fields)
        append_jsonl(self.path, rec)
        trace("recovery.mark", **rec)
        return rec

    def last_marker(self, device: str) -> Optional[Dict[str, Any]]:
        if not os.path.isfile(self.path):
            return None
        last = None
        with open(self.path, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if rec.get("device") == device:
                    last = rec
        return last


def describe(marker: Optional[Dict[str, Any]], **context: Any) -> str:
    if not marker:
        return "no recorded key operations for this device"
    key = (marker.get("op"), marker.get("step"))
    template = _HINTS.get(key)
    status = marker.get("status", "ok")
    head = f"last step: {marker.get('op')}/{marker.get('step')} {status}"
    if status != "ok":
        return f"{head} (the step did not complete; earlier steps of this run stand)"
    if not template:
        return head
    fields = {"sealed_slot": "?", "reset_slot": "?", "sealed_keyfile": "the sealed keyfile"}
    fields.update({k: v for k, v in marker.items() if k in fields})
    fields.update({k: v for k, v in context.items() if v is not None})
    return f"{head} ({template.format(**fields)})"
