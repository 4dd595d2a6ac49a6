"""CLI entrypoint: ``tpmluks [options] DEVICE ACTION``."""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, Optional

from . import safety
from .credentials import FileCredentials, TerminalCredentials
from .errors import ConfigError, KeyStoreError, LockError, PrivilegeError
from .executil import append_jsonl, resolve_log_path, trace
from .lifecycle import KeyLifecycle, status_report
from .model import ACTIONS, DEFAULT_PCRS, PCR_RANGE, RESULT_CODES, SLOT_RANGE, Flags, KeyConfig
from .paths import DEFAULT_KEYFS, DEFAULT_SEALED_KEYFILE, lock_path
from .recovery import RecoveryJournal
from .sealing import TpmToolsSealer
from .slots import CryptsetupSlots

JSON_OUTPUT_ENABLED = True
_CURRENT_DEVICE: Optional[str] = None


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if _CURRENT_DEVICE:
        payload["device"] = _CURRENT_DEVICE
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        raise SystemExit(RESULT_CODES["FAIL_USAGE"])


def _ranged(name: str, allowed: range):
    def parse(text: str) -> int:
        try:
            value = int(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"{name} must be an integer, got {text!r}")
        if value not in allowed:
            raise argparse.ArgumentTypeError(f"{name} must be {allowed.start}-{allowed.stop - 1}, got {value}")
        return value

    parse.__name__ = name
    return parse


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="tpmluks",
        description="Manage the TPM-sealed LUKS key of DEVICE.",
        epilog=(
            "actions: temp = add a temporary passphrase to the reset slot; "
            "reset = enroll and seal a fresh key using any passphrase; "
            "replace = swap the sealed key for a fresh one; "
            "status = show slot and recovery state"
        ),
    )
    parser.add_argument("device", metavar="DEVICE")
    parser.add_argument("action", metavar="ACTION", choices=ACTIONS)
    parser.add_argument("-m", "--keyfs", default=DEFAULT_KEYFS, help="tmpfs mount point for cleartext keys")
    parser.add_argument("-k", "--sealed-keyfile", default=DEFAULT_SEALED_KEYFILE)
    parser.add_argument("-s", "--sealed-slot", type=_ranged("slot", SLOT_RANGE), default=1)
    parser.add_argument("-r", "--reset-slot", type=_ranged("slot", SLOT_RANGE), default=2)
    parser.add_argument(
        "-p",
        "--pcr",
        dest="pcrs",
        action="append",
        type=_ranged("pcr", PCR_RANGE),
        default=None,
        help="PCR to seal against; repeatable (default 0-7)",
    )
    parser.add_argument("-z", "--well-known", action="store_true", help="use the TPM well-known SRK secret")
    parser.add_argument("--passphrase-file", default=None, help="existing passphrase for reset")
    parser.add_argument("--lock-path", default=None)
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    return parser


def _config_from_args(args: argparse.Namespace) -> KeyConfig:
    return KeyConfig(
        device=args.device,
        keyfs=args.keyfs,
        sealed_keyfile=args.sealed_keyfile,
        sealed_slot=args.sealed_slot,
        reset_slot=args.reset_slot,
        pcrs=tuple(sorted(set(args.pcrs))) if args.pcrs else DEFAULT_PCRS,
        well_known=args.well_known,
    ).validate()


def _build_lifecycle(config: KeyConfig, flags: Flags) -> KeyLifecycle:
    if flags.passphrase_file:
        credentials = FileCredentials(flags.passphrase_file)
    else:
        credentials = TerminalCredentials()
    return KeyLifecycle(config, CryptsetupSlots(), TpmToolsSealer(), credentials, RecoveryJournal())


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    global JSON_OUTPUT_ENABLED, _CURRENT_DEVICE
    JSON_OUTPUT_ENABLED = bool(args.json)
    _CURRENT_DEVICE = args.device

    try:
        config = _config_from_args(args)
    except ConfigError as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        _emit_result("FAIL_CONFIG", extra={"reason": str(exc)})

    flags = Flags(json=args.json, passphrase_file=args.passphrase_file)
    if flags.passphrase_file and args.action != "reset":
        print("[WARN] --passphrase-file is only used by reset", file=sys.stderr)

    trace(
        "cli.args",
        device=config.device,
        action=args.action,
        keyfs=config.keyfs,
        sealed_keyfile=config.sealed_keyfile,
        sealed_slot=config.sealed_slot,
        reset_slot=config.reset_slot,
        pcrs=list(config.pcrs),
        well_known=config.well_known,
    )

    try:
        safety.require_root()
    except PrivilegeError as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        _emit_result("FAIL_PRIVILEGE", extra={"reason": str(exc)})
    try:
        safety.require_device(config.device)
    except ConfigError as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        _emit_result("FAIL_CONFIG", extra={"reason": str(exc)})

    if args.action == "status":
        report = status_report(config, CryptsetupSlots(), RecoveryJournal())
        print(f"[INFO] {report['hint']}", file=sys.stderr)
        _emit_result("STATUS_OK", extra={"status": report})

    try:
        with safety.instance_lock(args.lock_path or lock_path()):
            outcome = _build_lifecycle(config, flags).run(args.action)
    except LockError as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        _emit_result("FAIL_LOCKED", extra={"reason": str(exc)})
    except KeyStoreError as exc:
        print(f"[FAIL] {exc}; no key material was touched", file=sys.stderr)
        _emit_result("FAIL_KEYSTORE", extra={"reason": str(exc)})

    _emit_result(outcome.kind, extra=outcome.as_dict(), exit_code=outcome.exit_code)
    return outcome.exit_code


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        print(f"[FAIL] unexpected error: {exc}", file=sys.stderr)
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 1


if __name__ == "__main__":
    sys.exit(main())
