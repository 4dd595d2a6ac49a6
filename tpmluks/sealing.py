"""Seal and unseal keyfiles against TPM PCR state via tpm-tools."""

from __future__ import annotations

import os
from typing import Iterable, Protocol

from .executil import Result, log, run


class SealingGateway(Protocol):
    def seal(self, source: str, sealed: str, pcrs: Iterable[int], well_known: bool) -> Result:
        ...

    def unseal(self, sealed: str, dest: str, well_known: bool) -> Result:
        ...


def pcr_args(pcrs: Iterable[int]) -> list[str]:
    args: list[str] = []
    for pcr in sorted(set(int(p) for p in pcrs)):
        args += ["-p", str(pcr)]
    return args


class TpmToolsSealer:
    """Adapter over ``tpm_sealdata`` / ``tpm_unsealdata``.

    Neither call raises on tool failure; the caller checks ``Result.rc``.
    """

    seal_tool = "tpm_sealdata"
    unseal_tool = "tpm_unsealdata"

    def __init__(self, timeout: float = 120.0):
        self.timeout = timeout

    def seal(self, source: str, sealed: str, pcrs: Iterable[int], well_known: bool) -> Result:
        # seal to a sibling temp file so a failure leaves the old blob intact
        pcrs = sorted(set(int(p) for p in pcrs))
        tmp = sealed + ".tmp"
        cmd = [self.seal_tool]
        if well_known:
            cmd.append("-z")
        cmd += pcr_args(pcrs)
        cmd += ["-i", source, "-o", tmp]
        res = run(cmd, timeout=self.timeout)
        if res.rc != 0:
            _discard(tmp)
            log("ERROR", "seal.failed", sealed=sealed, rc=res.rc, err=res.summary())
            return res
        try:
            if os.path.getsize(tmp) == 0:
                _discard(tmp)
                return Result(1, res.out, f"{self.seal_tool} produced an empty blob", res.duration)
            try:
                os.chmod(tmp, 0o600)
            except OSError as exc:
                # vfat /boot rejects mode changes; the blob is still good
                log("WARN", "seal.chmod_failed", sealed=sealed, error=str(exc))
            os.replace(tmp, sealed)
        except OSError as exc:
            _discard(tmp)
            log("ERROR", "seal.install_failed", sealed=sealed, error=str(exc))
            return Result(1, res.out, f"could not install {sealed}: {exc}", res.duration)
        log("INFO", "seal.ok", sealed=sealed, pcrs=pcrs, well_known=well_known)
        return res

    def unseal(self, sealed: str, dest: str, well_known: bool) -> Result:
        if not os.path.isfile(sealed):
            log("ERROR", "unseal.missing", sealed=sealed)
            return Result(2, "", f"sealed keyfile {sealed} not found", 0.0)
        cmd = [self.unseal_tool]
        if well_known:
            cmd.append("-z")
        cmd += ["-i", sealed, "-o", dest]
        res = run(cmd, timeout=self.timeout)
        if res.rc != 0:
            _discard(dest)
            log("ERROR", "unseal.failed", sealed=sealed, rc=res.rc, err=res.summary())
            return res
        try:
            if os.path.getsize(dest) == 0:
                _discard(dest)
                return Result(1, res.out, f"{self.unseal_tool} produced an empty keyfile", res.duration)
            os.chmod(dest, 0o400)
        except OSError as exc:
            return Result(1, res.out, f"unsealed keyfile {dest} unusable: {exc}", res.duration)
        return res


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log("WARN", "sealing.discard_failed", path=path, error=str(exc))
