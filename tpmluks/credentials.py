"""Passphrase sources for the lifecycle operations."""

from __future__ import annotations

import getpass
from typing import Callable, Optional, Protocol

from .errors import CredentialError


class CredentialProvider(Protocol):
    def existing_passphrase(self, prompt: str) -> bytes:
        ...

    def new_passphrase(self, prompt: str) -> bytes:
        ...


def _encode(value: Optional[str], what: str) -> bytes:
    if value is None or value == "":
        raise CredentialError(f"empty {what}")
    return value.encode("utf-8")


class TerminalCredentials:
    """Reads passphrases from the controlling terminal; blocks until answered."""

    def __init__(self, reader: Callable[[str], str] = getpass.getpass):
        self._read = reader

    def _ask(self, prompt: str) -> str:
        try:
            return self._read(prompt)
        except (EOFError, KeyboardInterrupt) as exc:
            raise CredentialError("passphrase entry aborted") from exc

    def existing_passphrase(self, prompt: str) -> bytes:
        return _encode(self._ask(prompt), "passphrase")

    def new_passphrase(self, prompt: str) -> bytes:
        first = self._ask(prompt)
        second = self._ask("Verify passphrase: ")
        if first != second:
            raise CredentialError("passphrases do not match")
        return _encode(first, "passphrase")


class FileCredentials(TerminalCredentials):
    """Existing passphrase from a file, new ones still from the terminal."""

    def __init__(self, existing_path: str, reader: Callable[[str], str] = getpass.getpass):
        super().__init__(reader)
        self.existing_path = existing_path

    def existing_passphrase(self, prompt: str) -> bytes:
        try:
            with open(self.existing_path, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            raise CredentialError(f"cannot read passphrase file {self.existing_path}: {exc}") from exc
        # cryptsetup strips the newline when typed interactively
        data = data.rstrip(b"\r\n")
        if not data:
            raise CredentialError(f"passphrase file {self.existing_path} is empty")
        return data


class CannedCredentials:
    def __init__(self, existing: Optional[str] = None, new: Optional[str] = None):
        self.existing = existing
        self.new = new
        self.prompts: list[str] = []

    def existing_passphrase(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        return _encode(self.existing, "passphrase")

    def new_passphrase(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        return _encode(self.new, "passphrase")
