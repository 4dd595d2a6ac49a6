import os
import stat

import pytest

from tpmluks import keyfile
from tpmluks.errors import KeyGenerationError


def test_generate_keyfile_is_random_and_read_only(tmp_path):
    a = tmp_path / "a"
    b = tmp_path / "b"
    assert keyfile.generate_keyfile(str(a)) == 2048
    keyfile.generate_keyfile(str(b))
    assert a.read_bytes() != b.read_bytes()
    assert stat.S_IMODE(os.stat(a).st_mode) == 0o400


def test_generate_keyfile_overwrites_read_only_file(tmp_path):
    path = tmp_path / "keyfile"
    keyfile.generate_keyfile(str(path), 64)
    first = path.read_bytes()
    keyfile.generate_keyfile(str(path), 64)
    assert path.read_bytes() != first
    assert len(path.read_bytes()) == 64


def test_missing_entropy_source_is_reported(tmp_path, monkeypatch):
    def no_entropy(n):
        raise NotImplementedError("no /dev/urandom")

    monkeypatch.setattr(keyfile.os, "urandom", no_entropy)
    with pytest.raises(KeyGenerationError, match="entropy"):
        keyfile.generate_keyfile(str(tmp_path / "keyfile"))


def test_unwritable_destination_is_reported(tmp_path):
    with pytest.raises(KeyGenerationError):
        keyfile.generate_keyfile(str(tmp_path / "missing-dir" / "keyfile"))


def test_write_secret_and_shred(tmp_path):
    path = tmp_path / "passphrase"
    keyfile.write_secret(str(path), b"hunter2")
    assert path.read_bytes() == b"hunter2"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert keyfile.shred_file(str(path)) is True
    assert not path.exists()
    assert keyfile.shred_file(str(path)) is False
