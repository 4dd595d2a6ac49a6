import pytest

from tpmluks.errors import ConfigError
from tpmluks.model import KeyConfig, Outcome, StepRecord


def test_defaults():
    cfg = KeyConfig(device="/dev/sda2").validate()
    assert cfg.keyfs == "/root/keyfs"
    assert cfg.sealed_keyfile == "/boot/keyfile.enc"
    assert (cfg.sealed_slot, cfg.reset_slot) == (1, 2)
    assert cfg.pcrs == tuple(range(8))
    assert cfg.keyfile_path == "/root/keyfs/keyfile"
    assert cfg.original_keyfile_path == "/root/keyfs/keyfile.orig"


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"sealed_slot": 8}, "outside 0-7"),
        ({"reset_slot": -1}, "outside 0-7"),
        ({"sealed_slot": 3, "reset_slot": 3}, "must differ"),
        ({"pcrs": ()}, "at least one"),
        ({"pcrs": (0, 24)}, "outside 0-23"),
        ({"device": ""}, "no device"),
    ],
)
def test_validate_rejects(kwargs, message):
    params = {"device": "/dev/sda2"}
    params.update(kwargs)
    with pytest.raises(ConfigError, match=message):
        KeyConfig(**params).validate()


def test_outcome_as_dict():
    outcome = Outcome("temp", "TEMP_OK", 0, steps=[StepRecord("unseal", True, 0)])
    data = outcome.as_dict()
    assert outcome.ok
    assert data["steps"] == [{"name": "unseal", "ok": True, "rc": 0, "detail": None}]
