from tpmluks import recovery


def test_mark_and_last_marker_per_device(tmp_path):
    journal = recovery.RecoveryJournal(str(tmp_path / "state" / "recovery.jsonl"))
    journal.mark("reset", "/dev/sda2", "kill_sealed_slot", True, sealed_slot=1)
    journal.mark("temp", "/dev/sdb2", "add_reset_slot", True, reset_slot=2)
    journal.mark("reset", "/dev/sda2", "add_sealed_slot", False, sealed_slot=1)

    last = journal.last_marker("/dev/sda2")
    assert last["step"] == "add_sealed_slot"
    assert last["status"] == "failed"
    assert journal.last_marker("/dev/sdb2")["op"] == "temp"
    assert journal.last_marker("/dev/sdc2") is None


def test_last_marker_skips_garbage_lines(tmp_path):
    path = tmp_path / "recovery.jsonl"
    path.write_text('{"device": "/dev/sda2", "op": "replace", "step": "seal", "status": "ok"}\nnot json\n\n',
                    encoding="utf-8")
    assert recovery.RecoveryJournal(str(path)).last_marker("/dev/sda2")["step"] == "seal"


def test_missing_journal(tmp_path):
    assert recovery.RecoveryJournal(str(tmp_path / "none.jsonl")).last_marker("/dev/sda2") is None


def test_describe_hints():
    assert "no recorded" in recovery.describe(None)
    marker = {"op": "reset", "step": "kill_sealed_slot", "status": "ok", "sealed_slot": 1}
    text = recovery.describe(marker, reset_slot=2)
    assert "sealed slot 1 was cleared" in text
    failed = dict(marker, status="failed")
    assert "did not complete" in recovery.describe(failed)
    assert recovery.describe({"op": "other", "step": "x", "status": "ok"}) == "last step: other/x ok"
