import json

from smp.checkpoint import Status, StatusStore, atomic_write_text


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "sub" / "file.txt"
    atomic_write_text(target, "one\n")
    atomic_write_text(target, "two\n")
    assert target.read_text() == "two\n"
    assert [p.name for p in target.parent.iterdir()] == ["file.txt"]


def test_unknown_record_is_pending(tmp_path):
    store = StatusStore(tmp_path)
    assert store.status("qc", "s1") is Status.PENDING
    assert store.samples("qc") == []


def test_mark_and_read_back(tmp_path):
    store = StatusStore(tmp_path)
    out = tmp_path / "out.txt"
    out.write_text("x")
    store.mark("qc", "s1", Status.COMPLETE, outputs=[out])
    record = json.loads(store.path("qc", "s1").read_text())
    assert record["status"] == "complete"
    assert record["outputs"] == [str(out)]
    assert store.samples("qc") == ["s1"]


def test_complete_requires_outputs(tmp_path):
    store = StatusStore(tmp_path)
    out = tmp_path / "out.txt"
    store.mark("qc", "s1", Status.COMPLETE, outputs=[out])
    assert not store.is_complete("qc", "s1", [out])
    out.write_text("x")
    assert store.is_complete("qc", "s1", [out])


def test_complete_with_no_outputs_is_not_complete(tmp_path):
    store = StatusStore(tmp_path)
    store.mark("binning", "s1", Status.COMPLETE, outputs=[])
    assert store.status("binning", "s1") is Status.COMPLETE
    assert not store.is_complete("binning", "s1", [])


def test_interrupted_run_is_not_complete(tmp_path):
    store = StatusStore(tmp_path)
    out = tmp_path / "partial.txt"
    out.write_text("half")
    store.mark("qc", "s1", Status.RUNNING)
    assert store.status("qc", "s1") is Status.RUNNING
    assert not store.is_complete("qc", "s1", [out])
    store.mark("qc", "s1", Status.FAILED, message="fastp failed")
    assert not store.is_complete("qc", "s1", [out])


def test_corrupt_record_reads_as_pending(tmp_path):
    store = StatusStore(tmp_path)
    p = store.path("qc", "s1")
    p.parent.mkdir(parents=True)
    p.write_text("{not json")
    assert store.status("qc", "s1") is Status.PENDING
    p.write_text(json.dumps({"status": "exploded"}))
    assert store.status("qc", "s1") is Status.PENDING
