import re

import pytest

from smp import Assembly, QC
from smp.checkpoint import Status
from smp.errors import ParseError, ToolError
from smp.steps import CACHED, COMPLETE, FAILED, SKIPPED, run_step, step_main, store_for

from .conftest import FakeRunner, arg, fastp_handler, write_fastq


def qc_runner(keep=900, fail=None):
    return FakeRunner(handlers={"fastp": fastp_handler(keep)}, fail=fail)


def test_qc_runs_each_sample_once_in_order(cfg, raw_pair):
    for s in ("s2", "s1"):
        raw_pair(s, n=10)
    fake = qc_runner(keep=8)
    results = run_step(QC.STEP, cfg, runner=fake)
    assert [(r.sample, r.status) for r in results] == [("s1", COMPLETE), ("s2", COMPLETE)]
    fastp_calls = fake.calls_of("fastp")
    assert len(fastp_calls) == 2
    assert "s1_1.fastq.gz" in fastp_calls[0][fastp_calls[0].index("--in1") + 1]
    # raw fastqc, fastp, trimmed fastqc per sample, then three multiqc reports
    assert fake.programs() == ["fastqc", "fastp", "fastqc"] * 2 + ["multiqc"] * 3


def test_qc_retention_reported(cfg, raw_pair, project):
    raw_pair("sample1", n=1000)
    results = run_step(QC.STEP, cfg, runner=qc_runner(keep=873))
    assert results[0].metrics["retention_pct"] == "87.30"
    summary = (project / "qc_reports" / "qc_summary.txt").read_text()
    assert "Sample: sample1" in summary
    assert re.search(r"Total raw reads:\s+1000", summary)
    assert re.search(r"Trimmed reads:\s+873", summary)
    assert re.search(r"Retention rate:\s+87.30%", summary)
    assert (project / "qc_reports" / "fastp_summary.tsv").is_file()


def test_qc_fastp_command(cfg, raw_pair):
    raw_pair("s1", n=5)
    fake = qc_runner(keep=5)
    run_step(QC.STEP, cfg, runner=fake)
    cmd = fake.calls_of("fastp")[0]
    assert cmd[cmd.index("--length_required") + 1] == "50"
    assert cmd[cmd.index("--thread") + 1] == "2"
    assert "--detect_adapter_for_pe" in cmd
    assert cmd[cmd.index("--out1") + 1].endswith("trimmed_fastq/s1_1.trimmed.fastq.gz")


def test_sample_without_mate_is_not_processed(cfg, raw_pair):
    raw_pair("good", n=5)
    raw_pair("lonely", n=5, mate2=False)
    fake = qc_runner(keep=5)
    results = run_step(QC.STEP, cfg, runner=fake)
    assert [r.sample for r in results] == ["good"]
    assert not any("lonely" in " ".join(c) for c in fake.calls_of("fastp"))


def test_named_sample_without_input_is_skipped(cfg, raw_pair):
    raw_pair("s1", n=5)
    results = run_step(QC.STEP, cfg, names=["ghost"], runner=qc_runner())
    assert [(r.sample, r.status) for r in results] == [("ghost", SKIPPED)]


def test_resume_skips_completed_samples(cfg, raw_pair, project):
    raw_pair("s1", n=20)
    run_step(QC.STEP, cfg, runner=qc_runner(keep=15))
    trimmed = project / "trimmed_fastq" / "s1_1.trimmed.fastq.gz"
    before = trimmed.read_bytes()

    again = qc_runner(keep=3)
    results = run_step(QC.STEP, cfg, runner=again)
    assert results[0].status == CACHED
    assert again.calls_of("fastp") == []
    assert trimmed.read_bytes() == before


def test_no_resume_reruns(cfg, raw_pair):
    raw_pair("s1", n=20)
    run_step(QC.STEP, cfg, runner=qc_runner(keep=15))
    again = qc_runner(keep=15)
    results = run_step(QC.STEP, cfg, runner=again, resume=False)
    assert results[0].status == COMPLETE
    assert len(again.calls_of("fastp")) == 1


def test_deleted_output_triggers_rerun(cfg, raw_pair, project):
    raw_pair("s1", n=20)
    run_step(QC.STEP, cfg, runner=qc_runner(keep=15))
    (project / "trimmed_fastq" / "s1_2.trimmed.fastq.gz").unlink()
    again = qc_runner(keep=15)
    assert run_step(QC.STEP, cfg, runner=again)[0].status == COMPLETE
    assert len(again.calls_of("fastp")) == 1


def test_failure_stops_the_step(cfg, raw_pair):
    raw_pair("s1", n=5)
    raw_pair("s2", n=5)
    fake = qc_runner(fail={"fastp": {"s1_1"}})
    with pytest.raises(ToolError):
        run_step(QC.STEP, cfg, runner=fake)
    assert not any("s2_1" in " ".join(c) for c in fake.calls_of("fastp"))
    assert store_for(cfg).status("qc", "s1") is Status.FAILED


def test_keep_going_records_failure(cfg, raw_pair, project):
    raw_pair("s1", n=5)
    raw_pair("s2", n=5)
    fake = qc_runner(keep=5, fail={"fastp": {"s1_1"}})
    results = run_step(QC.STEP, cfg, runner=fake, keep_going=True)
    assert [(r.sample, r.status) for r in results] == [("s1", FAILED), ("s2", COMPLETE)]
    assert results[0].returncode == 1
    summary = (project / "qc_reports" / "qc_summary.txt").read_text()
    assert "Sample: s2" in summary
    assert "Sample: s1" not in summary


def test_failed_sample_reruns_on_resume(cfg, raw_pair):
    raw_pair("s1", n=5)
    run_step(QC.STEP, cfg, runner=qc_runner(fail={"fastp": set()}), keep_going=True)
    fixed = qc_runner(keep=5)
    assert run_step(QC.STEP, cfg, runner=fixed)[0].status == COMPLETE
    assert len(fixed.calls_of("fastp")) == 1


def test_missing_output_is_a_failure(cfg, raw_pair):
    raw_pair("s1", n=5)
    # fastp "succeeds" without writing anything
    results = run_step(QC.STEP, cfg, runner=FakeRunner(), keep_going=True)
    assert results[0].status == FAILED


def test_step_main_bad_project_dir(tmp_path):
    assert step_main(QC.STEP, ["-d", str(tmp_path / "nope")]) == 1


def test_step_main_missing_tool_exit_code(project, raw_pair, monkeypatch, tmp_path):
    raw_pair("s1", n=5)
    empty_bin = tmp_path / "empty_bin"
    empty_bin.mkdir()
    monkeypatch.setenv("PATH", str(empty_bin))
    monkeypatch.chdir(project)
    assert step_main(QC.STEP, ["s1", "-d", str(project)]) == 127


def test_retention_rejects_more_trimmed_than_raw(tmp_path):
    raw = write_fastq(tmp_path / "raw_1.fastq.gz", 5)
    trimmed = write_fastq(tmp_path / "trimmed_1.fastq.gz", 8)
    with pytest.raises(ParseError, match="trimmed_1.fastq.gz"):
        QC.retention(raw, trimmed)


def test_stale_trimmed_reads_fail_the_sample(cfg, raw_pair, project):
    raw_pair("s1", n=5)
    raw_pair("s2", n=5)
    keep = fastp_handler(5)

    def stale_fastp(cmd, stdout):
        keep(cmd, stdout)
        if "s1_1" in arg(cmd, "--in1"):
            write_fastq(arg(cmd, "--out1"), 12)

    fake = FakeRunner(handlers={"fastp": stale_fastp})
    results = run_step(QC.STEP, cfg, runner=fake, keep_going=True)
    assert [(r.sample, r.status) for r in results] == [("s1", FAILED), ("s2", COMPLETE)]
    assert store_for(cfg).status("qc", "s1") is Status.FAILED
    summary = (project / "qc_reports" / "qc_summary.txt").read_text()
    assert "Sample: s2" in summary
    assert "Sample: s1" not in summary


def test_os_error_in_a_sample_is_recorded_as_failure(cfg, project, monkeypatch):
    for mate in (1, 2):
        write_fastq(project / "host_removed" / f"s1_{mate}.nonhost.fastq.gz", 5)

    def unreadable(ctx, sample):
        raise PermissionError(13, "Permission denied", str(project / "locked.fa"))

    monkeypatch.setitem(Assembly.RUNNERS, "megahit", unreadable)
    results = run_step(Assembly.STEP, cfg, runner=FakeRunner(), keep_going=True)
    assert results[0].status == FAILED
    assert "Permission denied" in results[0].message
    assert store_for(cfg).status("assembly", "s1") is Status.FAILED

    with pytest.raises(ParseError):
        run_step(Assembly.STEP, cfg, runner=FakeRunner())
