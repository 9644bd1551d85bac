from pathlib import Path

import pandas as pd
import pytest

from smp.Batch import batch, build_parser
from smp.SMP_end2end import select_steps
from smp.checkpoint import Status, StatusStore
from smp.errors import ConfigError
from smp.samples import read_path

from .conftest import FakeRunner, arg, fastp_handler, write_fasta, write_fastq


def bowtie2_handler(cmd, stdout):
    pattern = arg(cmd, "--un-conc-gz")
    for mate in ("1", "2"):
        write_fastq(pattern.replace("%", mate), 4)


@pytest.fixture
def sample_list(project, raw_pair, monkeypatch):
    monkeypatch.chdir(project)
    raw_pair("sampleA", n=10)
    raw_pair("sampleB", n=10)
    p = project / "samples.txt"
    p.write_text("sampleA\nsampleB\n")
    return p


def run(argv, runner):
    return batch(build_parser().parse_args(argv), runner=runner)


def read_status(project):
    return pd.read_csv(project / "batch_status.tsv", sep="\t", index_col=0)


def test_batch_qc_only(project, sample_list):
    fake = FakeRunner(handlers={"fastp": fastp_handler(8)})
    code = run([str(sample_list), "-d", str(project), "--steps", "qc"], fake)
    assert code == 0
    fastp_inputs = [arg(c, "--in1") for c in fake.calls_of("fastp")]
    assert [p.rsplit("/", 1)[1] for p in fastp_inputs] == ["sampleA_1.fastq.gz", "sampleB_1.fastq.gz"]
    status = read_status(project)
    assert list(status.index) == ["sampleA", "sampleB"]
    assert list(status.columns) == ["qc"]
    assert list(status["qc"]) == ["complete", "complete"]
    assert (project / "qc_reports" / "qc_summary.txt").is_file()


def test_batch_failure_moves_on(project, sample_list):
    fake = FakeRunner(handlers={"fastp": fastp_handler(8)}, fail={"fastp": {"sampleA_1"}})
    code = run([str(sample_list), "-d", str(project), "--steps", "qc"], fake)
    assert code == 1
    assert list(read_status(project)["qc"]) == ["failed", "complete"]


def test_batch_skips_later_steps_of_failed_sample(project, sample_list):
    host = project / "db" / "host"
    host.mkdir(parents=True)
    (host / "human.1.bt2").write_text("")
    cfg_file = project / "config.yml"
    cfg_file.write_text(f"project_dir: {project}\nhost_genome: {host / 'human'}\n")

    fake = FakeRunner(handlers={"fastp": fastp_handler(8), "bowtie2": bowtie2_handler},
                      fail={"fastp": {"sampleA_1"}})
    code = run([str(sample_list), "-cf", str(cfg_file), "--steps", "qc,host_removal"], fake)
    assert code == 1
    status = read_status(project)
    assert status.loc["sampleA"].tolist() == ["failed", "skipped"]
    assert status.loc["sampleB"].tolist() == ["complete", "complete"]
    assert len(fake.calls_of("bowtie2")) == 1
    assert (project / "host_removed" / "alignment_stats" / "sampleB_stats.txt").is_file()


def test_batch_sample_without_reads_is_skipped(project, raw_pair, monkeypatch):
    monkeypatch.chdir(project)
    raw_pair("sampleA", n=10)
    p = project / "samples.txt"
    p.write_text("sampleA\nsampleB\n")
    fake = FakeRunner(handlers={"fastp": fastp_handler(8)})
    assert run([str(p), "-d", str(project), "--steps", "qc"], fake) == 0
    assert read_status(project)["qc"].to_dict() == {"sampleA": "complete", "sampleB": "skipped"}
    assert len(fake.calls_of("fastp")) == 1


def test_batch_tool_without_output_does_not_stop_the_batch(project, sample_list):
    for sample in ("sampleA", "sampleB"):
        for mate in (1, 2):
            write_fastq(read_path(project / "host_removed", sample, mate, "nonhost"), 4)

    def megahit(cmd, stdout):
        out = Path(arg(cmd, "-o"))
        out.mkdir(parents=True)
        # exits cleanly for sampleA without writing contigs
        if arg(cmd, "--out-prefix") != "sampleA":
            write_fasta(out / f"{arg(cmd, '--out-prefix')}.contigs.fa", [3000, 800])

    fake = FakeRunner(handlers={"megahit": megahit})
    code = run([str(sample_list), "-d", str(project), "--steps", "assembly"], fake)
    assert code == 1
    assert read_status(project)["assembly"].tolist() == ["failed", "complete"]
    assert len(fake.calls_of("megahit")) == 2
    store = StatusStore(project / ".checkpoints")
    assert store.status("assembly", "sampleA") is Status.FAILED
    assert store.status("assembly", "sampleB") is Status.COMPLETE


def test_batch_unavailable_step_is_skipped(project, sample_list):
    fake = FakeRunner(handlers={"fastp": fastp_handler(8)})
    # default host_genome does not exist under the test project
    code = run([str(sample_list), "-d", str(project), "--steps", "qc,host_removal"], fake)
    assert code == 0
    status = read_status(project)
    assert status["host_removal"].tolist() == ["skipped", "skipped"]
    assert fake.calls_of("bowtie2") == []


def test_batch_empty_sample_list(project, monkeypatch):
    monkeypatch.chdir(project)
    p = project / "samples.txt"
    p.write_text("# nothing yet\n")
    assert run([str(p), "-d", str(project)], FakeRunner()) == 0
    assert not (project / "batch_status.tsv").exists()


def test_select_steps():
    assert [s.name for s in select_steps("taxonomy,qc")] == ["qc", "taxonomy"]
    assert [s.name for s in select_steps(from_step="binning")] == ["binning", "arg_mge"]
    with pytest.raises(ConfigError):
        select_steps("qc,bogus")
