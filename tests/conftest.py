import gzip
import json
from pathlib import Path

import pytest

from smp.config import PipelineConfig
from smp.errors import ToolError
from smp.runner import ToolResult


def write_fastq(path, n_reads, seq="ACGTACGTAC"):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt") as f:
        for i in range(n_reads):
            f.write(f"@read{i}\n{seq}\n+\n{'I' * len(seq)}\n")
    return path


def write_fasta(path, lengths):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for i, n in enumerate(lengths):
            f.write(f">contig_{i}\n{'A' * n}\n")
    return path


def arg(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def fastp_handler(keep):
    """Copy the first *keep* reads of each mate and write a fastp JSON report."""
    def handler(cmd, stdout):
        for src, dst in ((arg(cmd, "--in1"), arg(cmd, "--out1")), (arg(cmd, "--in2"), arg(cmd, "--out2"))):
            with gzip.open(src, "rt") as f:
                n = sum(1 for _ in f) // 4
            write_fastq(dst, min(keep, n))
        Path(arg(cmd, "--json")).write_text(json.dumps({
            "summary": {
                "before_filtering": {"total_reads": 2000, "q30_rate": 0.9},
                "after_filtering": {"total_reads": 2 * keep, "q30_rate": 0.95},
            }
        }))
    return handler


class FakeRunner:
    """Stands in for run_tool: records every command and fakes tool outputs."""

    def __init__(self, handlers=None, fail=None):
        self.calls = []
        self.handlers = dict(handlers or {})
        # program -> set of substrings; a command containing one of them fails
        self.fail = dict(fail or {})

    def __call__(self, cmd, log_file=None, stdout=None, cwd=None, check=True):
        cmd = [str(x) for x in cmd]
        self.calls.append(cmd)
        program = Path(cmd[0]).name
        returncode = 0
        triggers = self.fail.get(program)
        if triggers is not None and (not triggers or any(t in " ".join(cmd) for t in triggers)):
            returncode = 1
        elif program in self.handlers:
            self.handlers[program](cmd, stdout)
        if stdout and not Path(stdout).exists():
            Path(stdout).parent.mkdir(parents=True, exist_ok=True)
            Path(stdout).write_text("")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            with open(log_file, "a") as f:
                f.write("$ " + " ".join(cmd) + "\n")
        result = ToolResult(cmd=cmd, returncode=returncode, log_file=Path(log_file) if log_file else None,
                            stderr_tail=["boom"] if returncode else [])
        if check and returncode:
            raise ToolError(result)
        return result

    def programs(self):
        return [Path(c[0]).name for c in self.calls]

    def calls_of(self, program):
        return [c for c in self.calls if Path(c[0]).name == program]


@pytest.fixture
def project(tmp_path):
    (tmp_path / "raw_fastq").mkdir()
    return tmp_path


@pytest.fixture
def cfg(project):
    db = project / "db"
    return PipelineConfig(
        project_dir=project,
        threads=2,
        memory_gb=4,
        kraken2_db=db / "kraken2",
        metaphlan_db=db / "metaphlan",
        humann_db=db / "humann",
        checkm_db=db / "checkm",
        gtdbtk_db=db / "gtdbtk",
        host_genome=db / "host" / "human",
        genomad_db=None,
        plasmidfinder_db=db / "plasmidfinder",
    )


@pytest.fixture
def raw_pair(project):
    def make(sample, n=1000, mate2=True):
        write_fastq(project / "raw_fastq" / f"{sample}_1.fastq.gz", n)
        if mate2:
            write_fastq(project / "raw_fastq" / f"{sample}_2.fastq.gz", n)
    return make
