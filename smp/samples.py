import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from .console import log_warning

# Read-pair naming per stage: {sample}_1<suffix> / {sample}_2<suffix>
READ_SUFFIXES = {
    "raw": ".fastq.gz",
    "trimmed": ".trimmed.fastq.gz",
    "nonhost": ".nonhost.fastq.gz",
}

ASSEMBLY_PATTERN = re.compile(r"^(?P<sample>.+?)(?:_(?P<assembler>megahit|spades))?_contigs\.fa$")


@dataclass(frozen=True)
class Sample:
    name: str
    r1: Path
    r2: Path

    @property
    def reads(self) -> Tuple[Path, Path]:
        return (self.r1, self.r2)


class Discovery(NamedTuple):
    samples: List[Sample]
    missing: List[str]


def read_path(directory, sample: str, mate: int, stage: str) -> Path:
    return Path(directory) / f"{sample}_{mate}{READ_SUFFIXES[stage]}"


def sample_from_forward(path: Path, stage: str) -> str:
    tail = f"_1{READ_SUFFIXES[stage]}"
    return path.name[: -len(tail)]


def discover_samples(directory, stage: str, names: Optional[Iterable[str]] = None) -> Discovery:
    """Pair up {sample}_1/_2 files of one stage, in filename order.

    A forward file without its mate is skipped with a warning. When *names*
    is given the result follows that order, and names with no complete pair
    end up in ``missing``.
    """
    directory = Path(directory)
    suffix = READ_SUFFIXES[stage]
    found: Dict[str, Sample] = {}
    if directory.is_dir():
        for r1 in sorted(directory.glob(f"*_1{suffix}")):
            sample = sample_from_forward(r1, stage)
            r2 = read_path(directory, sample, 2, stage)
            if not r2.is_file():
                log_warning(f"Pair not found for {sample}, skipping...")
                continue
            found[sample] = Sample(sample, r1, r2)
    else:
        log_warning(f"Input directory not found: {directory}")

    if names is None:
        return Discovery(samples=list(found.values()), missing=[])

    samples, missing = [], []
    for name in names:
        if name in found:
            samples.append(found[name])
        else:
            missing.append(name)
    return Discovery(samples=samples, missing=missing)


def read_sample_list(path) -> List[str]:
    names: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line not in names:
                names.append(line)
    return names


class Assembly(NamedTuple):
    sample: str
    assembler: Optional[str]
    path: Path


def find_assemblies(directory, sample: Optional[str] = None) -> List[Assembly]:
    """Map contig files back to (sample, assembler) by their names."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    found = []
    for path in sorted(directory.glob("*_contigs.fa")):
        m = ASSEMBLY_PATTERN.match(path.name)
        if not m:
            continue
        if sample is not None and m.group("sample") != sample:
            continue
        found.append(Assembly(m.group("sample"), m.group("assembler"), path))
    return found
