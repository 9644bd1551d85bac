"""Narrow parsers for the tool outputs the summaries read.

Every parser reads exactly one format and raises ParseError naming the file
when that format is not what it expects.
"""
import gzip
import json
from collections import Counter
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import List, NamedTuple, Optional

import numpy as np
import pandas as pd
from Bio.SeqIO.FastaIO import SimpleFastaParser
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from .errors import ParseError

TWO_PLACES = Decimal("0.01")


def percentage(part, total) -> Decimal:
    """part / total * 100, rounded half-up to two decimals (0.00 when total is 0)."""
    part, total = Decimal(part), Decimal(total)
    if part < 0 or total < 0:
        raise ValueError(f"counts must be non-negative: {part}/{total}")
    if part > total:
        raise ValueError(f"subset count {part} exceeds total {total}")
    if total == 0:
        return Decimal("0.00")
    return (part / total * 100).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _open_text(path):
    path = Path(path)
    with open(path, "rb") as f:
        magic = f.read(2)
    if magic == b"\x1f\x8b":
        return gzip.open(path, "rt")
    return open(path, "r")


def count_fastq_reads(path) -> int:
    try:
        with _open_text(path) as handle:
            return sum(1 for _ in FastqGeneralIterator(handle))
    except (ValueError, OSError, EOFError) as e:
        raise ParseError(path, f"not a valid FASTQ ({e})") from e


class ContigStats(NamedTuple):
    num_contigs: int
    total_length: int
    longest: int
    mean: float
    median: float
    n50: int
    l50: int


def contig_lengths(fasta) -> List[int]:
    try:
        with _open_text(fasta) as handle:
            return [len(seq) for _, seq in SimpleFastaParser(handle)]
    except (ValueError, OSError, EOFError) as e:
        raise ParseError(fasta, f"not a valid FASTA ({e})") from e


def contig_stats(fasta) -> ContigStats:
    lengths = np.array(contig_lengths(fasta), dtype=np.int64)
    if lengths.size == 0:
        return ContigStats(0, 0, 0, 0.0, 0.0, 0, 0)
    ordered = np.sort(lengths)[::-1]
    total = int(ordered.sum())
    cumsum = np.cumsum(ordered)
    idx = int(np.argmax(cumsum >= total / 2))
    return ContigStats(
        num_contigs=int(lengths.size),
        total_length=total,
        longest=int(ordered[0]),
        mean=float(lengths.mean()),
        median=float(np.median(lengths)),
        n50=int(ordered[idx]),
        l50=idx + 1,
    )


def format_contig_stats(stats: ContigStats, sample: str, assembler: str) -> str:
    return (
        f"Assembly Statistics: {sample} ({assembler})\n"
        f"{'=' * 80}\n"
        f"Number of contigs:    {stats.num_contigs}\n"
        f"Total assembly size:  {stats.total_length} bp ({stats.total_length / 1e6:.2f} Mbp)\n"
        f"Longest contig:       {stats.longest} bp ({stats.longest / 1e3:.2f} kbp)\n"
        f"Mean contig length:   {stats.mean:.0f} bp\n"
        f"Median contig length: {int(stats.median)} bp\n"
        f"N50:                  {stats.n50} bp\n"
        f"L50:                  {stats.l50} contigs\n"
    )


def filter_contigs(src, dst, min_length: int):
    """Copy records of at least min_length bp; returns (kept, total)."""
    kept = total = 0
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        with _open_text(src) as handle, open(dst, "w") as out:
            for title, seq in SimpleFastaParser(handle):
                total += 1
                if len(seq) >= min_length:
                    out.write(f">{title}\n{seq}\n")
                    kept += 1
    except (ValueError, EOFError) as e:
        raise ParseError(src, f"not a valid FASTA ({e})") from e
    except OSError as e:
        raise ParseError(src, e.strerror or str(e)) from e
    return kept, total


class KrakenSummary(NamedTuple):
    classified_reads: int
    unclassified_reads: int
    classified_pct: Decimal
    unclassified_pct: Decimal


def parse_kraken2_report(path) -> KrakenSummary:
    """Read the unclassified (U, taxid 0) and root (taxid 1) lines of a Kraken2 report."""
    unclassified = classified = None
    with open(path, "r") as f:
        for lineno, line in enumerate(f, 1):
            if not line.strip():
                continue
            cols = line.rstrip("\n").split("\t")
            if len(cols) < 6:
                raise ParseError(path, f"line {lineno}: expected >=6 tab-separated columns")
            try:
                clade_reads = int(cols[1])
                taxid = int(cols[-2])
            except ValueError:
                raise ParseError(path, f"line {lineno}: non-numeric read count or taxid") from None
            rank = cols[-3].strip()
            if rank == "U" and taxid == 0:
                unclassified = clade_reads
            elif taxid == 1:
                classified = clade_reads
            if unclassified is not None and classified is not None:
                break
    if unclassified is None and classified is None:
        raise ParseError(path, "no unclassified or root line found")
    unclassified = unclassified or 0
    classified = classified or 0
    total = classified + unclassified
    return KrakenSummary(
        classified_reads=classified,
        unclassified_reads=unclassified,
        classified_pct=percentage(classified, total),
        unclassified_pct=percentage(unclassified, total),
    )


def count_bracken_taxa(path) -> int:
    try:
        df = pd.read_csv(path, sep="\t")
    except pd.errors.EmptyDataError:
        return 0
    if "new_est_reads" not in df.columns:
        raise ParseError(path, "missing 'new_est_reads' column, not a Bracken abundance table")
    return int(len(df))


def count_metaphlan_species(path) -> int:
    n = 0
    with open(path, "r") as f:
        for line in f:
            if line.startswith("#") or not line.strip():
                continue
            clade = line.split("\t", 1)[0]
            if "s__" in clade and "t__" not in clade:
                n += 1
    return n


def count_humann_features(path) -> int:
    """Rows of a HUMAnN table, excluding its '#' header."""
    n = 0
    with open(path, "r") as f:
        first = f.readline()
        if first and not first.startswith("#"):
            raise ParseError(path, "missing '# ...' header, not a HUMAnN table")
        for line in f:
            if line.strip():
                n += 1
    return n


def count_bins(directory, ext: str) -> int:
    directory = Path(directory)
    if not directory.is_dir():
        return 0
    return sum(1 for _ in directory.rglob(f"bin.*.{ext}"))


def quality_tier(completeness: float, contamination: float) -> str:
    if completeness > 90 and contamination < 5:
        return "high"
    if completeness >= 50 and contamination < 10:
        return "medium"
    return "low"


def parse_checkm_summary(path) -> pd.DataFrame:
    df = pd.read_csv(path, sep="\t")
    missing = {"Bin Id", "Completeness", "Contamination"} - set(df.columns)
    if missing:
        raise ParseError(path, f"missing columns {sorted(missing)}")
    df["Quality"] = [quality_tier(c, x) for c, x in zip(df["Completeness"], df["Contamination"])]
    return df


def read_abricate_table(path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        return pd.DataFrame()
    df = pd.read_csv(path, sep="\t")
    if len(df) and not {"%IDENTITY", "%COVERAGE"} <= set(df.columns):
        raise ParseError(path, "missing %IDENTITY/%COVERAGE columns, not an Abricate table")
    return df


def abricate_summary_counts(path) -> pd.Series:
    """Genes found per sample from `abricate --summary` ('.' marks absence)."""
    df = pd.read_csv(path, sep="\t", dtype=str)
    if df.empty:
        return pd.Series(dtype=int)
    if df.columns[0] != "#FILE":
        raise ParseError(path, "first column is not '#FILE', not an Abricate summary")
    genes = [c for c in df.columns[1:] if c != "NUM_FOUND"]
    names = df["#FILE"].map(lambda p: Path(p).name.rsplit("_", 1)[0])
    present = df[genes].fillna(".").ne(".").sum(axis=1).astype(int)
    return pd.Series(present.values, index=names.values)


AMR_IDENTITY_COLS = ("% Identity to reference sequence", "% Identity to reference", "% Identity")
AMR_COVERAGE_COLS = ("% Coverage of reference sequence", "% Coverage of reference")


def _pick(columns, candidates) -> Optional[str]:
    for c in candidates:
        if c in columns:
            return c
    return None


def read_amrfinder_table(path) -> pd.DataFrame:
    """AMRFinderPlus output with 'identity'/'coverage' columns normalised across versions."""
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        return pd.DataFrame()
    df = pd.read_csv(path, sep="\t")
    if df.empty:
        return df
    id_col = _pick(df.columns, AMR_IDENTITY_COLS)
    cov_col = _pick(df.columns, AMR_COVERAGE_COLS)
    if id_col is None or cov_col is None:
        raise ParseError(path, "no identity/coverage columns, not an AMRFinderPlus table")
    df = df.copy()
    df["identity"] = pd.to_numeric(df[id_col], errors="coerce")
    df["coverage"] = pd.to_numeric(df[cov_col], errors="coerce")
    return df


def novel_candidates(df: pd.DataFrame, id_col: str, cov_col: str,
                     identity_threshold: float, coverage_threshold: float) -> pd.DataFrame:
    """Hits divergent from the reference (identity below threshold) yet well covered."""
    if df.empty:
        return df
    ident = pd.to_numeric(df[id_col], errors="coerce")
    cov = pd.to_numeric(df[cov_col], errors="coerce")
    novel = df[(ident < identity_threshold) & (cov >= coverage_threshold)].copy()
    novel["NOVELTY_SCORE"] = 100 - pd.to_numeric(novel[id_col], errors="coerce")
    return novel.sort_values("NOVELTY_SCORE", ascending=False, kind="mergesort")


def _aro_categories(node):
    if isinstance(node, dict):
        if "ARO_category" in node and isinstance(node["ARO_category"], dict):
            yield from node["ARO_category"].values()
            return
        for child in node.values():
            yield from _aro_categories(child)


def parse_rgi_drug_classes(path) -> Counter:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except ValueError as e:
        raise ParseError(path, f"invalid JSON ({e})") from e
    counts = Counter()
    for category in _aro_categories(data):
        if not isinstance(category, dict) or "category_aro_name" not in category:
            continue
        if category.get("category_aro_class_name", "Drug Class") != "Drug Class":
            continue
        counts[category["category_aro_name"]] += 1
    return counts
