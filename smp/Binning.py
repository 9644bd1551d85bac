from pathlib import Path

import pandas as pd
from rich.markdown import Markdown
from rich.panel import Panel

from .Assembly import select_assembly
from .console import console, log_info, log_warning
from .errors import MissingInputError
from .parsers import count_bins, parse_checkm_summary
from .report import SummaryReport
from .steps import Step, entry

# binner -> (bin directory, bin file extension)
BINNERS = {
    "metabat2": ("metabat2_bins", "fa"),
    "maxbin2": ("maxbin2_bins", "fasta"),
}


def bin_dirs(cfg):
    out = cfg.step_dir("binning")
    return {
        "out": out,
        "bam": out / "bam_files",
        "metabat2": out / "metabat2_bins",
        "maxbin2": out / "maxbin2_bins",
        "checkm": out / "checkm_quality",
    }


def make_dirs(ctx):
    for d in bin_dirs(ctx.cfg).values():
        d.mkdir(parents=True, exist_ok=True)


def choose_assembly(ctx, sample):
    asm = select_assembly(ctx.cfg, sample.name)
    if asm is None:
        raise MissingInputError(
            f"no {ctx.cfg.binning_assembler} assembly found for {sample.name} in assembly/filtered_contigs"
        )
    return asm


def unit_name(asm) -> str:
    return f"{asm.sample}_{asm.assembler}" if asm.assembler else asm.sample


def map_reads(ctx, sample, asm, unit):
    """BWA-MEM the read pair back onto its contigs; returns the sorted, indexed BAM."""
    threads = ctx.cfg.threads
    bam_dir = bin_dirs(ctx.cfg)["bam"]
    sam = bam_dir / f"{unit}.sam"
    bam = bam_dir / f"{unit}.bam"
    sorted_bam = bam_dir / f"{unit}.sorted.bam"

    ctx.run(["bwa", "index", asm.path], log=f"{unit}_bwa_index")
    ctx.run(["bwa", "mem", "-t", threads, asm.path, sample.r1, sample.r2],
            log=f"{unit}_bwa_mem", stdout=sam)
    ctx.run(["samtools", "view", "-@", threads, "-bS", sam], log=f"{unit}_samtools", stdout=bam)
    ctx.run(["samtools", "sort", "-@", threads, bam, "-o", sorted_bam], log=f"{unit}_samtools")
    ctx.run(["samtools", "index", sorted_bam], log=f"{unit}_samtools")
    for tmp in (sam, bam):
        if tmp.exists():
            tmp.unlink()
    return sorted_bam


def metabat2(ctx, asm, unit, sorted_bam):
    cfg = ctx.cfg
    depth = bin_dirs(cfg)["bam"] / f"{unit}_depth.txt"
    ctx.run(["jgi_summarize_bam_contig_depths", "--outputDepth", depth, sorted_bam], log=f"{unit}_depth")
    out = bin_dirs(cfg)["metabat2"] / unit
    out.mkdir(parents=True, exist_ok=True)
    cmd = [
        "metabat2",
        "-i", asm.path,
        "-a", depth,
        "-o", out / "bin",
        "-t", cfg.threads,
        "--minContig", cfg.binning_min_contig,
        "--minCVSum", "1.0",
        "--saveCls",
        "--seed", 42,
    ]
    ctx.run(cmd, log=f"{unit}_metabat2")
    return count_bins(out, "fa")


def maxbin2(ctx, asm, unit, sorted_bam):
    cfg = ctx.cfg
    abund = bin_dirs(cfg)["bam"] / f"{unit}_abundance.txt"
    ctx.run(["pileup.sh", f"in={sorted_bam}", f"out={abund}"], log=f"{unit}_pileup")
    out = bin_dirs(cfg)["maxbin2"] / unit
    out.mkdir(parents=True, exist_ok=True)
    cmd = [
        "run_MaxBin.pl",
        "-contig", asm.path,
        "-abund", abund,
        "-out", out / "bin",
        "-thread", cfg.threads,
        "-min_contig_length", cfg.binning_min_contig,
    ]
    ctx.run(cmd, log=f"{unit}_maxbin2")
    return count_bins(out, "fasta")


def process_sample(ctx, sample):
    asm = choose_assembly(ctx, sample)
    unit = unit_name(asm)
    log_info(f"  Using assembly: {asm.path.name}")
    log_info("  Mapping reads to contigs...")
    sorted_bam = map_reads(ctx, sample, asm, unit)
    log_info("  Binning with MetaBAT2...")
    n_metabat = metabat2(ctx, asm, unit, sorted_bam)
    log_info(f"  MetaBAT2 bins: {n_metabat}")
    log_info("  Binning with MaxBin2...")
    n_maxbin = maxbin2(ctx, asm, unit, sorted_bam)
    log_info(f"  MaxBin2 bins: {n_maxbin}")
    return {"assembly": asm.path.name, "metabat2_bins": n_metabat, "maxbin2_bins": n_maxbin}


def outputs(ctx, sample):
    asm = select_assembly(ctx.cfg, sample.name)
    if asm is None:
        return []
    unit = unit_name(asm)
    bam = bin_dirs(ctx.cfg)["bam"]
    return [
        bam / f"{unit}.sorted.bam",
        bam / f"{unit}_depth.txt",
        bam / f"{unit}_abundance.txt",
    ]


def checkm(ctx, binner):
    d = bin_dirs(ctx.cfg)
    bins_dir, ext = d[binner], BINNERS[binner][1]
    if not any(bins_dir.glob(f"*/bin.*.{ext}")):
        log_warning(f"No {binner} bins found, skipping CheckM")
        return None
    out = d["checkm"] / binner
    summary = d["checkm"] / f"{binner}_summary.tsv"
    log_info(f"Assessing {binner} bin quality with CheckM...")
    ctx.run(["checkm", "lineage_wf", "-t", ctx.cfg.threads, "-x", ext, bins_dir, out], log=f"checkm_{binner}")
    ctx.run(["checkm", "qa", out / "lineage.ms", out, "-o", 2, "-f", summary, "--tab_table"],
            log=f"checkm_{binner}")
    return summary


def finalize(ctx, results):
    cfg = ctx.cfg
    d = bin_dirs(cfg)
    quality = {}
    if cfg.checkm_db and Path(cfg.checkm_db).is_dir():
        for binner in BINNERS:
            summary = checkm(ctx, binner)
            if summary is not None and summary.is_file():
                quality[binner] = parse_checkm_summary(summary)
    else:
        log_warning(f"CheckM database not found: {cfg.checkm_db}, skipping bin quality assessment")

    report = SummaryReport("Metagenomic Binning Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Contigs Directory", cfg.step_dir("assembly", "filtered_contigs")),
        ("Reads Directory", cfg.step_dir("host_removed")),
        ("Output Directory", d["out"]),
    ])
    report.text("Binning Parameters:")
    report.fields([
        ("Threads", cfg.threads),
        ("Min contig", f"{cfg.binning_min_contig} bp"),
        ("Binners", "MetaBAT2, MaxBin2"),
    ], indent="  ")
    report.section("Binning Results Summary:")

    units = sorted({p.name for binner in BINNERS for p in d[binner].iterdir() if p.is_dir()})
    for unit in units:
        report.sample(unit, [
            ("MetaBAT2 bins", count_bins(d["metabat2"] / unit, "fa")),
            ("MaxBin2 bins", count_bins(d["maxbin2"] / unit, "fasta")),
        ])

    if quality:
        report.section("Bin Quality (CheckM):")
        rows = []
        for binner, df in quality.items():
            tiers = df["Quality"].value_counts()
            report.text(f"{binner}:")
            report.fields([(tier, int(tiers.get(tier, 0))) for tier in ("high", "medium", "low")], indent="  ")
            rows.append(df.assign(Binner=binner))
        pd.concat(rows, ignore_index=True).to_csv(d["checkm"] / "bin_quality.tsv", sep="\t", index=False)
        report.text("High: completeness >90% and contamination <5%\n"
                    "Medium: completeness >=50% and contamination <10%\n"
                    "Low: everything else")

    report.section("Output Files:")
    report.fields([
        ("BAM and depth files", d["bam"]),
        ("MetaBAT2 bins", f"{d['metabat2']}/*/bin.*.fa"),
        ("MaxBin2 bins", f"{d['maxbin2']}/*/bin.*.fasta"),
        ("CheckM results", d["checkm"]),
        ("Logs", ctx.logs_dir),
    ], indent="  ")
    summary = d["out"] / "binning_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")


def add_arguments(parser):
    parser.add_argument("-a", "--assembler", dest="binning_assembler", choices=["auto", "megahit", "spades"],
                        help="Which assembly to bin when several exist (default: auto = MEGAHIT first).")


def custom_help():
    intro = (
        "The 'smp-binning' command maps each sample's non-host reads back to its "
        "assembly (BWA-MEM, samtools), bins contigs with MetaBAT2 and MaxBin2, "
        "and assesses bin quality with CheckM."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-binning -cf config.yml\n"
        "smp-binning sample1 -cf config.yml -a spades\n"
        "```\n"
    )
    quality_md = Markdown(
        "**Bin quality tiers:** high (>90% complete, <5% contamination), "
        "medium (>=50%, <10%), low otherwise."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-binning", title_align="left"))
    console.print(examples_md)
    console.print(quality_md)
    console.print()


STEP = Step(
    name="binning",
    title="Metagenomic Binning",
    out_subdir="binning",
    input_stage="nonhost",
    input_dir=lambda cfg: cfg.step_dir("host_removed"),
    prepare=make_dirs,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    add_arguments=add_arguments,
    help=custom_help,
    next_hint="smp-arg-mge",
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
