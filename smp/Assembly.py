import shutil
from pathlib import Path
from typing import Optional

from rich.markdown import Markdown
from rich.panel import Panel

from .checkpoint import atomic_write_text
from .console import console, log_info
from .errors import ParseError
from .parsers import contig_stats, filter_contigs, format_contig_stats
from .report import SummaryReport
from .samples import Assembly, find_assemblies
from .steps import Step, entry

ASSEMBLER_TITLES = {"megahit": "MEGAHIT", "spades": "metaSPAdes"}


def asm_dirs(cfg):
    out = cfg.step_dir("assembly")
    return {
        "out": out,
        "megahit": out / "megahit",
        "spades": out / "spades",
        "stats": out / "assembly_stats",
        "filtered": out / "filtered_contigs",
        "quast": out / "quast_reports",
    }


def assemblers(cfg):
    if cfg.assembler == "both":
        return ["megahit", "spades"]
    return [cfg.assembler]


def contigs_path(cfg, sample: str, assembler: str) -> Path:
    return asm_dirs(cfg)["filtered"] / f"{sample}_{assembler}_contigs.fa"


def stats_path(cfg, sample: str, assembler: str) -> Path:
    return asm_dirs(cfg)["stats"] / f"{sample}_{assembler}_stats.txt"


def select_assembly(cfg, sample: str, preference: Optional[str] = None) -> Optional[Assembly]:
    """Pick one assembly of *sample* from filtered_contigs.

    'auto' prefers MEGAHIT, then metaSPAdes, then an unlabelled
    {sample}_contigs.fa; a named assembler only accepts its own file.
    """
    preference = preference or cfg.binning_assembler
    found = {a.assembler: a for a in find_assemblies(asm_dirs(cfg)["filtered"], sample)}
    if preference != "auto":
        return found.get(preference)
    for key in ("megahit", "spades", None):
        if key in found:
            return found[key]
    return None


def make_dirs(ctx):
    for d in asm_dirs(ctx.cfg).values():
        d.mkdir(parents=True, exist_ok=True)
    log_info(f"Assembler(s): {', '.join(ASSEMBLER_TITLES[a] for a in assemblers(ctx.cfg))}")


def megahit(ctx, sample):
    cfg = ctx.cfg
    out = asm_dirs(cfg)["megahit"] / sample.name
    # megahit refuses an existing output directory
    if out.is_dir():
        shutil.rmtree(out)
    cmd = [
        "megahit",
        "-1", sample.r1,
        "-2", sample.r2,
        "-o", out,
        "--num-cpu-threads", cfg.threads,
        "--memory", f"{cfg.memory_gb}e9",
        "--min-contig-len", cfg.min_contig_length,
        "--k-min", 21,
        "--k-max", 141,
        "--k-step", 12,
        "--out-prefix", sample.name,
    ]
    ctx.run(cmd, log=f"{sample.name}_megahit")
    contigs = out / f"{sample.name}.contigs.fa"
    if not contigs.is_file():
        raise ParseError(contigs, "MEGAHIT finished without writing contigs")
    dest = contigs_path(cfg, sample.name, "megahit")
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(contigs, dest)
    return dest


def metaspades(ctx, sample):
    cfg = ctx.cfg
    out = asm_dirs(cfg)["spades"] / sample.name
    cmd = [
        "metaspades.py",
        "-1", sample.r1,
        "-2", sample.r2,
        "-o", out,
        "-t", cfg.threads,
        "-m", cfg.memory_gb,
    ]
    ctx.run(cmd, log=f"{sample.name}_spades")
    dest = contigs_path(cfg, sample.name, "spades")
    kept, total = filter_contigs(out / "contigs.fasta", dest, cfg.min_contig_length)
    log_info(f"  Kept {kept} of {total} contigs >= {cfg.min_contig_length} bp")
    return dest


RUNNERS = {"megahit": megahit, "spades": metaspades}


def write_stats(cfg, sample: str, assembler: str, fasta: Path):
    stats = contig_stats(fasta)
    atomic_write_text(stats_path(cfg, sample, assembler), format_contig_stats(stats, sample, assembler))
    return stats


def process_sample(ctx, sample):
    metrics = {}
    for assembler in assemblers(ctx.cfg):
        log_info(f"  Running {ASSEMBLER_TITLES[assembler]}...")
        fasta = RUNNERS[assembler](ctx, sample)
        stats = write_stats(ctx.cfg, sample.name, assembler, fasta)
        log_info(f"  {ASSEMBLER_TITLES[assembler]}: {stats.num_contigs} contigs, N50 {stats.n50} bp")
        metrics[f"{assembler}_contigs"] = stats.num_contigs
        metrics[f"{assembler}_n50"] = stats.n50
    return metrics


def outputs(ctx, sample):
    files = []
    for assembler in assemblers(ctx.cfg):
        files.append(contigs_path(ctx.cfg, sample.name, assembler))
        files.append(stats_path(ctx.cfg, sample.name, assembler))
    return files


def quast(ctx, assembler):
    d = asm_dirs(ctx.cfg)
    contigs = sorted(d["filtered"].glob(f"*_{assembler}_contigs.fa"))
    if not contigs:
        return
    log_info(f"Running QUAST on {ASSEMBLER_TITLES[assembler]} assemblies...")
    cmd = [
        "quast.py", *contigs,
        "-o", d["quast"] / assembler,
        "--threads", ctx.cfg.threads,
        "--min-contig", ctx.cfg.min_contig_length,
        "--no-plots",
    ]
    ctx.run(cmd, log=f"quast_{assembler}")


def finalize(ctx, results):
    cfg = ctx.cfg
    d = asm_dirs(cfg)
    used = assemblers(cfg)
    for assembler in used:
        quast(ctx, assembler)

    report = SummaryReport("Metagenomic Assembly Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Input Directory", cfg.step_dir("host_removed")),
        ("Output Directory", d["out"]),
    ])
    report.text("Assembly Parameters:")
    report.fields([
        ("Threads", cfg.threads),
        ("Memory", f"{cfg.memory_gb} GB"),
        ("Min contig length", f"{cfg.min_contig_length} bp"),
    ], indent="  ")
    report.text("Assemblers Used:")
    report.fields([(title, "Yes" if key in used else "No") for key, title in ASSEMBLER_TITLES.items()],
                  indent="  ")
    report.section("Assembly Statistics Summary:")
    for stats in sorted(d["stats"].glob("*_stats.txt")):
        report.text(stats.read_text())
    report.section("Output Files:")
    report.fields([
        ("Filtered contigs", d["filtered"]),
        ("Assembly statistics", d["stats"]),
        ("QUAST reports", d["quast"]),
        ("Logs", ctx.logs_dir),
    ], indent="  ")
    summary = d["out"] / "assembly_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")


def add_arguments(parser):
    parser.add_argument("-a", "--assembler", choices=["megahit", "spades", "both"],
                        help="Assembler to run (default from config: megahit).")
    parser.add_argument("--min-contig", dest="min_contig_length", type=int,
                        help="Minimum contig length kept (bp).")


def custom_help():
    intro = (
        "The 'smp-assembly' command assembles the non-host read pairs of each "
        "sample with MEGAHIT, metaSPAdes or both, keeps contigs above the "
        "minimum length, computes N50/L50 statistics and runs QUAST."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-assembly -cf config.yml\n"
        "smp-assembly sample1 -cf config.yml -a both -m 64\n"
        "```\n"
    )
    out_md = Markdown(
        "**Output:** `assembly/filtered_contigs/{sample}_{megahit,spades}_contigs.fa`, "
        "`assembly/assembly_stats/` and `assembly/assembly_summary.txt`."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-assembly", title_align="left"))
    console.print(examples_md)
    console.print(out_md)
    console.print()


STEP = Step(
    name="assembly",
    title="Metagenomic Assembly",
    out_subdir="assembly",
    input_stage="nonhost",
    input_dir=lambda cfg: cfg.step_dir("host_removed"),
    prepare=make_dirs,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    add_arguments=add_arguments,
    help=custom_help,
    next_hint="smp-binning",
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
