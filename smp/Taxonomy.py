import gzip
import os
import shutil
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel

from .console import console, log_info, log_warning
from .errors import MissingInputError
from .parsers import count_bracken_taxa, count_metaphlan_species, parse_kraken2_report
from .report import SummaryReport
from .samples import discover_samples
from .steps import Step, entry

LEVEL_NAMES = {"D": "Domain", "P": "Phylum", "C": "Class", "O": "Order",
               "F": "Family", "G": "Genus", "S": "Species"}


def tax_dirs(cfg):
    out = cfg.step_dir("taxonomic_profiling")
    return {
        "out": out,
        "kraken2": out / "kraken2",
        "bracken": out / "bracken",
        "metaphlan": out / "metaphlan",
        "krona": out / "krona",
    }


def check_databases(ctx):
    cfg = ctx.cfg
    ctx.state["kraken2"] = bool(cfg.kraken2_db) and Path(cfg.kraken2_db).is_dir()
    ctx.state["metaphlan"] = bool(cfg.metaphlan_db) and Path(cfg.metaphlan_db).is_dir()
    if not ctx.state["kraken2"]:
        log_warning(f"Kraken2 database not found: {cfg.kraken2_db}, skipping Kraken2/Bracken/Krona")
    if not ctx.state["metaphlan"]:
        log_warning(f"MetaPhlAn database not found: {cfg.metaphlan_db}, skipping MetaPhlAn")
    if not (ctx.state["kraken2"] or ctx.state["metaphlan"]):
        raise MissingInputError("Neither a Kraken2 nor a MetaPhlAn database is available")
    for d in tax_dirs(cfg).values():
        d.mkdir(parents=True, exist_ok=True)


def kraken2(ctx, sample):
    d = tax_dirs(ctx.cfg)["kraken2"]
    output = d / f"{sample.name}.kraken2.output"
    report = d / f"{sample.name}.kraken2.report"
    cmd = [
        "kraken2",
        "--db", ctx.cfg.kraken2_db,
        "--threads", ctx.cfg.threads,
        "--paired",
        "--gzip-compressed",
        "--output", output,
        "--report", report,
        "--use-names",
        sample.r1, sample.r2,
    ]
    ctx.run(cmd, log=f"{sample.name}_kraken2")
    # per-read output can be large
    if output.exists():
        with open(output, "rb") as src, gzip.open(f"{output}.gz", "wb") as dst:
            shutil.copyfileobj(src, dst)
        os.remove(output)
    return report


def bracken(ctx, sample, report):
    cfg = ctx.cfg
    d = tax_dirs(cfg)["bracken"]
    cmd = [
        "bracken",
        "-d", cfg.kraken2_db,
        "-i", report,
        "-o", d / f"{sample.name}.bracken.{cfg.bracken_level}",
        "-w", d / f"{sample.name}.bracken.report",
        "-r", cfg.bracken_read_len,
        "-l", cfg.bracken_level,
        "-t", cfg.bracken_threshold,
    ]
    ctx.run(cmd, log=f"{sample.name}_bracken")


def krona(ctx, sample, report):
    html = tax_dirs(ctx.cfg)["krona"] / f"{sample.name}.krona.html"
    ctx.run(["ktImportTaxonomy", "-q", "1", "-t", "2", "-s", "3", report, "-o", html],
            log=f"{sample.name}_krona")


def metaphlan(ctx, sample):
    d = tax_dirs(ctx.cfg)["metaphlan"]
    cmd = [
        "metaphlan",
        f"{sample.r1},{sample.r2}",
        "--input_type", "fastq",
        "--bowtie2db", ctx.cfg.metaphlan_db,
        "--nproc", ctx.cfg.threads,
        "--bowtie2out", d / f"{sample.name}.bowtie2.bz2",
        "--output_file", d / f"{sample.name}.metaphlan_profile.txt",
        "--unknown_estimation",
    ]
    ctx.run(cmd, log=f"{sample.name}_metaphlan")


def process_sample(ctx, sample):
    metrics = {}
    if ctx.state.get("kraken2"):
        log_info("  Running Kraken2...")
        report = kraken2(ctx, sample)
        summary = parse_kraken2_report(report)
        metrics["classified_pct"] = str(summary.classified_pct)
        log_info(f"  Classified reads: {summary.classified_pct}%")
        log_info("  Running Bracken...")
        bracken(ctx, sample, report)
        log_info("  Generating Krona chart...")
        krona(ctx, sample, report)
    if ctx.state.get("metaphlan"):
        log_info("  Running MetaPhlAn...")
        metaphlan(ctx, sample)
    return metrics


def outputs(ctx, sample):
    d = tax_dirs(ctx.cfg)
    files = []
    if ctx.state.get("kraken2"):
        files += [
            d["kraken2"] / f"{sample.name}.kraken2.report",
            d["bracken"] / f"{sample.name}.bracken.{ctx.cfg.bracken_level}",
        ]
    if ctx.state.get("metaphlan"):
        files.append(d["metaphlan"] / f"{sample.name}.metaphlan_profile.txt")
    return files


def merge_metaphlan(ctx):
    d = tax_dirs(ctx.cfg)["metaphlan"]
    profiles = sorted(d.glob("*.metaphlan_profile.txt"))
    if not profiles:
        return
    log_info("Merging MetaPhlAn profiles...")
    ctx.run(["merge_metaphlan_tables.py", *profiles], log="merge_metaphlan",
            stdout=d / "merged_abundance_table.txt")


def finalize(ctx, results):
    cfg = ctx.cfg
    d = tax_dirs(cfg)
    if ctx.state.get("metaphlan"):
        merge_metaphlan(ctx)

    yes_no = lambda flag: "Yes" if flag else "No"
    report = SummaryReport("Taxonomic Profiling Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Input Directory", cfg.step_dir("host_removed")),
        ("Output Directory", d["out"]),
    ])
    report.text("Tools Run:")
    report.fields([
        ("Kraken2", yes_no(ctx.state.get("kraken2"))),
        ("Bracken", yes_no(ctx.state.get("kraken2"))),
        ("MetaPhlAn", yes_no(ctx.state.get("metaphlan"))),
    ], indent="  ")
    report.text("Parameters:")
    report.fields([
        ("Threads", cfg.threads),
        ("Kraken2 database", cfg.kraken2_db),
        ("MetaPhlAn database", cfg.metaphlan_db),
        ("Bracken level", f"{cfg.bracken_level} ({LEVEL_NAMES[cfg.bracken_level]})"),
        ("Bracken read len", cfg.bracken_read_len),
    ], indent="  ")
    report.section("Sample Results:")

    for sample in discover_samples(cfg.step_dir("host_removed"), "nonhost").samples:
        pairs = []
        kreport = d["kraken2"] / f"{sample.name}.kraken2.report"
        if kreport.is_file():
            k = parse_kraken2_report(kreport)
            pairs += [("Kraken2 report", kreport), ("Classified reads", f"{k.classified_pct}%")]
        babund = d["bracken"] / f"{sample.name}.bracken.{cfg.bracken_level}"
        if babund.is_file():
            level = LEVEL_NAMES[cfg.bracken_level].lower()
            pairs += [("Bracken output", babund), ("Taxa identified", f"{count_bracken_taxa(babund)} {level}")]
        profile = d["metaphlan"] / f"{sample.name}.metaphlan_profile.txt"
        if profile.is_file():
            pairs += [("MetaPhlAn profile", profile), ("Species found", count_metaphlan_species(profile))]
        html = d["krona"] / f"{sample.name}.krona.html"
        if html.is_file():
            pairs.append(("Krona chart", html))
        report.sample(sample.name, pairs)

    report.section("Output Files Summary:")
    report.fields([
        ("Kraken2 reports", f"{d['kraken2']}/*.kraken2.report"),
        ("Bracken abundances", f"{d['bracken']}/*.bracken.{cfg.bracken_level}"),
        ("MetaPhlAn merged", d["metaphlan"] / "merged_abundance_table.txt"),
        ("Krona charts", f"{d['krona']}/*.krona.html"),
        ("Logs", ctx.logs_dir),
    ], indent="  ")
    summary = d["out"] / "taxonomic_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")


def custom_help():
    intro = (
        "The 'smp-taxonomy' command profiles non-host reads with Kraken2 + Bracken "
        "(read-level classification and abundance re-estimation), MetaPhlAn "
        "(marker genes) and Krona charts. A tool whose database is missing is "
        "skipped with a warning."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-taxonomy -cf config.yml\n"
        "smp-taxonomy sample1 -cf config.yml -p 32\n"
        "```\n"
    )
    out_md = Markdown(
        "**Output:** `taxonomic_profiling/{kraken2,bracken,metaphlan,krona}` "
        "and `taxonomic_profiling/taxonomic_summary.txt`."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-taxonomy", title_align="left"))
    console.print(examples_md)
    console.print(out_md)
    console.print()


STEP = Step(
    name="taxonomy",
    title="Taxonomic Profiling",
    out_subdir="taxonomic_profiling",
    input_stage="nonhost",
    input_dir=lambda cfg: cfg.step_dir("host_removed"),
    prepare=check_databases,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    help=custom_help,
    next_hint="smp-function",
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
