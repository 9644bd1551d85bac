import json
from pathlib import Path

import pandas as pd
from rich.markdown import Markdown
from rich.panel import Panel

from .console import console, log_info, log_warning
from .errors import ParseError
from .parsers import count_fastq_reads, percentage
from .report import SummaryReport
from .samples import discover_samples, read_path
from .steps import CACHED, COMPLETE, Step, entry


def trimmed_dir(cfg) -> Path:
    return cfg.step_dir("trimmed_fastq")


def qc_dirs(cfg):
    qc = cfg.step_dir("qc_reports")
    return {
        "qc": qc,
        "raw": qc / "raw_reports",
        "trimmed": qc / "trimmed_reports",
        "multiqc": qc / "multiqc_reports",
    }


def fastqc(ctx, reads, out_dir, log):
    Path(out_dir).mkdir(parents=True, exist_ok=True)
    cmd = ["fastqc", "--threads", ctx.cfg.threads, "--outdir", out_dir, *reads]
    return ctx.run(cmd, log=log)


def fastp(ctx, sample):
    cfg = ctx.cfg
    out = trimmed_dir(cfg)
    out.mkdir(parents=True, exist_ok=True)
    cmd = [
        "fastp",
        "--in1", sample.r1,
        "--in2", sample.r2,
        "--out1", read_path(out, sample.name, 1, "trimmed"),
        "--out2", read_path(out, sample.name, 2, "trimmed"),
        "--thread", cfg.threads,
        "--qualified_quality_phred", cfg.min_quality,
        "--length_required", cfg.min_length,
        "--cut_front",
        "--cut_tail",
        "--cut_window_size", cfg.window_size,
        "--cut_mean_quality", cfg.mean_quality,
        "--detect_adapter_for_pe",
        "--correction",
        "--overrepresentation_analysis",
        "--json", out / f"{sample.name}_fastp.json",
        "--html", out / f"{sample.name}_fastp.html",
    ]
    return ctx.run(cmd, log=f"{sample.name}_fastp")


def retention(raw_r1, trimmed_r1):
    """(total, retained, pct) from the forward reads before and after trimming."""
    total = count_fastq_reads(raw_r1)
    clean = count_fastq_reads(trimmed_r1)
    try:
        return total, clean, percentage(clean, total)
    except ValueError as e:
        raise ParseError(trimmed_r1, str(e)) from e


def fastp_summary(fastp_json, sample) -> pd.DataFrame:
    """One row per sample with fastp's before/after filtering summary."""
    try:
        with open(fastp_json) as f:
            data = json.load(f)
        before = data["summary"]["before_filtering"]
        after = data["summary"]["after_filtering"]
    except (ValueError, KeyError, TypeError) as e:
        raise ParseError(fastp_json, f"not a fastp JSON report ({e})") from e
    row = {"SAMPLE": sample}
    row.update({f"before_{k}": v for k, v in before.items()})
    row.update({f"after_{k}": v for k, v in after.items()})
    return pd.DataFrame([row])


def process_sample(ctx, sample):
    dirs = qc_dirs(ctx.cfg)
    out = trimmed_dir(ctx.cfg)

    log_info("  Running FastQC on raw reads...")
    fastqc(ctx, sample.reads, dirs["raw"], log=f"{sample.name}_fastqc_raw")

    log_info("  Running fastp...")
    fastp(ctx, sample)

    trim_r1 = read_path(out, sample.name, 1, "trimmed")
    total, clean, pct = retention(sample.r1, trim_r1)
    log_info(f"  Statistics for {sample.name}:")
    log_info(f"    Total reads:    {total}")
    log_info(f"    Retained reads: {clean} ({pct}%)")

    log_info("  Running FastQC on trimmed reads...")
    fastqc(ctx, (trim_r1, read_path(out, sample.name, 2, "trimmed")),
           dirs["trimmed"], log=f"{sample.name}_fastqc_trimmed")
    return {"total_reads": total, "trimmed_reads": clean, "retention_pct": str(pct)}


def outputs(ctx, sample):
    out = trimmed_dir(ctx.cfg)
    return [
        read_path(out, sample.name, 1, "trimmed"),
        read_path(out, sample.name, 2, "trimmed"),
        out / f"{sample.name}_fastp.json",
    ]


def multiqc(ctx, src, out_dir, filename, title):
    cmd = ["multiqc", src, "--outdir", out_dir, "--filename", filename, "--title", title, "--force"]
    return ctx.run(cmd, log=f"multiqc_{Path(out_dir).name}")


def finalize(ctx, results):
    cfg = ctx.cfg
    dirs = qc_dirs(cfg)
    out = trimmed_dir(cfg)
    mq = dirs["multiqc"]

    if any(r.status in (COMPLETE, CACHED) for r in results):
        log_info("Creating MultiQC reports...")
        multiqc(ctx, dirs["raw"], mq / "raw", "raw_reads_multiqc_report.html", "Raw Reads QC Report")
        multiqc(ctx, dirs["trimmed"], mq / "trimmed", "trimmed_reads_multiqc_report.html",
                "Trimmed Reads QC Report")
        multiqc(ctx, out, mq / "fastp", "fastp_multiqc_report.html", "Fastp Trimming Statistics")

    report = SummaryReport("QC and Trimming Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Raw Reads", cfg.raw_dir),
        ("Trimmed Reads", out),
    ])
    report.text("Parameters Used:")
    report.fields([
        ("Minimum length", f"{cfg.min_length} bp"),
        ("Minimum quality", f"Q{cfg.min_quality}"),
        ("Window size", cfg.window_size),
        ("Mean quality", f"Q{cfg.mean_quality}"),
        ("Threads", cfg.threads),
    ], indent="  ")
    report.section("Sample Statistics:")

    frames = []
    for sample in discover_samples(cfg.raw_dir, "raw").samples:
        trim_r1 = read_path(out, sample.name, 1, "trimmed")
        if not trim_r1.is_file():
            continue
        try:
            total, clean, pct = retention(sample.r1, trim_r1)
        except ParseError as e:
            log_warning(f"{sample.name}: {e}, left out of the summary")
            continue
        report.sample(sample.name, [
            ("Total raw reads", total),
            ("Trimmed reads", clean),
            ("Retention rate", f"{pct}%"),
        ])
        fastp_json = out / f"{sample.name}_fastp.json"
        if fastp_json.is_file():
            frames.append(fastp_summary(fastp_json, sample.name))

    if frames:
        pd.concat(frames, ignore_index=True).to_csv(dirs["qc"] / "fastp_summary.tsv", sep="\t", index=False)
    else:
        log_warning("No fastp reports found; fastp_summary.tsv not written")

    report.section("Output Files:")
    report.fields([
        ("Raw reads FastQC", dirs["raw"]),
        ("Trimmed reads FastQC", dirs["trimmed"]),
        ("MultiQC reports", mq),
    ], indent="  ")
    summary = dirs["qc"] / "qc_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")


def custom_help():
    intro = (
        "The 'smp-qc' command runs FastQC on the raw read pairs, trims and filters "
        "them with fastp, runs FastQC again on the trimmed reads and aggregates "
        "everything with MultiQC."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-qc -cf config.yml\n"
        "smp-qc sample1 -cf config.yml -p 16\n"
        "smp-qc -d /project --no-resume\n"
        "```\n"
    )
    reads_md = Markdown(
        "**Input reads:** paired, gzipped FASTQ files in `<project>/raw_fastq`, e.g.\n"
        "```\n"
        "raw_fastq/sample1_1.fastq.gz\n"
        "raw_fastq/sample1_2.fastq.gz\n"
        "```\n"
        "A forward file without its mate is skipped with a warning."
    )
    out_md = Markdown(
        "**Output:** `trimmed_fastq/{sample}_1.trimmed.fastq.gz` (and `_2`), "
        "FastQC/MultiQC reports in `qc_reports/`, and `qc_reports/qc_summary.txt`."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-qc", title_align="left"))
    console.print(examples_md)
    console.print(reads_md)
    console.print(out_md)
    console.print()


STEP = Step(
    name="qc",
    title="QC and Trimming",
    out_subdir="qc_reports",
    input_stage="raw",
    input_dir=lambda cfg: cfg.raw_dir,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    help=custom_help,
    next_hint="smp-host-removal",
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
