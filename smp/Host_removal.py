from datetime import datetime
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel

from .checkpoint import atomic_write_text
from .console import console, log_info
from .errors import MissingInputError, ParseError
from .parsers import count_fastq_reads, percentage
from .report import SUBRULE, SummaryReport
from .samples import read_path
from .steps import Step, entry


def host_dir(cfg) -> Path:
    return cfg.step_dir("host_removed")


def stats_path(cfg, sample: str) -> Path:
    return host_dir(cfg) / "alignment_stats" / f"{sample}_stats.txt"


def check_host_index(ctx):
    index = Path(f"{ctx.cfg.host_genome}.1.bt2")
    if not index.is_file():
        raise MissingInputError(
            f"Host genome index not found: {ctx.cfg.host_genome} "
            "(build it with bowtie2-build or set host_genome in the config)"
        )
    log_info(f"Host genome: {ctx.cfg.host_genome}")


def bowtie2(ctx, sample):
    out = host_dir(ctx.cfg)
    sam = out / f"{sample.name}.aligned.sam"
    cmd = [
        "bowtie2",
        "-x", ctx.cfg.host_genome,
        "-1", sample.r1,
        "-2", sample.r2,
        "-S", sam,
        "--threads", ctx.cfg.threads,
        "--very-sensitive-local",
        "--un-conc-gz", out / f"{sample.name}_%.nonhost.fastq.gz",
        "--al-conc-gz", out / f"{sample.name}_%.host.fastq.gz",
    ]
    try:
        ctx.run(cmd, log=f"{sample.name}_bowtie2")
    finally:
        # the SAM is only needed for the read split
        if sam.exists():
            sam.unlink()


def host_stats(sample: str, trimmed: int, host: int, nonhost: int, files) -> str:
    try:
        host_pct = percentage(host, trimmed)
        nonhost_pct = percentage(nonhost, trimmed)
    except ValueError as e:
        raise ParseError(files[0], str(e)) from e
    lines = [
        f"Host Removal Statistics for {sample}",
        f"Generated: {datetime.now().strftime('%a %b %d %H:%M:%S %Y')}",
        "",
        f"Input reads (trimmed):      {trimmed}",
        f"Host reads removed:         {host} ({host_pct}%)",
        f"Non-host reads retained:    {nonhost} ({nonhost_pct}%)",
        "",
        "Files:",
        f"  - Non-host R1: {files[0]}",
        f"  - Non-host R2: {files[1]}",
        f"  - Host R1:     {files[2]}",
        f"  - Host R2:     {files[3]}",
    ]
    return "\n".join(lines) + "\n"


def process_sample(ctx, sample):
    out = host_dir(ctx.cfg)
    log_info("  Aligning reads to host genome...")
    bowtie2(ctx, sample)

    files = [
        read_path(out, sample.name, 1, "nonhost"),
        read_path(out, sample.name, 2, "nonhost"),
        out / f"{sample.name}_1.host.fastq.gz",
        out / f"{sample.name}_2.host.fastq.gz",
    ]
    trimmed = count_fastq_reads(sample.r1)
    nonhost = count_fastq_reads(files[0])
    host = count_fastq_reads(files[2]) if files[2].exists() else 0
    atomic_write_text(stats_path(ctx.cfg, sample.name),
                      host_stats(sample.name, trimmed, host, nonhost, files))
    log_info(f"  Non-host reads retained: {nonhost} of {trimmed}")
    return {"trimmed_reads": trimmed, "host_reads": host, "nonhost_reads": nonhost}


def outputs(ctx, sample):
    out = host_dir(ctx.cfg)
    return [
        read_path(out, sample.name, 1, "nonhost"),
        read_path(out, sample.name, 2, "nonhost"),
        stats_path(ctx.cfg, sample.name),
    ]


def qc_nonhost(ctx):
    out = host_dir(ctx.cfg)
    nonhost = sorted(out.glob("*.nonhost.fastq.gz"))
    if not nonhost:
        return
    qc_out = out / "qc_nonhost"
    qc_out.mkdir(parents=True, exist_ok=True)
    log_info("Running FastQC on non-host reads...")
    ctx.run(["fastqc", "--threads", ctx.cfg.threads, "--outdir", qc_out, *nonhost], log="fastqc_nonhost")
    ctx.run(["multiqc", qc_out, "--outdir", qc_out,
             "--filename", "nonhost_reads_multiqc_report.html",
             "--title", "Non-host Reads QC Report", "--force"], log="multiqc_nonhost")


def finalize(ctx, results):
    cfg = ctx.cfg
    out = host_dir(cfg)
    report = SummaryReport("Host Removal Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Input Directory", cfg.step_dir("trimmed_fastq")),
        ("Output Directory", out),
        ("Host Genome", cfg.host_genome),
    ])
    report.text("Parameters:")
    report.fields([("Threads", cfg.threads), ("Sensitivity", "very-sensitive-local")], indent="  ")
    report.section("Sample Statistics:")
    for stats in sorted((out / "alignment_stats").glob("*_stats.txt")):
        report.text(stats.read_text())
        report.text(SUBRULE)
    report.section("Output Files:")
    report.fields([
        ("Non-host reads", f"{out}/*_1.nonhost.fastq.gz, *_2.nonhost.fastq.gz"),
        ("Host reads", f"{out}/*_1.host.fastq.gz, *_2.host.fastq.gz"),
        ("Per-sample statistics", out / "alignment_stats"),
        ("Logs", ctx.logs_dir),
    ], indent="  ")
    summary = out / "host_removal_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")

    if cfg.qc_nonhost:
        qc_nonhost(ctx)


def add_arguments(parser):
    parser.add_argument("--qc-nonhost", dest="qc_nonhost", action="store_true", default=None,
                        help="Run FastQC + MultiQC on the non-host reads afterwards.")


def custom_help():
    intro = (
        "The 'smp-host-removal' command aligns trimmed read pairs to a host "
        "reference with Bowtie2 (--very-sensitive-local) and keeps the pairs "
        "that do not align concordantly as non-host reads."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-host-removal -cf config.yml\n"
        "smp-host-removal sample1 -cf config.yml --qc-nonhost\n"
        "```\n"
    )
    ref_md = Markdown(
        "**Host genome:** `host_genome` in the config (or HOST_GENOME in "
        "`database_config.txt`) is a Bowtie2 index prefix; `<prefix>.1.bt2` must exist."
    )
    out_md = Markdown(
        "**Output:** `host_removed/{sample}_1.nonhost.fastq.gz` (and `_2`), "
        "per-sample `alignment_stats/{sample}_stats.txt` and `host_removal_summary.txt`."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-host-removal", title_align="left"))
    console.print(examples_md)
    console.print(ref_md)
    console.print(out_md)
    console.print()


STEP = Step(
    name="host_removal",
    title="Host Removal",
    out_subdir="host_removed",
    input_stage="trimmed",
    input_dir=lambda cfg: cfg.step_dir("trimmed_fastq"),
    prepare=check_host_index,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    add_arguments=add_arguments,
    help=custom_help,
    next_hint="smp-taxonomy",
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
