import shutil
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel

from .console import console, log_info
from .errors import MissingInputError
from .parsers import count_humann_features
from .report import SummaryReport
from .steps import Step, entry

# (file_name filter, source subdir) for humann_join_tables
JOINED_TABLES = (
    ("genefamilies", "humann_raw"),
    ("genefamilies_cpm", "humann_normalized"),
    ("pathabundance", "humann_raw"),
    ("pathabundance_relab", "humann_normalized"),
    ("pathcoverage", "humann_raw"),
)
REGROUPS = (("go", "uniref90_go"), ("ko", "uniref90_ko"), ("pfam", "uniref90_pfam"))


def func_dirs(cfg):
    out = cfg.step_dir("functional_profiling")
    return {
        "out": out,
        "humann_raw": out / "humann_raw",
        "humann_normalized": out / "humann_normalized",
        "humann_merged": out / "humann_merged",
        "concat": out / "concatenated_reads",
    }


def configure_humann(ctx):
    db = ctx.cfg.humann_db
    if not db or not Path(db).is_dir():
        raise MissingInputError(f"HUMAnN database not found: {db}")
    for d in func_dirs(ctx.cfg).values():
        d.mkdir(parents=True, exist_ok=True)
    log_info("Configuring HUMAnN database locations...")
    for kind, sub in (("nucleotide", "chocophlan"), ("protein", "uniref"), ("utility_mapping", "utility_mapping")):
        ctx.run(["humann_config", "--update", "database_folders", kind, Path(db) / sub], log="humann_config")


def concatenate(sample, dest: Path) -> Path:
    """R1 then R2 into one gzip stream (gzip members concatenate cleanly)."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    with open(dest, "wb") as out:
        for r in sample.reads:
            with open(r, "rb") as f:
                shutil.copyfileobj(f, out)
    return dest


def humann(ctx, sample, concat_file):
    d = func_dirs(ctx.cfg)
    cmd = [
        "humann",
        "--input", concat_file,
        "--output", d["humann_raw"],
        "--output-basename", sample.name,
        "--threads", ctx.cfg.threads,
        "--metaphlan-options", f"--bowtie2db {ctx.cfg.metaphlan_db}",
        "--remove-temp-output",
    ]
    ctx.run(cmd, log=f"{sample.name}_humann")


def normalise(ctx, sample):
    d = func_dirs(ctx.cfg)
    raw, norm = d["humann_raw"], d["humann_normalized"]
    genefam = raw / f"{sample.name}_genefamilies.tsv"
    log = f"{sample.name}_humann_post"

    for units in ("cpm", "relab"):
        ctx.run(["humann_renorm_table", "--input", genefam,
                 "--output", norm / f"{sample.name}_genefamilies_{units}.tsv", "--units", units], log=log)
    for suffix, group in REGROUPS:
        ctx.run(["humann_regroup_table", "--input", genefam,
                 "--output", norm / f"{sample.name}_{suffix}.tsv", "--groups", group], log=log)
    ctx.run(["humann_renorm_table", "--input", raw / f"{sample.name}_pathabundance.tsv",
             "--output", norm / f"{sample.name}_pathabundance_relab.tsv", "--units", "relab"], log=log)


def process_sample(ctx, sample):
    concat_file = func_dirs(ctx.cfg)["concat"] / f"{sample.name}.concat.fastq.gz"
    log_info("  Concatenating read pair...")
    concatenate(sample, concat_file)
    log_info("  Running HUMAnN (this can take hours)...")
    humann(ctx, sample, concat_file)
    log_info("  Normalising and regrouping tables...")
    normalise(ctx, sample)


def outputs(ctx, sample):
    d = func_dirs(ctx.cfg)
    return [
        d["humann_raw"] / f"{sample.name}_genefamilies.tsv",
        d["humann_raw"] / f"{sample.name}_pathabundance.tsv",
        d["humann_normalized"] / f"{sample.name}_genefamilies_cpm.tsv",
        d["humann_normalized"] / f"{sample.name}_pathabundance_relab.tsv",
    ]


def join_tables(ctx):
    d = func_dirs(ctx.cfg)
    for name, src in JOINED_TABLES:
        if not any(d[src].glob(f"*_{name}.tsv")):
            continue
        ctx.run(["humann_join_tables", "--input", d[src],
                 "--output", d["humann_merged"] / f"all_samples_{name}.tsv",
                 "--file_name", f"{name}.tsv"], log="humann_join_tables")


def finalize(ctx, results):
    cfg = ctx.cfg
    d = func_dirs(cfg)
    log_info("Merging tables across samples...")
    join_tables(ctx)

    report = SummaryReport("Functional Profiling Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Input Directory", cfg.step_dir("host_removed")),
        ("Output Directory", d["out"]),
    ])
    report.text("HUMAnN Configuration:")
    report.fields([
        ("Database", cfg.humann_db),
        ("Threads", cfg.threads),
        ("MetaPhlAn DB", cfg.metaphlan_db),
    ], indent="  ")
    report.section("Sample Results:")

    for genefam in sorted(d["humann_raw"].glob("*_genefamilies.tsv")):
        sample = genefam.name[: -len("_genefamilies.tsv")]
        pathabund = d["humann_raw"] / f"{sample}_pathabundance.tsv"
        report.sample(sample, [
            ("Gene Families Detected", count_humann_features(genefam)),
            ("Pathways Detected", count_humann_features(pathabund) if pathabund.is_file() else 0),
            ("Gene families", genefam),
            ("Normalized (CPM)", d["humann_normalized"] / f"{sample}_genefamilies_cpm.tsv"),
            ("KEGG orthologs", d["humann_normalized"] / f"{sample}_ko.tsv"),
        ])

    report.section("Merged Tables (All Samples):")
    report.fields([(name, d["humann_merged"] / f"all_samples_{name}.tsv") for name, _ in JOINED_TABLES],
                  indent="  ")
    summary = d["out"] / "functional_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")


def custom_help():
    intro = (
        "The 'smp-function' command profiles gene families and metabolic "
        "pathways of the non-host reads with HUMAnN, then normalises (CPM, "
        "relative abundance), regroups (GO, KO, Pfam) and joins the tables "
        "across samples."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-function -cf config.yml -p 16\n"
        "smp-function sample1 -cf config.yml\n"
        "```\n"
    )
    db_md = Markdown(
        "**Database:** `humann_db` must contain `chocophlan/`, `uniref/` and "
        "`utility_mapping/`. The step stops if it is missing."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-function", title_align="left"))
    console.print(examples_md)
    console.print(db_md)
    console.print()


STEP = Step(
    name="function",
    title="Functional Profiling",
    out_subdir="functional_profiling",
    input_stage="nonhost",
    input_dir=lambda cfg: cfg.step_dir("host_removed"),
    prepare=configure_humann,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    help=custom_help,
    next_hint="smp-assembly",
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
