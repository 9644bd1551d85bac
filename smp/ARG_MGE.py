from collections import Counter
from pathlib import Path
from typing import NamedTuple, Optional

import pandas as pd
from rich.markdown import Markdown
from rich.panel import Panel

from .Assembly import select_assembly
from .checkpoint import atomic_write_text
from .console import console, log_info, log_warning
from .parsers import (abricate_summary_counts, novel_candidates, parse_rgi_drug_classes,
                      read_abricate_table, read_amrfinder_table)
from .report import SummaryReport
from .samples import Discovery, find_assemblies
from .steps import Step, entry

SUBDIRS = ("abricate", "amrfinderplus", "rgi", "genomad", "plasmidfinder", "novel_args", "correlation")

# abricate database -> feature class for the co-occurrence table
FEATURE_DBS = (("card", "arg"), ("vfdb", "vf"), ("plasmidfinder", "plasmid"))


class Contigs(NamedTuple):
    name: str
    path: Path
    assembler: Optional[str]


def arg_dirs(cfg):
    out = cfg.step_dir("arg_virulence_mge")
    dirs = {"out": out}
    dirs.update({sub: out / sub for sub in SUBDIRS})
    return dirs


def discover(cfg, names=None) -> Discovery:
    """One assembly per sample from assembly/filtered_contigs."""
    filtered = cfg.step_dir("assembly", "filtered_contigs")
    if names is None:
        names = sorted({a.sample for a in find_assemblies(filtered)})
        if not names:
            log_warning(f"No assemblies found in {filtered}")
    units, missing = [], []
    for name in names:
        asm = select_assembly(cfg, name)
        if asm is None:
            missing.append(name)
        else:
            units.append(Contigs(name, asm.path, asm.assembler))
    return Discovery(samples=units, missing=missing)


def prepare(ctx):
    cfg = ctx.cfg
    for d in arg_dirs(cfg).values():
        d.mkdir(parents=True, exist_ok=True)
    ctx.state["genomad"] = bool(cfg.genomad_db) and Path(cfg.genomad_db).is_dir()
    ctx.state["plasmidfinder"] = bool(cfg.plasmidfinder_db) and Path(cfg.plasmidfinder_db).is_dir()
    if not ctx.state["genomad"]:
        log_warning(f"geNomad database not found: {cfg.genomad_db}, skipping geNomad")
    if not ctx.state["plasmidfinder"]:
        log_warning(f"PlasmidFinder database not found: {cfg.plasmidfinder_db}, skipping PlasmidFinder")
    if cfg.amrfinder_update:
        log_info("Updating AMRFinderPlus database...")
        ctx.run(["amrfinder", "--update"], log="amrfinder_update")


def abricate(ctx, unit):
    d = arg_dirs(ctx.cfg)["abricate"]
    for db in ctx.cfg.abricate_dbs:
        ctx.run(["abricate", "--db", db, "--threads", ctx.cfg.threads, unit.path],
                log=f"{unit.name}_abricate", stdout=d / f"{unit.name}_{db}.tab")


def amrfinder(ctx, unit):
    out = arg_dirs(ctx.cfg)["amrfinderplus"] / f"{unit.name}_amr.txt"
    ctx.run(["amrfinder", "--nucleotide", unit.path, "--threads", ctx.cfg.threads,
             "--plus", "--output", out], log=f"{unit.name}_amrfinder")


def rgi(ctx, unit):
    prefix = arg_dirs(ctx.cfg)["rgi"] / unit.name
    ctx.run(["rgi", "main", "--input_sequence", unit.path, "--output_file", prefix,
             "--input_type", "contig", "--clean", "--num_threads", ctx.cfg.threads],
            log=f"{unit.name}_rgi")


def genomad(ctx, unit):
    out = arg_dirs(ctx.cfg)["genomad"] / unit.name
    ctx.run(["genomad", "end-to-end", "--threads", ctx.cfg.threads, unit.path, out, ctx.cfg.genomad_db],
            log=f"{unit.name}_genomad")


def plasmidfinder(ctx, unit):
    cfg = ctx.cfg
    out = arg_dirs(cfg)["plasmidfinder"] / unit.name
    out.mkdir(parents=True, exist_ok=True)
    ctx.run(["plasmidfinder.py", "-i", unit.path, "-o", out, "-p", cfg.plasmidfinder_db,
             "-t", f"{cfg.plasmidfinder_identity:.2f}", "-l", f"{cfg.plasmidfinder_coverage:.2f}"],
            log=f"{unit.name}_plasmidfinder")


def process_sample(ctx, unit):
    log_info(f"  Using assembly: {unit.path.name}")
    log_info(f"  Screening with Abricate ({', '.join(ctx.cfg.abricate_dbs)})...")
    abricate(ctx, unit)
    log_info("  Running AMRFinderPlus...")
    amrfinder(ctx, unit)
    log_info("  Running RGI...")
    rgi(ctx, unit)
    if ctx.state.get("genomad"):
        log_info("  Running geNomad...")
        genomad(ctx, unit)
    if ctx.state.get("plasmidfinder"):
        log_info("  Running PlasmidFinder...")
        plasmidfinder(ctx, unit)
    hits = {db: len(read_abricate_table(arg_dirs(ctx.cfg)["abricate"] / f"{unit.name}_{db}.tab"))
            for db in ctx.cfg.abricate_dbs}
    return {f"abricate_{db}": n for db, n in hits.items()}


def outputs(ctx, unit):
    d = arg_dirs(ctx.cfg)
    files = [d["abricate"] / f"{unit.name}_{db}.tab" for db in ctx.cfg.abricate_dbs]
    files.append(d["amrfinderplus"] / f"{unit.name}_amr.txt")
    files.append(d["rgi"] / f"{unit.name}.json")
    if ctx.state.get("genomad"):
        files.append(d["genomad"] / unit.name)
    if ctx.state.get("plasmidfinder"):
        files.append(d["plasmidfinder"] / unit.name)
    return files


def abricate_summaries(ctx):
    d = arg_dirs(ctx.cfg)["abricate"]
    for db in ctx.cfg.abricate_dbs:
        tabs = sorted(d.glob(f"*_{db}.tab"))
        if tabs:
            ctx.run(["abricate", "--summary", *tabs], log="abricate_summary", stdout=d / f"{db}_summary.tab")


def consolidate_amrfinder(ctx) -> Path:
    d = arg_dirs(ctx.cfg)["amrfinderplus"]
    frames = []
    for path in sorted(d.glob("*_amr.txt")):
        if path.name == "all_samples_amr.txt" or path.stat().st_size == 0:
            continue
        df = pd.read_csv(path, sep="\t")
        df.insert(0, "Sample", path.name[: -len("_amr.txt")])
        frames.append(df)
    out = d / "all_samples_amr.txt"
    if frames:
        pd.concat(frames, ignore_index=True).to_csv(out, sep="\t", index=False)
    return out


def detect_novel_args(ctx, amr_table: Path):
    """Divergent but well-covered hits from Abricate/CARD and AMRFinderPlus."""
    cfg = ctx.cfg
    d = arg_dirs(cfg)
    ident, cov = cfg.novel_identity, cfg.novel_coverage

    found = []
    for path in sorted(d["abricate"].glob("*_card.tab")):
        novel = novel_candidates(read_abricate_table(path), "%IDENTITY", "%COVERAGE", ident, cov)
        if not novel.empty:
            novel.insert(0, "SAMPLE", path.name[: -len("_card.tab")])
            found.append(novel)
    n_abricate = 0
    if found:
        df = pd.concat(found, ignore_index=True).sort_values("NOVELTY_SCORE", ascending=False, kind="mergesort")
        df.to_csv(d["novel_args"] / "novel_args_abricate.txt", sep="\t", index=False)
        n_abricate = len(df)

    n_amr = 0
    if amr_table.is_file():
        novel = novel_candidates(read_amrfinder_table(amr_table), "identity", "coverage", ident, cov)
        if not novel.empty:
            novel.to_csv(d["novel_args"] / "novel_args_amrfinder.txt", sep="\t", index=False)
            n_amr = len(novel)

    text = (
        "Novel ARG Detection Summary\n"
        "===========================\n\n"
        f"Threshold: <{ident}% identity\n"
        f"Coverage: >={cov}%\n\n"
        f"Novel ARGs from Abricate: {n_abricate}\n"
        f"Novel ARGs from AMRFinderPlus: {n_amr}\n"
        f"Total: {n_abricate + n_amr}\n"
    )
    atomic_write_text(d["novel_args"] / "summary.txt", text)
    return n_abricate, n_amr


def colocalization(ctx) -> pd.DataFrame:
    """Per-sample ARG / virulence factor / plasmid replicon counts from the Abricate summaries."""
    d = arg_dirs(ctx.cfg)
    counts = {}
    for db, feature in FEATURE_DBS:
        summary = d["abricate"] / f"{db}_summary.tab"
        if summary.is_file() and summary.stat().st_size > 0:
            counts[feature] = abricate_summary_counts(summary)
    if "arg" not in counts:
        return pd.DataFrame()

    df = pd.DataFrame({f"{feature}_count": s for feature, s in counts.items()}).fillna(0).astype(int)
    for col in ("arg_count", "vf_count", "plasmid_count"):
        if col not in df:
            df[col] = 0
    has_plasmid = df["plasmid_count"] > 0
    df["arg_with_plasmid"] = df["arg_count"].where(has_plasmid, 0)
    df["vf_with_plasmid"] = df["vf_count"].where(has_plasmid, 0)
    df.index.name = "sample"
    df = df.reset_index()[["sample", "arg_count", "vf_count", "plasmid_count",
                           "arg_with_plasmid", "vf_with_plasmid"]]

    out = d["correlation"]
    df.to_csv(out / "colocalization_summary.txt", sep="\t", index=False)
    df[["arg_count", "vf_count", "plasmid_count"]].corr().to_csv(out / "feature_correlations.txt", sep="\t")
    return df


def drug_classes(ctx) -> Counter:
    d = arg_dirs(ctx.cfg)
    total = Counter()
    for path in sorted(d["rgi"].glob("*.json")):
        total.update(parse_rgi_drug_classes(path))
    if total:
        df = pd.DataFrame.from_dict(total, orient="index", columns=["Count"])
        df = df.sort_values("Count", ascending=False, kind="mergesort")
        df.index.name = "Drug Class"
        df.to_csv(d["correlation"] / "drug_class_distribution.txt", sep="\t")
    return total


def finalize(ctx, results):
    cfg = ctx.cfg
    d = arg_dirs(cfg)
    abricate_summaries(ctx)
    amr_table = consolidate_amrfinder(ctx)
    n_abricate, n_amr = detect_novel_args(ctx, amr_table)
    coloc = colocalization(ctx)
    classes = drug_classes(ctx)

    report = SummaryReport("ARG, Virulence Factor and MGE Summary Report")
    report.fields([
        ("Project Directory", cfg.project_dir),
        ("Assemblies", cfg.step_dir("assembly", "filtered_contigs")),
        ("Output Directory", d["out"]),
    ])
    report.text("Tools Run:")
    report.fields([
        ("Abricate", ", ".join(cfg.abricate_dbs)),
        ("AMRFinderPlus", "Yes"),
        ("RGI", "Yes"),
        ("geNomad", "Yes" if ctx.state.get("genomad") else "No"),
        ("PlasmidFinder", "Yes" if ctx.state.get("plasmidfinder") else "No"),
    ], indent="  ")
    report.section("Sample Results:")

    for unit in discover(cfg).samples:
        pairs = [(f"Abricate {db} hits", len(read_abricate_table(d["abricate"] / f"{unit.name}_{db}.tab")))
                 for db in cfg.abricate_dbs]
        amr = read_amrfinder_table(d["amrfinderplus"] / f"{unit.name}_amr.txt")
        pairs.append(("AMRFinderPlus hits", len(amr)))
        rgi_json = d["rgi"] / f"{unit.name}.json"
        if rgi_json.is_file():
            pairs.append(("RGI drug classes", len(parse_rgi_drug_classes(rgi_json))))
        report.sample(unit.name, pairs)

    report.section("Novel ARG Candidates:")
    report.fields([
        ("Identity threshold", f"<{cfg.novel_identity}%"),
        ("Coverage threshold", f">={cfg.novel_coverage}%"),
        ("From Abricate (CARD)", n_abricate),
        ("From AMRFinderPlus", n_amr),
        ("Total", n_abricate + n_amr),
    ], indent="  ")

    if not coloc.empty:
        report.section("Feature Co-occurrence:")
        report.fields([
            ("Samples analysed", len(coloc)),
            ("Total ARGs", int(coloc["arg_count"].sum())),
            ("Total VFs", int(coloc["vf_count"].sum())),
            ("Total Plasmids", int(coloc["plasmid_count"].sum())),
        ], indent="  ")
    if classes:
        report.section("Top Drug Classes (RGI):")
        report.fields([(name, n) for name, n in classes.most_common(10)], indent="  ")

    report.section("Output Files:")
    report.fields([
        ("Abricate summaries", f"{d['abricate']}/*_summary.tab"),
        ("AMRFinderPlus table", amr_table),
        ("Novel ARGs", d["novel_args"]),
        ("Correlations", d["correlation"]),
        ("Logs", ctx.logs_dir),
    ], indent="  ")
    summary = d["out"] / "arg_mge_summary.txt"
    report.write(summary)
    log_info(f"Summary report generated: {summary}")


def add_arguments(parser):
    parser.add_argument("--abricate-dbs", dest="abricate_dbs", type=str,
                        help="Comma-separated Abricate databases.")
    parser.add_argument("--amrfinder-update", dest="amrfinder_update", action="store_true", default=None,
                        help="Run 'amrfinder --update' before screening.")


def custom_help():
    intro = (
        "The 'smp-arg-mge' command screens each sample's assembly for antimicrobial "
        "resistance genes, virulence factors and mobile genetic elements "
        "(Abricate, AMRFinderPlus, RGI, geNomad, PlasmidFinder), then flags "
        "divergent ARG candidates and summarises co-occurrence and drug classes."
    )
    examples_md = Markdown(
        "\n**Examples:**\n"
        "```\n"
        "smp-arg-mge -cf config.yml\n"
        "smp-arg-mge sample1 -cf config.yml --abricate-dbs card,vfdb,plasmidfinder\n"
        "```\n"
    )
    novel_md = Markdown(
        "**Novel ARG candidates:** identity below `novel_identity` (90) and "
        "coverage at least `novel_coverage` (80); novelty score = 100 - identity."
    )
    console.print(Panel(intro, border_style="cyan", title="smp-arg-mge", title_align="left"))
    console.print(examples_md)
    console.print(novel_md)
    console.print()


STEP = Step(
    name="arg_mge",
    title="ARG, Virulence and MGE Analysis",
    out_subdir="arg_virulence_mge",
    discover=discover,
    prepare=prepare,
    process=process_sample,
    outputs=outputs,
    finalize=finalize,
    add_arguments=add_arguments,
    help=custom_help,
)


def main():
    entry(STEP)


if __name__ == "__main__":
    main()
