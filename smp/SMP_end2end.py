import sys
from typing import List, Optional

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.table import Table

from . import ARG_MGE, Assembly, Binning, Function, Host_removal, QC, Taxonomy
from .checkpoint import Status
from .config import activate_tool_env
from .console import console, log_error, log_info, set_quiet
from .errors import ConfigError, SMPError
from .steps import (CustomArgumentParser, Step, add_common_arguments, config_from_args,
                    exit_code_for, results_table, run_step, store_for)

STEPS: List[Step] = [
    QC.STEP,
    Host_removal.STEP,
    Taxonomy.STEP,
    Function.STEP,
    Assembly.STEP,
    Binning.STEP,
    ARG_MGE.STEP,
]
STEP_NAMES = [s.name for s in STEPS]


def get_step(name: str) -> Step:
    for s in STEPS:
        if s.name == name:
            return s
    raise ConfigError(f"Unknown step '{name}'; choose from {', '.join(STEP_NAMES)}")


def select_steps(steps: Optional[str] = None, from_step: Optional[str] = None) -> List[Step]:
    """Steps in pipeline order, filtered by --steps a,b and/or --from-step."""
    chosen = list(STEPS)
    if steps:
        wanted = [x.strip() for x in steps.split(",") if x.strip()]
        for name in wanted:
            get_step(name)
        chosen = [s for s in chosen if s.name in wanted]
    if from_step:
        start = STEP_NAMES.index(get_step(from_step).name)
        chosen = [s for s in chosen if STEP_NAMES.index(s.name) >= start]
    return chosen


def custom_help():
    console.print(Panel(
        "SMP End-to-End\n[bold]Pipeline:[/bold] QC → Host removal → Taxonomy → Function → "
        "Assembly → Binning → ARG/MGE\nEach step is offered as a yes/no prompt; answers can be "
        "pre-set with --yes / --steps / --from-step.",
        border_style="blue", title="SMP End-to-End", title_align="left"
    ))
    console.print(Markdown(
        "**I/O overview**\n"
        "- [qc]           `raw_fastq/` → `trimmed_fastq/`, `qc_reports/`\n"
        "- [host_removal] `trimmed_fastq/` → `host_removed/`\n"
        "- [taxonomy]     `host_removed/` → `taxonomic_profiling/`\n"
        "- [function]     `host_removed/` → `functional_profiling/`\n"
        "- [assembly]     `host_removed/` → `assembly/filtered_contigs/`\n"
        "- [binning]      assemblies + `host_removed/` → `binning/`\n"
        "- [arg_mge]      assemblies → `arg_virulence_mge/`"
    ))
    console.print(Panel("Usage: smp-pipeline [SAMPLE] [OPTIONS] -cf CONFIG",
                        border_style="cyan", title="Global parameters", title_align="left"))
    g = Table(show_header=False, box=None, pad_edge=False)
    g.add_column("Flag", style="bold cyan", no_wrap=True)
    g.add_column("Description", style="white")
    g.add_row("SAMPLE", "Restrict every step to this sample (optional).")
    g.add_row("-cf, --config", "Path to config.yml.")
    g.add_row("-d, --project-dir", "Project directory (default: from config, else cwd).")
    g.add_row("-p, --threads", "Threads passed to every tool.")
    g.add_row("-m, --memory", "Memory budget in GB (assembly).")
    g.add_row("-y, --yes", "Run every selected step without prompting.")
    g.add_row("--steps", f"Comma-separated subset of: {', '.join(STEP_NAMES)}.")
    g.add_row("--from-step", "Start at this step.")
    g.add_row("--resume/--no-resume", "Skip samples already complete (default: on).")
    g.add_row("--quiet / --show-logs", "Hide tool command lines (default: --show-logs).")
    console.print(g)
    console.print(Rule(style="dim"))


def build_parser() -> CustomArgumentParser:
    p = CustomArgumentParser(prog="smp-pipeline", description="Shotgun metagenomics pipeline, step by step.")
    p.help_fn = custom_help
    p.add_argument("sample", nargs="?")
    add_common_arguments(p)
    p.add_argument("-y", "--yes", action="store_true")
    p.add_argument("--steps", type=str)
    p.add_argument("--from-step", choices=STEP_NAMES)
    return p


def resume_table(cfg, steps: List[Step]) -> Table:
    store = store_for(cfg)
    tbl = Table(show_header=True, header_style="bold blue")
    tbl.add_column("Step", style="cyan", no_wrap=True)
    tbl.add_column("Output", style="white")
    tbl.add_column("Samples", style="white")
    tbl.add_column("Status", style="white")
    for step in steps:
        statuses = [store.status(step.name, s) for s in store.samples(step.name)]
        done = bool(statuses) and all(s is Status.COMPLETE for s in statuses)
        n_complete = sum(1 for s in statuses if s is Status.COMPLETE)
        n_failed = sum(1 for s in statuses if s is Status.FAILED)
        counts = f"{n_complete} complete" + (f", {n_failed} failed" if n_failed else "")
        tbl.add_row(step.title, str(cfg.step_dir(step.out_subdir)), counts,
                    "[green]DONE[/green]" if done else "[yellow]PENDING[/yellow]")
    return tbl


def orchestrate(args, cfg, runner=None) -> int:
    steps = select_steps(args.steps, args.from_step)
    console.print(Panel(resume_table(cfg, steps), border_style="blue", title="Resume status", title_align="left"))

    names = [args.sample] if args.sample else None
    kwargs = {"runner": runner} if runner is not None else {}
    all_results = []
    for step in steps:
        if not args.yes and not Confirm.ask(f"Run [bold]{step.title}[/bold]?", default=True):
            log_info(f"Skipping {step.title}")
            continue
        all_results.extend(run_step(step, cfg, names=names, resume=args.resume, **kwargs))

    if all_results:
        console.print(results_table(all_results, title="Pipeline status"))
    console.print(Panel.fit(f"[bold green]All done![/bold green]\n\n[white]Project:[/white] {cfg.project_dir}",
                            border_style="green"))
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    set_quiet(args.quiet)
    console.print(Panel.fit(
        Markdown("### SMP End-to-End\n**Pipeline:** QC → Host removal → Taxonomy → Function → "
                 "Assembly → Binning → ARG/MGE"),
        border_style="blue"
    ))
    try:
        cfg = config_from_args(args)
        activate_tool_env(cfg)
        code = orchestrate(args, cfg)
    except SMPError as e:
        log_error(str(e))
        code = exit_code_for(e)
    sys.exit(code)


if __name__ == "__main__":
    main()
