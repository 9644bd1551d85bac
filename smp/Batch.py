import sys
from pathlib import Path
from typing import Callable, List

import pandas as pd
from rich.panel import Panel
from rich.table import Table

from .SMP_end2end import STEP_NAMES, select_steps
from .config import activate_tool_env
from .console import console, banner, log_error, log_info, log_success, log_warning, set_quiet
from .errors import MissingInputError, ParseError, SMPError, ToolError
from .runner import run_tool
from .samples import read_sample_list
from .steps import (COMPLETE, FAILED, SKIPPED, STATUS_STYLE, CustomArgumentParser, SampleResult,
                    add_common_arguments, config_from_args, exit_code_for, finalize_step,
                    prepare_step, run_sample, store_for)


def run_batch(cfg, names: List[str], steps, runner: Callable = run_tool, resume: bool = True):
    """Run *steps* for each sample in list order; one sample's failure never stops the others.

    Returns (results, finalize_errors).
    """
    store = store_for(cfg)
    contexts = {}
    unavailable = {}
    for step in steps:
        try:
            contexts[step.name] = prepare_step(step, cfg, runner)
        except (MissingInputError, ToolError) as e:
            log_warning(f"{step.title} cannot run, skipping it for every sample: {e}")
            unavailable[step.name] = str(e)

    results: List[SampleResult] = []
    per_step = {step.name: [] for step in steps}
    for name in names:
        banner(f"Sample: {name}")
        failed_at = None
        for step in steps:
            if failed_at is not None:
                res = SampleResult(name, step.name, SKIPPED, message=f"{failed_at} failed")
            elif step.name in unavailable:
                res = SampleResult(name, step.name, SKIPPED, message=unavailable[step.name])
            else:
                found = step.find_samples(cfg, [name])
                if not found.samples:
                    log_warning(f"{name}: no input for {step.title}, skipping...")
                    res = SampleResult(name, step.name, SKIPPED, message="input not found")
                else:
                    res = run_sample(contexts[step.name], found.samples[0], store,
                                     resume=resume, keep_going=True)
            if res.status == FAILED and failed_at is None:
                failed_at = step.name
            results.append(res)
            per_step[step.name].append(res)

    finalize_errors = []
    for step in steps:
        if step.name not in contexts:
            continue
        try:
            finalize_step(contexts[step.name], per_step[step.name])
        except (ToolError, ParseError) as e:
            log_error(f"{step.title} summary failed: {e}")
            finalize_errors.append(f"{step.name}: {e}")
    return results, finalize_errors


def status_frame(results: List[SampleResult], names: List[str], steps) -> pd.DataFrame:
    df = pd.DataFrame([{"sample": r.sample, "step": r.step, "status": r.status} for r in results])
    if df.empty:
        return pd.DataFrame(index=pd.Index(names, name="sample"))
    wide = df.pivot(index="sample", columns="step", values="status")
    return wide.reindex(index=names, columns=[s.name for s in steps])


def status_table(frame: pd.DataFrame) -> Table:
    tbl = Table(show_header=True, header_style="bold magenta", title="Batch status")
    tbl.add_column("Sample", style="cyan", no_wrap=True)
    for col in frame.columns:
        tbl.add_column(col, style="white")
    for sample, row in frame.iterrows():
        tbl.add_row(str(sample), *[STATUS_STYLE.get(v, str(v)) for v in row.values])
    return tbl


def custom_help():
    console.print(Panel(
        "SMP Batch\nRuns the pipeline steps for every sample of a sample-list file, one "
        "sample at a time. A failing sample is recorded and the batch moves on.",
        border_style="blue", title="smp-batch", title_align="left"
    ))
    g = Table(show_header=False, box=None, pad_edge=False)
    g.add_column("Flag", style="bold cyan", no_wrap=True)
    g.add_column("Description", style="white")
    g.add_row("SAMPLE_LIST", "Text file, one sample name per line ('#' comments allowed).")
    g.add_row("-cf, --config", "Path to config.yml.")
    g.add_row("-d, --project-dir", "Project directory.")
    g.add_row("-p, --threads", "Threads passed to every tool.")
    g.add_row("--steps", f"Comma-separated subset of: {', '.join(STEP_NAMES)}.")
    g.add_row("--from-step", "Start at this step.")
    g.add_row("--resume/--no-resume", "Skip samples already complete (default: on).")
    console.print(g)
    console.print()


def build_parser() -> CustomArgumentParser:
    p = CustomArgumentParser(prog="smp-batch", description="Run the pipeline over a sample list.")
    p.help_fn = custom_help
    p.add_argument("sample_list", type=str)
    add_common_arguments(p)
    p.add_argument("--steps", type=str)
    p.add_argument("--from-step", choices=STEP_NAMES)
    return p


def batch(args, runner: Callable = run_tool) -> int:
    cfg = config_from_args(args)
    activate_tool_env(cfg)
    names = read_sample_list(args.sample_list)
    if not names:
        log_warning(f"No samples listed in {args.sample_list}")
        return 0
    steps = select_steps(args.steps, args.from_step)
    log_info(f"Samples: {', '.join(names)}")
    log_info(f"Steps:   {', '.join(s.name for s in steps)}")

    results, finalize_errors = run_batch(cfg, names, steps, runner=runner, resume=args.resume)

    frame = status_frame(results, names, steps)
    console.print(status_table(frame))
    out = Path(cfg.project_dir) / "batch_status.tsv"
    frame.to_csv(out, sep="\t")
    log_info(f"Batch status written to {out}")

    failed = sorted({r.sample for r in results if r.status == FAILED})
    if failed or finalize_errors:
        if failed:
            log_error(f"Failed samples: {', '.join(failed)}")
        return 1
    done = sum(1 for r in results if r.status == COMPLETE)
    log_success(f"Batch completed ({done} sample-steps run)")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    set_quiet(args.quiet)
    try:
        code = batch(args)
    except SMPError as e:
        log_error(str(e))
        code = exit_code_for(e)
    except OSError as e:
        log_error(f"Cannot read sample list: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
