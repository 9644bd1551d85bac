import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from rich.table import Table

from .checkpoint import Status, StatusStore
from .config import PipelineConfig, activate_tool_env, load_config
from .console import (console, log_error, log_info, log_success, log_warning,
                      set_quiet, step_header)
from .errors import ConfigError, MissingInputError, ParseError, SMPError, ToolError
from .runner import ToolResult, run_tool
from .samples import Discovery, discover_samples

COMPLETE = "complete"
CACHED = "cached"
SKIPPED = "skipped"
FAILED = "failed"

STATUS_STYLE = {
    COMPLETE: "[green]COMPLETE[/green]",
    CACHED: "[cyan]CACHED[/cyan]",
    SKIPPED: "[yellow]SKIPPED[/yellow]",
    FAILED: "[red]FAILED[/red]",
}


@dataclass
class SampleResult:
    sample: str
    step: str
    status: str
    message: str = ""
    metrics: dict = field(default_factory=dict)
    returncode: int = 0

    @property
    def ok(self) -> bool:
        return self.status != FAILED


class StepContext:
    """What a step function sees: config, the process runner and shared state."""

    def __init__(self, step: "Step", cfg: PipelineConfig, runner: Callable = run_tool):
        self.step = step
        self.cfg = cfg
        self.runner = runner
        self.state: Dict[str, object] = {}

    @property
    def out_dir(self) -> Path:
        return self.cfg.step_dir(self.step.out_subdir)

    @property
    def logs_dir(self) -> Path:
        return self.out_dir / "logs"

    def log(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"

    def run(self, cmd: Sequence, log: str, stdout=None, cwd=None, check: bool = True) -> ToolResult:
        return self.runner(cmd, log_file=self.log(log), stdout=stdout, cwd=cwd, check=check)


@dataclass
class Step:
    name: str
    title: str
    out_subdir: str
    process: Callable
    outputs: Callable
    input_stage: Optional[str] = None
    input_dir: Optional[Callable] = None
    discover: Optional[Callable] = None
    prepare: Optional[Callable] = None
    finalize: Optional[Callable] = None
    add_arguments: Optional[Callable] = None
    help: Optional[Callable] = None
    next_hint: str = ""

    def find_samples(self, cfg: PipelineConfig, names=None) -> Discovery:
        if self.discover is not None:
            return self.discover(cfg, names)
        return discover_samples(self.input_dir(cfg), self.input_stage, names)


def store_for(cfg: PipelineConfig) -> StatusStore:
    return StatusStore(cfg.project_dir / ".checkpoints")


def prepare_step(step: Step, cfg: PipelineConfig, runner: Callable = run_tool) -> StepContext:
    ctx = StepContext(step, cfg, runner)
    ctx.out_dir.mkdir(parents=True, exist_ok=True)
    ctx.logs_dir.mkdir(parents=True, exist_ok=True)
    if step.prepare is not None:
        step.prepare(ctx)
    return ctx


def run_sample(ctx: StepContext, unit, store: StatusStore, resume: bool = True,
               keep_going: bool = False) -> SampleResult:
    step = ctx.step
    outputs = step.outputs(ctx, unit)
    if resume and store.is_complete(step.name, unit.name, outputs):
        log_info(f"{unit.name}: {step.title} already complete, skipping")
        return SampleResult(unit.name, step.name, CACHED)
    if store.status(step.name, unit.name) is Status.RUNNING:
        log_warning(f"{unit.name}: previous {step.title} run was interrupted, re-running")

    store.mark(step.name, unit.name, Status.RUNNING)
    log_info(f"Processing sample: {unit.name}")
    try:
        try:
            metrics = step.process(ctx, unit) or {}
        except OSError as e:
            raise ParseError(e.filename or unit.name, e.strerror or str(e)) from e
        absent = [str(o) for o in outputs if not Path(o).exists()]
        if absent:
            raise ParseError(absent[0], "expected output was not produced")
    except MissingInputError as e:
        log_warning(f"{unit.name}: {e}, skipping...")
        store.mark(step.name, unit.name, Status.PENDING, message=str(e))
        return SampleResult(unit.name, step.name, SKIPPED, message=str(e))
    except (ToolError, ParseError) as e:
        store.mark(step.name, unit.name, Status.FAILED, message=str(e))
        log_error(f"{unit.name}: {e}")
        if isinstance(e, ToolError):
            for line in e.result.stderr_tail[-5:]:
                console.print(f"    [dim]{line}[/dim]")
        if not keep_going:
            raise
        return SampleResult(unit.name, step.name, FAILED, message=str(e),
                            returncode=getattr(e, "returncode", 1))

    store.mark(step.name, unit.name, Status.COMPLETE, outputs=outputs)
    log_success(f"  {step.title} completed for {unit.name}")
    return SampleResult(unit.name, step.name, COMPLETE, metrics=metrics)


def finalize_step(ctx: StepContext, results: List[SampleResult]) -> None:
    if ctx.step.finalize is not None:
        ctx.step.finalize(ctx, results)


def run_step(step: Step, cfg: PipelineConfig, names=None, runner: Callable = run_tool,
             resume: bool = True, keep_going: bool = False) -> List[SampleResult]:
    """Apply one step to every sample found in its input directory, in order."""
    step_header(step.title, f"output: {cfg.step_dir(step.out_subdir)}")
    ctx = prepare_step(step, cfg, runner)
    store = store_for(cfg)
    found = step.find_samples(cfg, names)

    results: List[SampleResult] = []
    for name in found.missing:
        log_warning(f"No input found for {name}, skipping...")
        results.append(SampleResult(name, step.name, SKIPPED, message="input not found"))
    if not found.samples:
        log_warning(f"No samples to process for {step.title}")

    for unit in found.samples:
        results.append(run_sample(ctx, unit, store, resume=resume, keep_going=keep_going))

    finalize_step(ctx, results)
    return results


def results_table(results: List[SampleResult], title: str = "Sample status") -> Table:
    tbl = Table(show_header=True, header_style="bold magenta", title=title)
    tbl.add_column("Sample", style="cyan", no_wrap=True)
    tbl.add_column("Step", style="white")
    tbl.add_column("Status", style="white")
    tbl.add_column("Message", style="white")
    for r in results:
        tbl.add_row(r.sample, r.step, STATUS_STYLE.get(r.status, r.status), r.message)
    return tbl


# ----------------------------- per-step CLI -----------------------------------
class CustomArgumentParser(argparse.ArgumentParser):
    help_fn: Optional[Callable] = None

    def print_help(self, file=None):
        if self.help_fn is None:
            return super().print_help(file)
        self.help_fn()
        self.exit()


def add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("-cf", "--config", type=str, help="Path to config.yml")
    p.add_argument("-d", "--project-dir", dest="project_dir", type=str)
    p.add_argument("-p", "--threads", type=int)
    p.add_argument("-m", "--memory", dest="memory_gb", type=int)
    g = p.add_mutually_exclusive_group()
    g.add_argument("--resume", dest="resume", action="store_true")
    g.add_argument("--no-resume", dest="resume", action="store_false")
    p.set_defaults(resume=True)
    lg = p.add_mutually_exclusive_group()
    lg.add_argument("--quiet", dest="quiet", action="store_true")
    lg.add_argument("--show-logs", dest="quiet", action="store_false")
    p.set_defaults(quiet=False)


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    known = PipelineConfig.__dataclass_fields__
    overrides = {k: v for k, v in vars(args).items() if k in known and v is not None}
    return load_config(args.config, overrides)


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, ToolError):
        return exc.returncode or 1
    return 1


def step_main(step: Step, argv=None) -> int:
    parser = CustomArgumentParser(prog=f"smp-{step.name.replace('_', '-')}", description=step.title)
    parser.help_fn = step.help
    parser.add_argument("sample", nargs="?", help="Process only this sample.")
    add_common_arguments(parser)
    if step.add_arguments is not None:
        step.add_arguments(parser)
    args = parser.parse_args(argv)
    set_quiet(args.quiet)

    try:
        cfg = config_from_args(args)
        activate_tool_env(cfg)
        names = [args.sample] if args.sample else None
        results = run_step(step, cfg, names=names, resume=args.resume)
    except ConfigError as e:
        log_error(str(e))
        return 1
    except SMPError as e:
        log_error(str(e))
        return exit_code_for(e)

    console.print(results_table(results, title=step.title))
    log_success(f"{step.title} completed!")
    if step.next_hint:
        log_info(f"Next step: {step.next_hint}")
    return 0


def entry(step: Step) -> None:
    sys.exit(step_main(step))
