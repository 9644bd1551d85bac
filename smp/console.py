from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule

console = Console()

# Global log control (set in main from CLI flags)
QUIET: bool = False


def set_quiet(quiet: bool) -> None:
    global QUIET
    QUIET = bool(quiet)


def log_info(msg: str) -> None:
    console.print(f"[blue][INFO][/blue] {msg}")


def log_success(msg: str) -> None:
    console.print(f"[green][SUCCESS][/green] {msg}")


def log_warning(msg: str) -> None:
    console.print(f"[yellow][WARNING][/yellow] {msg}")


def log_error(msg: str) -> None:
    console.print(f"[red][ERROR][/red] {msg}")


def log_command(pretty: str) -> None:
    if not QUIET:
        console.print(f"[dim]$ {pretty}[/dim]")


def step_header(title: str, subtitle: str = "") -> None:
    text = f"[bold]{title}[/bold]"
    if subtitle:
        text += f"\n[dim]{subtitle}[/dim]"
    console.print(Panel.fit(text, border_style="cyan", padding=(1, 2)))


def banner(title: str) -> None:
    console.print(Rule(title=f"[bold]{title}[/bold]"))
