import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .console import log_command
from .errors import ToolError

STDERR_TAIL = 20


@dataclass(frozen=True)
class ToolResult:
    cmd: List[str]
    returncode: int
    log_file: Optional[Path] = None
    stderr_tail: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def program(self) -> str:
        return Path(self.cmd[0]).name if self.cmd else "<empty>"

    @property
    def pretty(self) -> str:
        return " ".join(shlex.quote(x) for x in self.cmd)


def _tail(path: Optional[Path], n: int = STDERR_TAIL) -> List[str]:
    if path is None or not path.exists():
        return []
    with open(path, "r", errors="replace") as f:
        return [line.rstrip("\n") for line in f.readlines()[-n:]]


def run_tool(
    cmd: Sequence,
    log_file=None,
    stdout=None,
    cwd=None,
    check: bool = True,
) -> ToolResult:
    """Run one external command synchronously, without a shell.

    stderr (and stdout unless *stdout* names a result file) is appended to
    *log_file*. A non-zero exit raises ToolError unless check=False.
    """
    cmd = [str(x) for x in cmd]
    log_file = Path(log_file) if log_file else None
    result_file = Path(stdout) if stdout else None
    pretty = " ".join(shlex.quote(x) for x in cmd)
    log_command(pretty)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    if result_file:
        result_file.parent.mkdir(parents=True, exist_ok=True)

    log_handle = open(log_file, "a") if log_file else subprocess.DEVNULL
    out_handle = open(result_file, "w") if result_file else log_handle
    try:
        if log_file:
            log_handle.write(f"$ {pretty}\n")
            log_handle.flush()
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=out_handle,
            stderr=log_handle if log_file else subprocess.PIPE,
            text=True,
        )
        returncode = proc.returncode
        tail = _tail(log_file) if log_file else (proc.stderr or "").splitlines()[-STDERR_TAIL:]
    except FileNotFoundError:
        returncode = 127
        tail = [f"command not found: {cmd[0]}"]
        if log_file:
            log_handle.write(tail[0] + "\n")
    finally:
        if result_file:
            out_handle.close()
        if log_file:
            log_handle.close()

    result = ToolResult(cmd=cmd, returncode=returncode, log_file=log_file, stderr_tail=tail)
    if check and not result.ok:
        raise ToolError(result)
    return result


def require_binaries(bins: Sequence[str]) -> None:
    missing = [b for b in bins if shutil.which(b) is None]
    if missing:
        raise ToolError(ToolResult(cmd=list(missing), returncode=127,
                                   stderr_tail=[f"Missing binaries on PATH: {missing}"]))
