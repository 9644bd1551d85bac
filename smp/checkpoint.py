import json
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


def atomic_write_text(path, text: str) -> None:
    """Write via a temp file in the same directory, then rename over *path*."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


class StatusStore:
    """Per-(step, sample) status records under <project>/.checkpoints/."""

    def __init__(self, root):
        self.root = Path(root)

    def path(self, step: str, sample: str) -> Path:
        return self.root / step / f"{sample}.json"

    def get(self, step: str, sample: str) -> dict:
        p = self.path(step, sample)
        if not p.exists():
            return {"step": step, "sample": sample, "status": Status.PENDING.value}
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            # unreadable record: treat as never run
            return {"step": step, "sample": sample, "status": Status.PENDING.value}

    def status(self, step: str, sample: str) -> Status:
        try:
            return Status(self.get(step, sample).get("status", Status.PENDING.value))
        except ValueError:
            return Status.PENDING

    def mark(self, step: str, sample: str, status: Status, message: str = "",
             outputs: Optional[Iterable] = None) -> None:
        record = {
            "step": step,
            "sample": sample,
            "status": Status(status).value,
            "updated": datetime.now().isoformat(timespec="seconds"),
            "message": message,
            "outputs": [str(o) for o in (outputs or [])],
        }
        atomic_write_text(self.path(step, sample), json.dumps(record, indent=2) + "\n")

    def is_complete(self, step: str, sample: str, outputs: Iterable) -> bool:
        if self.status(step, sample) is not Status.COMPLETE:
            return False
        outputs = list(outputs)
        return bool(outputs) and all(Path(o).exists() for o in outputs)

    def samples(self, step: str) -> List[str]:
        d = self.root / step
        if not d.is_dir():
            return []
        return sorted(p.stem for p in d.glob("*.json"))
