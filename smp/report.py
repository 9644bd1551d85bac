from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from .checkpoint import atomic_write_text

RULE = "=" * 80
SUBRULE = "-" * 40


class SummaryReport:
    """Plain-text per-step summary; derived data, rewritten on every run."""

    def __init__(self, title: str, generated: Optional[datetime] = None):
        self.title = title
        self.generated = generated or datetime.now()
        self._lines: List[str] = [
            RULE,
            title,
            f"Generated: {self.generated.strftime('%a %b %d %H:%M:%S %Y')}",
            RULE,
            "",
        ]

    def fields(self, pairs: Sequence[Tuple[str, object]], indent: str = "") -> "SummaryReport":
        if not pairs:
            return self
        width = max(len(k) for k, _ in pairs) + 1
        for key, value in pairs:
            self._lines.append(f"{indent}{(key + ':').ljust(width)} {value}")
        self._lines.append("")
        return self

    def section(self, title: str) -> "SummaryReport":
        self._lines.extend([RULE, title, RULE, ""])
        return self

    def sample(self, name: str, pairs: Sequence[Tuple[str, object]]) -> "SummaryReport":
        self._lines.extend([f"Sample: {name}", SUBRULE])
        return self.fields(pairs, indent="  ")

    def text(self, block: str) -> "SummaryReport":
        self._lines.extend(block.rstrip("\n").split("\n"))
        self._lines.append("")
        return self

    def render(self) -> str:
        return "\n".join(self._lines).rstrip("\n") + "\n" + RULE + "\n"

    def write(self, path) -> None:
        atomic_write_text(path, self.render())
