import sys
from datetime import datetime

import pytest

from smp.errors import ToolError
from smp.report import RULE, SummaryReport
from smp.runner import require_binaries, run_tool


def test_summary_report_layout():
    report = SummaryReport("QC Summary", generated=datetime(2026, 2, 25, 9, 5, 3))
    report.fields([("Project", "/p"), ("Threads", 8)])
    report.sample("s1", [("Total raw reads", 1000), ("Retention rate", "87.30%")])
    text = report.render()
    lines = text.splitlines()
    assert lines[:4] == [RULE, "QC Summary", "Generated: Wed Feb 25 09:05:03 2026", RULE]
    assert "Project: /p" in lines
    assert "Threads: 8" in lines
    assert "Sample: s1" in lines
    assert "  Total raw reads: 1000" in lines
    assert "  Retention rate:  87.30%" in lines
    assert text.endswith(RULE + "\n")


def test_summary_report_write(tmp_path):
    path = tmp_path / "out" / "summary.txt"
    SummaryReport("T").section("Section").text("free text").write(path)
    assert "free text" in path.read_text()


def test_run_tool_success_logs_command(tmp_path):
    log = tmp_path / "logs" / "t.log"
    result = run_tool([sys.executable, "-c", "import sys; sys.stderr.write('hello\\n')"], log_file=log)
    assert result.ok
    content = log.read_text()
    assert content.startswith("$ ")
    assert "hello" in content


def test_run_tool_stdout_to_result_file(tmp_path):
    out = tmp_path / "res.tab"
    run_tool([sys.executable, "-c", "print('col1\\tcol2')"], log_file=tmp_path / "t.log", stdout=out)
    assert out.read_text() == "col1\tcol2\n"
    assert "col1\tcol2" not in (tmp_path / "t.log").read_text()


def test_run_tool_failure_raises(tmp_path):
    with pytest.raises(ToolError) as exc:
        run_tool([sys.executable, "-c", "import sys; sys.stderr.write('bad input\\n'); sys.exit(3)"],
                 log_file=tmp_path / "t.log")
    assert exc.value.returncode == 3
    assert "bad input" in exc.value.result.stderr_tail


def test_run_tool_unchecked_returns_result(tmp_path):
    result = run_tool([sys.executable, "-c", "raise SystemExit(2)"], check=False)
    assert result.returncode == 2
    assert not result.ok


def test_run_tool_missing_binary(tmp_path):
    with pytest.raises(ToolError) as exc:
        run_tool(["definitely-not-a-real-tool-xyz"], log_file=tmp_path / "t.log")
    assert exc.value.returncode == 127


def test_require_binaries():
    require_binaries([sys.executable])
    with pytest.raises(ToolError):
        require_binaries(["definitely-not-a-real-tool-xyz"])
