import pytest

from smp import SMP_end2end
from smp.SMP_end2end import build_parser, orchestrate, resume_table
from smp.errors import ToolError

from .conftest import FakeRunner, fastp_handler


def parse(project, *extra):
    return build_parser().parse_args(["-d", str(project), *extra])


def table_cells(tbl):
    return [list(col.cells) for col in tbl.columns]


def test_orchestrate_runs_selected_steps(cfg, project, raw_pair):
    raw_pair("s1", n=10)
    fake = FakeRunner(handlers={"fastp": fastp_handler(9)})
    assert orchestrate(parse(project, "--yes", "--steps", "qc"), cfg, runner=fake) == 0
    assert len(fake.calls_of("fastp")) == 1

    status = table_cells(resume_table(cfg, SMP_end2end.select_steps("qc")))
    assert status[2] == ["1 complete"]
    assert "DONE" in status[3][0]


def test_orchestrate_declined_steps_do_not_run(cfg, project, raw_pair, monkeypatch):
    raw_pair("s1", n=10)
    monkeypatch.setattr(SMP_end2end.Confirm, "ask", lambda *a, **k: False)
    fake = FakeRunner()
    assert orchestrate(parse(project), cfg, runner=fake) == 0
    assert fake.calls == []


def test_orchestrate_stops_on_failure(cfg, project, raw_pair):
    raw_pair("s1", n=10)
    fake = FakeRunner(fail={"fastp": set()})
    with pytest.raises(ToolError):
        orchestrate(parse(project, "--yes", "--steps", "qc,host_removal"), cfg, runner=fake)
    assert fake.calls_of("bowtie2") == []


def test_resume_table_pending_and_failed(cfg, project, raw_pair):
    raw_pair("s1", n=10)
    raw_pair("s2", n=10)
    fake = FakeRunner(handlers={"fastp": fastp_handler(9)}, fail={"fastp": {"s2_1"}})
    with pytest.raises(ToolError):
        orchestrate(parse(project, "--yes", "--steps", "qc"), cfg, runner=fake)
    status = table_cells(resume_table(cfg, SMP_end2end.select_steps("qc,taxonomy")))
    assert status[2] == ["1 complete, 1 failed", "0 complete"]
    assert all("PENDING" in cell for cell in status[3])


def test_main_exit_code_from_tool(project, raw_pair, monkeypatch, tmp_path):
    raw_pair("s1", n=5)
    empty_bin = tmp_path / "empty_bin"
    empty_bin.mkdir()
    monkeypatch.setenv("PATH", str(empty_bin))
    monkeypatch.chdir(project)
    with pytest.raises(SystemExit) as exc:
        SMP_end2end.main(["-d", str(project), "--yes", "--steps", "qc"])
    assert exc.value.code == 127
