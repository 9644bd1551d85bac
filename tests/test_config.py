import os
from pathlib import Path

import pytest

from smp.config import PipelineConfig, activate_tool_env, load_config, parse_database_config
from smp.errors import ConfigError


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GTDBTK_DATA_PATH", raising=False)


def test_defaults(tmp_path):
    cfg = PipelineConfig(project_dir=tmp_path)
    assert cfg.threads == 8
    assert cfg.memory_gb == 32
    assert cfg.raw_dir == tmp_path / "raw_fastq"
    assert cfg.bracken_level == "S"
    assert "card" in cfg.abricate_dbs


def test_config_is_frozen(tmp_path):
    cfg = PipelineConfig(project_dir=tmp_path)
    with pytest.raises(Exception):
        cfg.threads = 4
    assert cfg.replace(threads=4).threads == 4
    assert cfg.threads == 8


@pytest.mark.parametrize("field,value", [
    ("threads", 0), ("threads", -2), ("memory_gb", 0), ("min_length", "50"),
    ("assembler", "velvet"), ("binning_assembler", "both"), ("bracken_level", "X"),
    ("abricate_dbs", ()),
])
def test_invalid_values_rejected(tmp_path, field, value):
    with pytest.raises(ConfigError):
        PipelineConfig(project_dir=tmp_path, **{field: value})


def test_missing_project_dir(tmp_path):
    with pytest.raises(ConfigError):
        PipelineConfig(project_dir=tmp_path / "nope")


def test_parse_database_config(tmp_path):
    p = tmp_path / "database_config.txt"
    p.write_text(
        "# written by setup\n"
        "\n"
        "KRAKEN2_DB=/db/kraken2\n"
        "export HUMANN_DB=\"/db/humann\"\n"
        "HOST_GENOME='/db/host/human'\n"
        "KRAKEN2_DB=/db/kraken2_new\n"
    )
    data = parse_database_config(p)
    assert data == {"KRAKEN2_DB": "/db/kraken2_new", "HUMANN_DB": "/db/humann", "HOST_GENOME": "/db/host/human"}


def test_load_config_precedence(tmp_path):
    (tmp_path / "database_config.txt").write_text("KRAKEN2_DB=/db/k2\nMETAPHLAN_DB=/db/mpa\n")
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text(
        f"project_dir: {tmp_path}\n"
        "threads: 16\n"
        "metaphlan_db: /yaml/mpa\n"
        "abricate_dbs: card,vfdb\n"
        "surprise: 1\n"
    )
    cfg = load_config(cfg_file, {"threads": 4, "memory_gb": None})
    assert cfg.threads == 4
    assert cfg.memory_gb == 32
    assert cfg.kraken2_db == Path("/db/k2")
    assert cfg.metaphlan_db == Path("/yaml/mpa")
    assert cfg.abricate_dbs == ("card", "vfdb")
    assert cfg.extra == {"surprise": "1"}


def test_load_config_defaults_to_cwd(tmp_path):
    cfg = load_config()
    assert cfg.project_dir == tmp_path.resolve()


def test_gtdbtk_env_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("GTDBTK_DATA_PATH", "/env/gtdbtk")
    assert load_config().gtdbtk_db == Path("/env/gtdbtk")


def test_load_config_rejects_non_mapping(tmp_path):
    p = tmp_path / "config.yml"
    p.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(p)


def test_load_config_bad_yaml(tmp_path):
    p = tmp_path / "config.yml"
    p.write_text("threads: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(p)


def test_activate_tool_env(tmp_path, monkeypatch):
    env_bin = tmp_path / "env" / "bin"
    env_bin.mkdir(parents=True)
    monkeypatch.setenv("PATH", "/usr/bin")
    activate_tool_env(PipelineConfig(project_dir=tmp_path, tool_env=tmp_path / "env"))
    assert os.environ["PATH"].split(os.pathsep)[0] == str(env_bin)


def test_activate_tool_env_missing_only_warns(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", "/usr/bin")
    activate_tool_env(PipelineConfig(project_dir=tmp_path, tool_env=tmp_path / "missing"))
    assert os.environ["PATH"] == "/usr/bin"
