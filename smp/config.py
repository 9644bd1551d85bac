import os
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from .console import log_warning
from .errors import ConfigError

DB_BASE_DIR = Path.home() / "metagenomics_databases"
DATABASE_CONFIG_NAME = "database_config.txt"

ASSEMBLERS = ("megahit", "spades", "both")
BINNING_ASSEMBLERS = ("auto", "megahit", "spades")
BRACKEN_LEVELS = ("D", "P", "C", "O", "F", "G", "S")
DEFAULT_ABRICATE_DBS = ("ncbi", "card", "argannot", "resfinder", "vfdb", "plasmidfinder")

# database_config.txt keys written by the database setup script
DATABASE_KEYS = {
    "KRAKEN2_DB": "kraken2_db",
    "METAPHLAN_DB": "metaphlan_db",
    "HUMANN_DB": "humann_db",
    "CHECKM_DB": "checkm_db",
    "GTDBTK_DB": "gtdbtk_db",
    "HOST_GENOME": "host_genome",
    "GENOMAD_DB": "genomad_db",
    "PLASMIDFINDER_DB": "plasmidfinder_db",
}

PATH_FIELDS = (
    "project_dir", "raw_dir", "tool_env",
    "kraken2_db", "metaphlan_db", "humann_db", "checkm_db", "gtdbtk_db",
    "host_genome", "genomad_db", "plasmidfinder_db",
)


@dataclass(frozen=True)
class PipelineConfig:
    """Everything a step needs, resolved and validated once at load time."""

    project_dir: Path
    raw_dir: Optional[Path] = None
    threads: int = 8
    memory_gb: int = 32

    # fastp
    min_length: int = 50
    min_quality: int = 20
    window_size: int = 4
    mean_quality: int = 20

    # taxonomy
    bracken_read_len: int = 150
    bracken_level: str = "S"
    bracken_threshold: int = 10

    # assembly / binning
    min_contig_length: int = 500
    assembler: str = "megahit"
    binning_assembler: str = "auto"
    binning_min_contig: int = 2500

    # ARG / MGE
    abricate_dbs: Tuple[str, ...] = DEFAULT_ABRICATE_DBS
    novel_identity: float = 90.0
    novel_coverage: float = 80.0
    plasmidfinder_identity: float = 0.90
    plasmidfinder_coverage: float = 0.60
    amrfinder_update: bool = False

    qc_nonhost: bool = False
    tool_env: Optional[Path] = None

    kraken2_db: Optional[Path] = DB_BASE_DIR / "kraken2" / "standard"
    metaphlan_db: Optional[Path] = DB_BASE_DIR / "metaphlan"
    humann_db: Optional[Path] = DB_BASE_DIR / "humann"
    checkm_db: Optional[Path] = DB_BASE_DIR / "checkm"
    gtdbtk_db: Optional[Path] = DB_BASE_DIR / "gtdbtk"
    host_genome: Optional[Path] = DB_BASE_DIR / "host_genome" / "human" / "human_genome"
    genomad_db: Optional[Path] = None
    plasmidfinder_db: Optional[Path] = Path("/usr/share/plasmidfinder/plasmidfinder_db")

    extra: Dict[str, str] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if self.raw_dir is None:
            object.__setattr__(self, "raw_dir", self.project_dir / "raw_fastq")
        self.validate()

    def validate(self) -> None:
        if not self.project_dir.is_dir():
            raise ConfigError(f"Project directory not found: {self.project_dir}")
        for name in ("threads", "memory_gb", "min_length", "bracken_read_len",
                     "min_contig_length", "binning_min_contig"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"'{name}' must be a positive integer, got {value!r}")
        if self.assembler not in ASSEMBLERS:
            raise ConfigError(f"'assembler' must be one of {ASSEMBLERS}, got {self.assembler!r}")
        if self.binning_assembler not in BINNING_ASSEMBLERS:
            raise ConfigError(
                f"'binning_assembler' must be one of {BINNING_ASSEMBLERS}, got {self.binning_assembler!r}"
            )
        if self.bracken_level not in BRACKEN_LEVELS:
            raise ConfigError(f"'bracken_level' must be one of {BRACKEN_LEVELS}, got {self.bracken_level!r}")
        if not self.abricate_dbs:
            raise ConfigError("'abricate_dbs' must name at least one database")

    def step_dir(self, *parts: str) -> Path:
        return self.project_dir.joinpath(*parts)

    def replace(self, **changes) -> "PipelineConfig":
        return dataclasses.replace(self, **changes)


def _clean(val: str) -> str:
    val = val.strip()
    if len(val) >= 2 and val[0] == val[-1] and val[0] in "'\"":
        val = val[1:-1]
    return val


def parse_database_config(cfg_path) -> Dict[str, str]:
    """Read the flat KEY=value file recorded by the database setup script."""
    data = {}
    with open(cfg_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            if "=" not in line:
                continue
            key, val = line.split("=", 1)
            data[key.strip()] = _clean(val)
    return data


def _coerce(name: str, value):
    if value is None:
        return None
    if name in PATH_FIELDS:
        return Path(str(value)).expanduser()
    if name == "abricate_dbs":
        if isinstance(value, str):
            value = [x.strip() for x in value.split(",") if x.strip()]
        return tuple(str(x) for x in value)
    return value


def load_config(cfg_path=None, overrides: Optional[dict] = None) -> PipelineConfig:
    """Build a PipelineConfig from config.yml, database_config.txt and CLI overrides.

    Precedence, lowest first: built-in defaults, database_config.txt,
    config.yml, GTDBTK_DATA_PATH (only when nothing else sets gtdbtk_db),
    CLI overrides.
    """
    values: dict = {}
    cfg_dir = Path.cwd()
    raw: dict = {}
    if cfg_path:
        cfg_path = Path(cfg_path)
        cfg_dir = cfg_path.resolve().parent
        try:
            raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config {cfg_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config {cfg_path} must be a mapping of key: value")

    db_cfg = raw.pop("database_config", None)
    db_cfg = Path(str(db_cfg)).expanduser() if db_cfg else cfg_dir / DATABASE_CONFIG_NAME
    if db_cfg.is_file():
        for key, val in parse_database_config(db_cfg).items():
            if key in DATABASE_KEYS:
                values[DATABASE_KEYS[key]] = val

    known = {f.name for f in dataclasses.fields(PipelineConfig)} - {"extra"}
    extra = {}
    for key, val in raw.items():
        if key in known:
            values[key] = val
        else:
            extra[key] = str(val)
    if extra:
        log_warning(f"Ignoring unknown config keys: {', '.join(sorted(extra))}")

    if "gtdbtk_db" not in values and os.environ.get("GTDBTK_DATA_PATH"):
        values["gtdbtk_db"] = os.environ["GTDBTK_DATA_PATH"]

    for key, val in (overrides or {}).items():
        if val is not None:
            values[key] = val

    if "project_dir" not in values:
        values["project_dir"] = Path.cwd()

    kwargs = {k: _coerce(k, v) for k, v in values.items() if k in known}
    kwargs["project_dir"] = Path(kwargs["project_dir"]).resolve()
    try:
        return PipelineConfig(extra=extra, **kwargs)
    except TypeError as e:
        raise ConfigError(str(e)) from e


def activate_tool_env(cfg: PipelineConfig) -> None:
    if not cfg.tool_env:
        return
    env_bin = cfg.tool_env / "bin"
    if env_bin.is_dir():
        os.environ["PATH"] = str(env_bin) + os.pathsep + os.environ.get("PATH", "")
    else:
        log_warning(f"tool_env bin not found: {env_bin} (continuing)")
