"""Run settings and aligner configuration loading.

Aligner parameters can be overridden from a TOML file with an ``[engine]``
table, for example::

    [engine]
    max_error_rate = 0.3
    min_alignment_span = 500
    report_secondary = true
"""
from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from zmw_align.engine import EngineSettings
from zmw_align.models import ChunkSpec, ZmwAlignError
from zmw_align.reader import BamZmwReaderConfig


class ConfigError(ZmwAlignError):
    """Raised when an aligner configuration file fails validation."""


@dataclass
class ActcSettings:
    """Everything a run needs, resolved from the command line."""

    subread_file: Path
    ccs_file: Path
    output_file: Path
    num_threads: int = 1
    chunk: ChunkSpec | None = None
    ccs_query: bool = False
    engine: EngineSettings = field(default_factory=EngineSettings)
    command_line: str = ""

    def reader_config(self) -> BamZmwReaderConfig:
        return BamZmwReaderConfig(chunk=self.chunk, decompression_threads=self.num_threads)

    @property
    def fasta_file(self) -> Path:
        """CCS sequence listing written next to the output BAM."""
        name = self.output_file.name
        if name.endswith(".bam"):
            name = name[: -len(".bam")] + ".fasta"
        else:
            name += ".fasta"
        return self.output_file.with_name(name)


def _check_type(key: str, value, expected) -> None:
    if expected is bool:
        ok = isinstance(value, bool)
    elif expected is float:
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    else:
        ok = isinstance(value, int) and not isinstance(value, bool)
    if not ok:
        raise ConfigError(f"[engine] {key} must be of type {expected.__name__}, got {value!r}")


def load_engine_settings(path: Path | str | None) -> EngineSettings:
    """Parse the ``[engine]`` table of a TOML file into ``EngineSettings``.

    Missing keys keep their defaults.  Unknown keys, wrong types and
    out-of-range values raise ``ConfigError``.
    """
    if path is None:
        return EngineSettings()
    path = Path(path)
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    table = data.get("engine", {})
    if not isinstance(table, dict):
        raise ConfigError("[engine] must be a table")

    types = {f.name: f.type for f in fields(EngineSettings)}
    kwargs = {}
    for key, value in table.items():
        if key not in types:
            raise ConfigError(f"Unknown [engine] key: {key!r}")
        expected = {"bool": bool, "float": float, "int": int}[types[key]]
        _check_type(key, value, expected)
        kwargs[key] = expected(value)

    settings = EngineSettings(**kwargs)
    if not 0.0 <= settings.max_error_rate <= 1.0:
        raise ConfigError(f"[engine] max_error_rate must be in [0, 1], got {settings.max_error_rate}")
    for name in ("min_alignment_span", "min_query_len"):
        if getattr(settings, name) < 0:
            raise ConfigError(f"[engine] {name} must be >= 0")
    return settings
