"""Data models and error types for zmw-align."""
from __future__ import annotations

import re
from dataclasses import dataclass, field

import pysam

from zmw_align.cigar import Cigar


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ZmwAlignError(Exception):
    """Base class for errors reported to the user with a non-zero exit."""


class InputShapeError(ZmwAlignError):
    """Raised when inputs have the wrong shape (file counts, missing index, chunking)."""


class FilterError(ZmwAlignError):
    """Raised when a dataset filter is malformed or unsupported."""


class ReadIOError(ZmwAlignError):
    """Raised when a BAM, PBI or dataset file cannot be read."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


_CHUNK_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*$")


@dataclass(frozen=True)
class ChunkSpec:
    """One of ``denominator`` contiguous partitions of the unique ZMWs (1-based)."""

    numerator: int
    denominator: int

    def __post_init__(self):
        if not (1 <= self.numerator <= self.denominator):
            raise InputShapeError(
                f"Invalid chunk {self.numerator}/{self.denominator}: "
                "numerator must be in [1, denominator]"
            )

    @classmethod
    def parse(cls, chunk: str) -> ChunkSpec:
        """Parse ``i/N`` as given to ``--chunk``."""
        m = _CHUNK_RE.match(chunk)
        if not m:
            raise InputShapeError(
                "Wrong format for --chunk, please provide two integers separated by a "
                "slash like 2/10. First number must not be greater than the second number. "
                "Both must be positive and greater than 0."
            )
        return cls(int(m.group(1)), int(m.group(2)))

    @property
    def is_first(self) -> bool:
        return self.numerator == 1

    @property
    def is_last(self) -> bool:
        return self.numerator == self.denominator

    def __str__(self) -> str:
        return f"{self.numerator}/{self.denominator}"


@dataclass
class ZmwRecords:
    """All consecutive records of one ZMW from one input file."""

    movie_name: str = ""
    hole_number: int = -1
    records: list[pysam.AlignedSegment] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class Mapping:
    """A single hit reported by the aligner engine.

    Target coordinates are on the forward target strand.  Query coordinates
    are on the forward query.  For reverse hits the Cigar walks the reverse
    complemented target from its start.
    """

    target_id: int
    target_reversed: bool
    target_start: int
    target_end: int
    query_start: int
    query_end: int
    query_len: int
    cigar: Cigar
    score: int
    is_supplementary: bool = False
    priority: int = 0


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def hole_number(record: pysam.AlignedSegment) -> int:
    """ZMW hole number of a PacBio record (``zm`` tag, else parsed from the name)."""
    if record.has_tag("zm"):
        return int(record.get_tag("zm"))
    parts = record.query_name.split("/")
    if len(parts) < 2 or not parts[1].isdigit():
        raise InputShapeError(f"Cannot determine hole number of read {record.query_name}")
    return int(parts[1])


def movie_name(record: pysam.AlignedSegment) -> str:
    """Movie name of a PacBio record, the first field of ``movie/zmw/...``."""
    return record.query_name.split("/", 1)[0]
