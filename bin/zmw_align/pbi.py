"""Read-only access to PacBio BAM indices (``.pbi``).

Only the header and the BasicData section are loaded; the mapped, barcode and
reference sections that may follow are ignored.  Layout (little endian,
BGZF-compressed)::

    magic "PBI\\x01" | version u32 | sections u16 | n_reads u32 | reserved 18B
    rgId i32[n] | qStart i32[n] | qEnd i32[n] | holeNumber i32[n]
    readQual f32[n] | ctxtFlag u8[n] | fileOffset i64[n]
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pysam

from zmw_align.models import InputShapeError, ReadIOError

log = logging.getLogger(__name__)

PBI_MAGIC = b"PBI\x01"
HEADER_STRUCT = struct.Struct("<4sIHI18x")

BASIC_FIELDS = (
    ("rg_id", "<i4"),
    ("q_start", "<i4"),
    ("q_end", "<i4"),
    ("hole_number", "<i4"),
    ("read_qual", "<f4"),
    ("ctxt_flag", "u1"),
    ("file_offset", "<i8"),
)


@dataclass
class PbiBasicData:
    """Per-record columns of the PBI BasicData section."""

    version: int
    rg_id: np.ndarray
    q_start: np.ndarray
    q_end: np.ndarray
    hole_number: np.ndarray
    read_qual: np.ndarray
    ctxt_flag: np.ndarray
    file_offset: np.ndarray

    def __len__(self) -> int:
        return len(self.hole_number)


@dataclass
class UniqueZmw:
    """First PBI row of a ZMW."""

    pbi_idx: int
    hole_number: int
    file_offset: int


def pbi_path_for(bam_path: Path | str) -> Path:
    return Path(f"{bam_path}.pbi")


def has_pbi(bam_path: Path | str) -> bool:
    return pbi_path_for(bam_path).is_file()


def load_pbi(pbi_path: Path | str) -> PbiBasicData:
    """Load the BasicData section of a PBI file.

    Raises ``ReadIOError`` if the file is missing, truncated or not a PBI.
    """
    pbi_path = Path(pbi_path)
    if not pbi_path.is_file():
        raise ReadIOError(f"PBI file not found: {pbi_path}")
    try:
        with pysam.BGZFile(str(pbi_path), "rb") as fh:
            data = fh.read()
    except OSError as exc:
        raise ReadIOError(f"Cannot read PBI file {pbi_path}: {exc}") from exc

    if len(data) < HEADER_STRUCT.size:
        raise ReadIOError(f"PBI file {pbi_path} is truncated")
    magic, version, _sections, n_reads = HEADER_STRUCT.unpack_from(data, 0)
    if magic != PBI_MAGIC:
        raise ReadIOError(f"{pbi_path} is not a PBI file")

    columns: dict[str, np.ndarray] = {}
    offset = HEADER_STRUCT.size
    for name, dtype in BASIC_FIELDS:
        dt = np.dtype(dtype)
        nbytes = dt.itemsize * n_reads
        if offset + nbytes > len(data):
            raise ReadIOError(f"PBI file {pbi_path} is truncated in BasicData.{name}")
        columns[name] = np.frombuffer(data, dtype=dt, count=n_reads, offset=offset)
        offset += nbytes

    log.debug("Loaded PBI %s with %d records (version 0x%06x)", pbi_path, n_reads, version)
    return PbiBasicData(version=version, **columns)


def zmw_first_rows(hole_numbers: np.ndarray) -> np.ndarray:
    """Indices of rows that start a new ZMW (hole number differs from the previous row)."""
    if len(hole_numbers) == 0:
        return np.zeros(0, dtype=np.int64)
    starts = np.ones(len(hole_numbers), dtype=bool)
    starts[1:] = hole_numbers[1:] != hole_numbers[:-1]
    return np.flatnonzero(starts)


def unique_zmws(pbi: PbiBasicData, accepted: np.ndarray | None = None) -> list[UniqueZmw]:
    """First record per ZMW, in file order.

    *accepted* is an optional boolean mask from a dataset filter; a ZMW is
    kept only if its first row is accepted.
    """
    if len(pbi) == 0:
        raise InputShapeError("No input records in PBI file!")
    rows = zmw_first_rows(pbi.hole_number)
    if accepted is not None:
        rows = rows[accepted[rows]]
    return [
        UniqueZmw(int(i), int(pbi.hole_number[i]), int(pbi.file_offset[i]))
        for i in rows
    ]


def hole_number_offsets(pbi: PbiBasicData) -> dict[int, int]:
    """Map hole number -> virtual file offset of its first record.

    Keeps the first occurrence if a hole number appears in several runs.
    """
    offsets: dict[int, int] = {}
    for i in zmw_first_rows(pbi.hole_number):
        offsets.setdefault(int(pbi.hole_number[i]), int(pbi.file_offset[i]))
    return offsets
