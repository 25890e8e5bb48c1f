"""CIGAR algebra: parsing, flat per-base ops, identity, pairwise strings.

A Cigar is a list of ``(CigarOp, length)`` tuples.  ``CigarOp`` values are the
BAM numeric codes, so ``[(int(op), length) ...]`` is what pysam expects as
``cigartuples``.

The flat representation uses the edlib alphabet (``=``/I/D/X plus an
undefined code) with one byte per alignment column.
"""
from __future__ import annotations

import re
from enum import IntEnum

import numpy as np

CIGAR_RE = re.compile(r"(\d+)([MIDNSHP=X])")

_COMPLEMENT = str.maketrans("ACGTNacgtn", "TGCANtgcan")


class CigarError(ValueError):
    """Raised when a CIGAR cannot be interpreted."""


class CigarOp(IntEnum):
    """CIGAR operation kinds, numbered as in the BAM format."""

    ALIGNMENT_MATCH = 0
    INSERTION = 1
    DELETION = 2
    REFERENCE_SKIP = 3
    SOFT_CLIP = 4
    HARD_CLIP = 5
    PADDING = 6
    SEQUENCE_MATCH = 7
    SEQUENCE_MISMATCH = 8

    @property
    def char(self) -> str:
        return "MIDNSHP=X"[self.value]

    @classmethod
    def from_char(cls, c: str) -> CigarOp:
        idx = "MIDNSHP=X".find(c)
        if idx < 0 or len(c) != 1:
            raise CigarError(f"Unknown CIGAR op: {c!r}")
        return cls(idx)


Cigar = list[tuple[CigarOp, int]]

# Flat op codes (edlib alphabet)
FLAT_MATCH = 0
FLAT_INSERTION = 1
FLAT_DELETION = 2
FLAT_MISMATCH = 3
FLAT_UNDEFINED = 4

# Indexed by CigarOp value: M, I, D, N, S, H, P, =, X
_OP_TO_FLAT = np.array([0, 1, 2, 4, 4, 4, 4, 0, 3], dtype=np.uint8)
_FLAT_TO_OP = (
    CigarOp.SEQUENCE_MATCH,
    CigarOp.INSERTION,
    CigarOp.DELETION,
    CigarOp.SEQUENCE_MISMATCH,
)

_QUERY_OPS = {CigarOp.ALIGNMENT_MATCH, CigarOp.INSERTION, CigarOp.SOFT_CLIP,
              CigarOp.SEQUENCE_MATCH, CigarOp.SEQUENCE_MISMATCH}
_REF_OPS = {CigarOp.ALIGNMENT_MATCH, CigarOp.DELETION, CigarOp.REFERENCE_SKIP,
            CigarOp.SEQUENCE_MATCH, CigarOp.SEQUENCE_MISMATCH}


def reverse_complement(seq: str) -> str:
    """Reverse complement a DNA string (N and lowercase preserved)."""
    return seq.translate(_COMPLEMENT)[::-1]


def parse_cigar(cigar: str) -> Cigar:
    """Parse a CIGAR string like ``10=1X2I`` into (op, length) tuples.

    Lengths must be positive; ``*`` and the empty string give an empty Cigar.
    """
    if cigar in ("", "*"):
        return []
    ops: Cigar = []
    consumed = 0
    for m in CIGAR_RE.finditer(cigar):
        if m.start() != consumed:
            break
        length = int(m.group(1))
        if length <= 0:
            raise CigarError(f"Non-positive CIGAR length in {cigar!r}")
        ops.append((CigarOp.from_char(m.group(2)), length))
        consumed = m.end()
    if consumed != len(cigar):
        raise CigarError(f"Malformed CIGAR string: {cigar!r}")
    return ops


def cigar_to_string(cigar: Cigar) -> str:
    return "".join(f"{length}{CigarOp(op).char}" for op, length in cigar)


def merge_cigar(cigar: Cigar) -> Cigar:
    """Merge adjacent operations of the same kind and drop zero-length ones."""
    merged: Cigar = []
    for op, length in cigar:
        if length <= 0:
            continue
        if merged and merged[-1][0] == op:
            merged[-1] = (merged[-1][0], merged[-1][1] + length)
        else:
            merged.append((CigarOp(op), length))
    return merged


def reference_span(cigar: Cigar) -> int:
    """Number of reference bases consumed by the Cigar."""
    return sum(length for op, length in cigar if op in _REF_OPS)


def query_span(cigar: Cigar) -> int:
    """Number of query bases consumed by the Cigar (soft clips included)."""
    return sum(length for op, length in cigar if op in _QUERY_OPS)


def to_flat_ops(cigar: Cigar) -> np.ndarray:
    """Expand a Cigar into one op code per alignment column.

    Clips, skips and padding map to ``FLAT_UNDEFINED``.
    """
    if not cigar:
        return np.zeros(0, dtype=np.uint8)
    codes = _OP_TO_FLAT[[int(op) for op, _ in cigar]]
    counts = np.fromiter((length for _, length in cigar), dtype=np.int64, count=len(cigar))
    return np.repeat(codes, counts)


def from_flat_ops(ops) -> Cigar:
    """Run-length encode flat op codes back into a minimal Cigar.

    Accepts any sequence of codes (ndarray, bytes, list).  Codes outside the
    edlib alphabet are rejected with ``CigarError``.
    """
    if isinstance(ops, (bytes, bytearray)):
        arr = np.frombuffer(ops, dtype=np.uint8)
    else:
        arr = np.asarray(ops, dtype=np.uint8)
    if arr.size == 0:
        return []
    if arr.max() > FLAT_MISMATCH:
        raise CigarError("Undefined op code in flat alignment vector")
    # Positions where a new run starts
    starts = np.flatnonzero(np.concatenate(([True], arr[1:] != arr[:-1])))
    lengths = np.diff(np.concatenate((starts, [arr.size])))
    return [(_FLAT_TO_OP[arr[s]], int(n)) for s, n in zip(starts, lengths)]


def identity(cigar: Cigar) -> float:
    """Alignment identity ``eq / (eq + x + ins)``.

    Only ``=``, X, I and D are understood.  Any other operation (including M)
    makes the identity undefined and 0.0 is returned instead of a partial value.
    """
    num_eq = num_x = num_ins = 0
    for op, length in cigar:
        if op == CigarOp.SEQUENCE_MATCH:
            num_eq += length
        elif op == CigarOp.SEQUENCE_MISMATCH:
            num_x += length
        elif op == CigarOp.INSERTION:
            num_ins += length
        elif op == CigarOp.DELETION:
            continue
        else:
            return 0.0
    qlen = num_eq + num_x + num_ins
    return num_eq / qlen if qlen > 0 else 0.0


def to_pairwise_strings(
    reference: str,
    query: str,
    r_start: int,
    r_end: int,
    q_start: int,
    q_end: int,
    query_reversed: bool,
    cigar: Cigar,
) -> tuple[str, str]:
    """Build the gapped reference and query strings implied by a Cigar.

    ``reference[r_start:r_end]`` is walked as is.  The query window
    ``query[q_start:q_end]`` is reverse complemented first when
    *query_reversed* is set.  Gap columns are filled with ``-``.
    """
    if not cigar:
        raise CigarError("Cannot build pairwise strings from an empty CIGAR")

    assert reference_span(cigar) == r_end - r_start, "CIGAR reference span mismatch"
    assert query_span(cigar) == q_end - q_start, "CIGAR query span mismatch"

    query_sub = query[q_start:q_end]
    if query_reversed:
        query_sub = reverse_complement(query_sub)

    ref_parts: list[str] = []
    query_parts: list[str] = []
    q_pos = 0
    r_pos = r_start
    for op, count in cigar:
        if op in (CigarOp.ALIGNMENT_MATCH, CigarOp.SEQUENCE_MATCH, CigarOp.SEQUENCE_MISMATCH):
            query_parts.append(query_sub[q_pos:q_pos + count])
            ref_parts.append(reference[r_pos:r_pos + count])
            q_pos += count
            r_pos += count
        elif op in (CigarOp.INSERTION, CigarOp.SOFT_CLIP):
            query_parts.append(query_sub[q_pos:q_pos + count])
            ref_parts.append("-" * count)
            q_pos += count
        elif op in (CigarOp.DELETION, CigarOp.REFERENCE_SKIP):
            query_parts.append("-" * count)
            ref_parts.append(reference[r_pos:r_pos + count])
            r_pos += count
        else:
            raise CigarError(f"Unknown CIGAR op: {CigarOp(op).char}")
    return "".join(ref_parts), "".join(query_parts)
