"""Alignment record produced by the aligner engine, plus coordinate clipping."""
from __future__ import annotations

from dataclasses import dataclass, field, replace

from zmw_align.cigar import (
    FLAT_DELETION,
    FLAT_INSERTION,
    FLAT_MATCH,
    FLAT_MISMATCH,
    Cigar,
    cigar_to_string,
    from_flat_ops,
    to_flat_ops,
)


@dataclass
class AlignmentResult:
    """One alignment of a query (subread) against a reference (CCS read).

    Reference coordinates are half-open and always on the forward reference
    strand.  Query coordinates are half-open on the forward query.  When
    ``ref_reversed`` is set the Cigar walks the forward reference against the
    reverse-complemented query.
    """

    ref_id: int
    ref_reversed: bool
    ref_start: int
    ref_end: int
    query_start: int
    query_end: int
    query_len: int
    cigar: Cigar = field(default_factory=list)
    mapq: int = 0
    score: int = 0
    is_aligned: bool = False
    is_supplementary: bool = False
    is_secondary: bool = False

    @classmethod
    def simple(
        cls,
        ref_reversed: bool,
        ref_start: int,
        ref_end: int,
        query_start: int,
        query_end: int,
        query_len: int,
        cigar: Cigar,
    ) -> AlignmentResult:
        """Aligned primary result on reference 0 with mapq 60."""
        return cls(
            ref_id=0,
            ref_reversed=ref_reversed,
            ref_start=ref_start,
            ref_end=ref_end,
            query_start=query_start,
            query_end=query_end,
            query_len=query_len,
            cigar=list(cigar),
            mapq=60,
            score=0,
            is_aligned=True,
        )

    @property
    def strand(self) -> str:
        return "-" if self.ref_reversed else "+"

    def clip(
        self,
        front_clip_query: int,
        back_clip_query: int,
        front_clip_ref: int,
        back_clip_ref: int,
    ) -> AlignmentResult | None:
        """Narrow the alignment to the given query and reference windows.

        All four offsets are measured from the unclipped origins: columns
        before ``front_clip_*`` and at or after ``back_clip_*`` are removed.
        Query offsets are in forward-read space.  The returned coordinates are
        shifted so that ``front_clip_query`` / ``front_clip_ref`` become zero.

        Returns None when the result is unaligned or the remaining window is
        empty on either axis.  A deletion is never accepted as the first or
        last column of the clipped alignment.
        """
        if not self.is_aligned:
            return None

        aln = to_flat_ops(self.cigar)
        codes = aln.tolist()
        n = len(codes)

        # Front boundary. Query positions here are in the orientation walked
        # by the Cigar (reverse complement space for reverse hits).
        q_pos = self.query_start if not self.ref_reversed else self.query_len - self.query_end
        r_pos = self.ref_start
        vec_start = 0
        for vec_start in range(n):
            op = codes[vec_start]
            if q_pos >= front_clip_query and r_pos >= front_clip_ref and op != FLAT_DELETION:
                break
            if op == FLAT_MATCH or op == FLAT_MISMATCH:
                q_pos += 1
                r_pos += 1
            elif op == FLAT_INSERTION:
                q_pos += 1
            elif op == FLAT_DELETION:
                r_pos += 1
        new_q_start = q_pos
        new_r_start = r_pos - front_clip_ref

        # Back boundary.
        q_pos = (self.query_end if not self.ref_reversed else self.query_len - self.query_start) - 1
        r_pos = self.ref_end - 1
        vec_end = n - 1
        for vec_end in range(n - 1, -1, -1):
            op = codes[vec_end]
            if q_pos < back_clip_query and r_pos < back_clip_ref and op != FLAT_DELETION:
                break
            if op == FLAT_MATCH or op == FLAT_MISMATCH:
                q_pos -= 1
                r_pos -= 1
            elif op == FLAT_INSERTION:
                q_pos -= 1
            elif op == FLAT_DELETION:
                r_pos -= 1
        new_q_end = q_pos + 1
        new_r_end = r_pos + 1 - front_clip_ref
        vec_end += 1

        if new_q_end - new_q_start <= 0 or new_r_end - new_r_start <= 0 or vec_end <= vec_start:
            return None

        new_cigar = from_flat_ops(aln[vec_start:vec_end])

        if self.ref_reversed:
            new_q_start, new_q_end = self.query_len - new_q_end, self.query_len - new_q_start

        new_q_start -= front_clip_query
        new_q_end -= front_clip_query

        return replace(
            self,
            ref_start=new_r_start,
            ref_end=new_r_end,
            query_start=new_q_start,
            query_end=new_q_end,
            cigar=new_cigar,
        )

    def __str__(self) -> str:
        fields = [
            "query", self.query_len, self.query_start, self.query_end, self.strand,
            self.ref_id, self.ref_start, self.ref_end, self.mapq, self.score,
            int(self.is_aligned), int(self.is_supplementary), int(self.is_secondary),
            cigar_to_string(self.cigar),
        ]
        return "\t".join(str(f) for f in fields)
