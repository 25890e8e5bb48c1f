"""Aligner engine: map subreads against a CCS read with edlib.

Each query is aligned semi-globally (edlib ``HW`` mode: the whole query, any
window of the target) against every target on both strands.  Reverse hits
are computed against the reverse-complemented target, so their Cigar walks
the reverse target; target coordinates are reported on the forward strand.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace

import edlib

from zmw_align.cigar import CigarOp, parse_cigar, reference_span, reverse_complement
from zmw_align.models import Mapping

log = logging.getLogger(__name__)

SHORT_INSERT_LENGTH = 200


@dataclass
class EngineSettings:
    """Aligner parameters.

    Scores follow an affine gap model and are only used to rank and report
    hits; the edlib alignment itself minimises edit distance.
    """

    max_error_rate: float = 0.35
    min_alignment_span: int = 200
    min_query_len: int = 50
    both_strands: bool = True
    report_secondary: bool = False
    match_score: int = 2
    mismatch_penalty: int = 4
    gap_open: int = 4
    gap_extend: int = 2

    def for_reference(self, reference_len: int) -> EngineSettings:
        """Settings adjusted for a short CCS insert (< 200 bp)."""
        if reference_len < SHORT_INSERT_LENGTH:
            return replace(self, min_alignment_span=0, min_query_len=0)
        return self


def alignment_score(cigar, settings: EngineSettings) -> int:
    """Affine score of a Cigar: matches minus mismatch and gap penalties."""
    score = 0
    for op, length in cigar:
        if op in (CigarOp.SEQUENCE_MATCH, CigarOp.ALIGNMENT_MATCH):
            score += settings.match_score * length
        elif op == CigarOp.SEQUENCE_MISMATCH:
            score -= settings.mismatch_penalty * length
        elif op in (CigarOp.INSERTION, CigarOp.DELETION):
            score -= settings.gap_open + settings.gap_extend * length
    return score


class EdlibMapper:
    """Maps queries to targets; one instance per worker thread."""

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings()

    def _align_strand(
        self,
        query: str,
        target: str,
        target_id: int,
        reverse: bool,
        settings: EngineSettings,
    ) -> tuple[int, Mapping] | None:
        k = int(settings.max_error_rate * len(query))
        result = edlib.align(query, target, mode="HW", task="path", k=k)
        edit_distance = result["editDistance"]
        if edit_distance < 0 or not result["locations"]:
            return None
        start, end = result["locations"][0]
        cigar = parse_cigar(result["cigar"])
        if reference_span(cigar) < settings.min_alignment_span:
            return None
        tlen = len(target)
        if reverse:
            t_start, t_end = tlen - (end + 1), tlen - start
        else:
            t_start, t_end = start, end + 1
        mapping = Mapping(
            target_id=target_id,
            target_reversed=reverse,
            target_start=t_start,
            target_end=t_end,
            query_start=0,
            query_end=len(query),
            query_len=len(query),
            cigar=cigar,
            score=alignment_score(cigar, settings),
        )
        return edit_distance, mapping

    def map_and_align(self, references: list[str], queries: list[str]) -> list[list[Mapping]]:
        """Align every query against every reference; one list of hits per query."""
        results: list[list[Mapping]] = []
        for query in queries:
            hits: list[tuple[int, Mapping]] = []
            for target_id, reference in enumerate(references):
                if not reference:
                    continue
                settings = self.settings.for_reference(len(reference))
                if len(query) < max(1, settings.min_query_len):
                    continue
                strands = [(False, reference)]
                if settings.both_strands:
                    strands.append((True, reverse_complement(reference)))
                for reverse, target in strands:
                    hit = self._align_strand(query, target, target_id, reverse, settings)
                    if hit is not None:
                        hits.append(hit)
            hits.sort(key=lambda h: (h[0], -h[1].score))
            mappings = []
            for priority, (_, mapping) in enumerate(hits):
                if priority > 0 and not self.settings.report_secondary:
                    break
                mapping.priority = priority
                mappings.append(mapping)
            results.append(mappings)
        return results
