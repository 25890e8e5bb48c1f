"""Tests for the edlib-backed aligner engine."""
from __future__ import annotations

import pytest

from bam_helpers import random_seq
from zmw_align.cigar import CigarOp, query_span, reference_span, reverse_complement
from zmw_align.engine import EdlibMapper, EngineSettings, alignment_score


class TestSettings:

    def test_short_insert_relaxes_filters(self):
        settings = EngineSettings().for_reference(150)
        assert settings.min_alignment_span == 0
        assert settings.min_query_len == 0

    def test_long_insert_unchanged(self):
        settings = EngineSettings()
        assert settings.for_reference(5000) is settings

    def test_score(self):
        cigar = [(CigarOp.SEQUENCE_MATCH, 10), (CigarOp.SEQUENCE_MISMATCH, 1), (CigarOp.DELETION, 2)]
        # 2*10 - 4 - (4 + 2*2)
        assert alignment_score(cigar, EngineSettings()) == 8


class TestMapAndAlign:

    def test_forward_hit(self, rng):
        ref = random_seq(rng, 300)
        swap = {"A": "C", "C": "G", "G": "T", "T": "A"}[ref[120]]
        query = ref[20:120] + swap + ref[121:240]
        hits = EdlibMapper(EngineSettings(max_error_rate=0.1)).map_and_align([ref], [query])
        assert len(hits) == 1 and len(hits[0]) == 1
        m = hits[0][0]
        assert not m.target_reversed
        assert (m.target_start, m.target_end) == (20, 240)
        assert (m.query_start, m.query_end, m.query_len) == (0, 220, 220)
        assert reference_span(m.cigar) == 220
        assert query_span(m.cigar) == 220
        assert m.priority == 0

    def test_reverse_hit_reports_forward_coordinates(self, rng):
        ref = random_seq(rng, 300)
        query = reverse_complement(ref[50:250])
        hits = EdlibMapper(EngineSettings(max_error_rate=0.1)).map_and_align([ref], [query])
        assert len(hits[0]) == 1
        m = hits[0][0]
        assert m.target_reversed
        assert (m.target_start, m.target_end) == (50, 250)
        assert m.cigar == [(CigarOp.SEQUENCE_MATCH, 200)]

    def test_unrelated_query_unaligned(self, rng):
        ref = random_seq(rng, 500)
        hits = EdlibMapper().map_and_align([ref], ["A" * 300])
        assert hits == [[]]

    def test_short_query_skipped(self, rng):
        ref = random_seq(rng, 500)
        hits = EdlibMapper().map_and_align([ref], [ref[10:40]])
        assert hits == [[]]

    def test_short_insert_accepts_short_alignment(self, rng):
        ref = random_seq(rng, 120)
        hits = EdlibMapper().map_and_align([ref], [ref[10:40]])
        assert len(hits[0]) == 1
        assert (hits[0][0].target_start, hits[0][0].target_end) == (10, 40)

    def test_single_strand(self, rng):
        ref = random_seq(rng, 300)
        query = reverse_complement(ref[50:250])
        hits = EdlibMapper(EngineSettings(max_error_rate=0.1, both_strands=False)).map_and_align([ref], [query])
        assert hits == [[]]

    def test_secondary_hits_when_requested(self, rng):
        ref = random_seq(rng, 300)
        query = ref[40:260]
        settings = EngineSettings(max_error_rate=0.1, report_secondary=True)
        hits = EdlibMapper(settings).map_and_align([ref, ref], [query])
        assert [m.priority for m in hits[0]] == [0, 1]
        assert {m.target_id for m in hits[0]} == {0, 1}

    @pytest.mark.parametrize("references", [[], [""]])
    def test_no_reference(self, references):
        assert EdlibMapper().map_and_align(references, ["ACGT" * 20]) == [[]]
