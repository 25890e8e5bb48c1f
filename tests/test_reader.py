"""Tests for ZMW-grouped BAM reading, chunking and filtered queries."""
from __future__ import annotations

import inspect
import logging

import pytest

from bam_helpers import subread_name, write_bam, write_dataset_xml
from zmw_align.models import ChunkSpec, InputShapeError
from zmw_align.reader import (
    BamZmwReader,
    BamZmwReaderConfig,
    QueryKind,
    ReaderState,
    compute_chunk_range,
)


def _holes(reader):
    return [(zmw.hole_number, len(zmw)) for zmw in reader]


class TestGrouping:

    def test_groups_consecutive_records(self, grouped_bam):
        reader = BamZmwReader(grouped_bam)
        assert reader.query_kind is QueryKind.SEQUENTIAL
        assert reader.num_zmws == 3
        sizes = []
        for _ in range(3):
            zmw = reader.get_next()
            sizes.append((zmw.hole_number, len(zmw)))
        assert sizes == [(5, 3), (7, 2), (9, 1)]
        assert reader.get_next() is None
        assert reader.state is ReaderState.END_OF_FILE
        assert reader.get_next() is None

    def test_records_keep_file_order(self, grouped_bam):
        with BamZmwReader(grouped_bam) as reader:
            first = reader.get_next()
        assert [r.get_tag("qs") for r in first.records] == [0, 100, 200]
        assert first.movie_name == first.records[0].query_name.split("/")[0]

    def test_without_pbi(self, tmp_path):
        bam = write_bam(tmp_path / "nopbi.bam", [
            (subread_name(1, 0, 4), "ACGT", 1),
            (subread_name(2, 0, 4), "ACGT", 2),
        ])
        reader = BamZmwReader(bam)
        assert reader.num_zmws == -1
        assert _holes(reader) == [(1, 1), (2, 1)]

    def test_empty_bam(self, tmp_path, caplog):
        bam = write_bam(tmp_path / "empty.bam", [])
        reader = BamZmwReader(bam)
        with caplog.at_level(logging.WARNING):
            assert reader.get_next() is None
        assert "empty" in caplog.text
        assert reader.state is ReaderState.END_OF_FILE


class TestChunkRange:

    @pytest.mark.parametrize("num_unique,denominator", [(10, 1), (10, 3), (10, 10), (7, 2), (1001, 24)])
    def test_chunks_partition_all_zmws(self, num_unique, denominator):
        covered = []
        for i in range(1, denominator + 1):
            chunk = ChunkSpec(i, denominator)
            first, last = compute_chunk_range(num_unique, chunk)
            covered.extend(range(first, last + 1 if chunk.is_last else last))
        assert covered == list(range(num_unique))

    def test_rounding(self):
        # chunk size 2.5: boundaries at round(2.5)=3, round(5.0)=5, round(7.5)=8
        assert compute_chunk_range(10, ChunkSpec(1, 4)) == (0, 3)
        assert compute_chunk_range(10, ChunkSpec(2, 4)) == (3, 5)
        assert compute_chunk_range(10, ChunkSpec(3, 4)) == (5, 8)
        assert compute_chunk_range(10, ChunkSpec(4, 4)) == (8, 9)

    def test_too_many_chunks(self):
        with pytest.raises(InputShapeError, match="Fewer ZMWs"):
            compute_chunk_range(3, ChunkSpec(1, 4))


class TestChunkedReading:

    def test_chunks_cover_file_once(self, ten_zmw_bam):
        seen = []
        for i in range(1, 4):
            reader = BamZmwReader(ten_zmw_bam, BamZmwReaderConfig(chunk=ChunkSpec(i, 3)))
            holes = _holes(reader)
            assert reader.num_zmws == len(holes)
            seen.extend(h for h, _ in holes)
            assert all(n == 2 for _, n in holes)
        assert seen == list(range(100, 110))

    def test_middle_chunk_stops_at_end_hole(self, ten_zmw_bam, caplog):
        with caplog.at_level(logging.INFO):
            reader = BamZmwReader(ten_zmw_bam, BamZmwReaderConfig(chunk=ChunkSpec(2, 3)))
        assert reader.end_hole_number == 107
        assert [h for h, _ in _holes(reader)] == [103, 104, 105, 106]
        assert "ZMW range [103,107)" in caplog.text

    def test_chunk_needs_pbi(self, tmp_path):
        bam = write_bam(tmp_path / "nopbi.bam", [(subread_name(1, 0, 4), "ACGT", 1)])
        with pytest.raises(InputShapeError, match="PBI file is missing"):
            BamZmwReader(bam, BamZmwReaderConfig(chunk=ChunkSpec(1, 1)))


class TestFilteredReading:

    def test_range_filter(self, tmp_path, ten_zmw_bam):
        xml = write_dataset_xml(tmp_path / "f.subreadset.xml", [ten_zmw_bam], [
            {"Name": "zm", "Operator": ">=", "Value": "102"},
            {"Name": "zm", "Operator": "<", "Value": "105"},
        ])
        reader = BamZmwReader(xml)
        assert reader.query_kind is QueryKind.FILTERED
        assert _holes(reader) == [(102, 2), (103, 2), (104, 2)]

    def test_modulo_filter(self, tmp_path, ten_zmw_bam):
        xml = write_dataset_xml(tmp_path / "m.subreadset.xml", [ten_zmw_bam], [
            {"Name": "zm", "Operator": "==", "Value": "1", "Modulo": "3", "Hash": "uint32cast"},
        ])
        assert [h for h, _ in _holes(BamZmwReader(xml))] == [100, 103, 106, 109]

    def test_filters_and_chunk_are_exclusive(self, tmp_path, ten_zmw_bam):
        xml = write_dataset_xml(tmp_path / "f.xml", [ten_zmw_bam], [
            {"Name": "zm", "Operator": "<", "Value": "105"},
        ])
        with pytest.raises(InputShapeError, match="Cannot combine dataset filters"):
            BamZmwReader(xml, BamZmwReaderConfig(chunk=ChunkSpec(1, 2)))

    def test_early_exit_closes_filtered_query(self, tmp_path, ten_zmw_bam):
        xml = write_dataset_xml(tmp_path / "early.subreadset.xml", [ten_zmw_bam], [
            {"Name": "zm", "Operator": ">=", "Value": "102"},
        ])
        with BamZmwReader(xml) as reader:
            assert reader.get_next().hole_number == 102
            assert inspect.getgeneratorstate(reader._records) == inspect.GEN_SUSPENDED
        assert inspect.getgeneratorstate(reader._records) == inspect.GEN_CLOSED
