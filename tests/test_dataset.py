"""Tests for BAM / dataset XML input resolution."""
from __future__ import annotations

import pysam
import pytest

from bam_helpers import ccs_name, write_bam, write_dataset_xml
from zmw_align.dataset import open_dataset, read_group_types, read_type
from zmw_align.models import InputShapeError, ReadIOError


class TestOpenDataset:

    def test_plain_bam(self, grouped_bam):
        ds = open_dataset(grouped_bam)
        assert ds.bam_files == [grouped_bam]
        assert not ds.has_filters
        assert ds.single_bam() == grouped_bam

    def test_xml_with_relative_resource_and_filters(self, tmp_path, grouped_bam):
        xml = write_dataset_xml(
            tmp_path / "movie.subreadset.xml",
            [grouped_bam.name],
            [
                {"Name": "zm", "Operator": "<", "Value": "9"},
                {"Name": "zm", "Operator": "==", "Value": "0", "Modulo": "2", "Hash": "uint32cast"},
            ],
        )
        ds = open_dataset(xml)
        assert ds.bam_files == [grouped_bam]
        assert ds.has_filters
        props = ds.filters[0].properties
        assert [(p.name, p.operator, p.value) for p in props] == [("zm", "<", "9"), ("zm", "==", "0")]
        assert props[1].attributes == {"Modulo": "2", "Hash": "uint32cast"}

    def test_xml_without_filters(self, tmp_path, grouped_bam):
        ds = open_dataset(write_dataset_xml(tmp_path / "plain.xml", [grouped_bam]))
        assert ds.filters == []
        assert not ds.has_filters

    def test_missing_input(self, tmp_path):
        with pytest.raises(ReadIOError):
            open_dataset(tmp_path / "missing.bam")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "reads.fastq"
        path.write_text("@r\nACGT\n+\nIIII\n")
        with pytest.raises(InputShapeError, match="Unsupported input type"):
            open_dataset(path)

    def test_broken_xml(self, tmp_path):
        path = tmp_path / "broken.xml"
        path.write_text("<SubreadSet><ExternalResources>")
        with pytest.raises(ReadIOError):
            open_dataset(path)

    def test_single_bam_requires_one(self, tmp_path, grouped_bam):
        ds = open_dataset(write_dataset_xml(tmp_path / "two.xml", [grouped_bam, grouped_bam]))
        with pytest.raises(InputShapeError, match="exactly one BAM"):
            ds.single_bam()


class TestReadType:

    def test_subread(self, grouped_bam):
        assert read_group_types(grouped_bam) == {"SUBREAD"}
        assert read_type(open_dataset(grouped_bam)) == "SUBREAD"

    def test_ccs(self, tmp_path):
        bam = write_bam(tmp_path / "x.ccs.bam", [(ccs_name(1), "ACGT", 1)], "CCS")
        assert read_type(open_dataset(bam)) == "CCS"
        with pysam.AlignmentFile(str(bam), "rb", check_sq=False) as af:
            rec = next(af)
        assert rec.query_name == ccs_name(1)
        assert (rec.get_tag("qs"), rec.get_tag("qe")) == (0, 4)

    def test_mixed_types_rejected(self, tmp_path, grouped_bam):
        ccs = write_bam(tmp_path / "x.ccs.bam", [(ccs_name(1), "ACGT", 1)], "CCS")
        xml = write_dataset_xml(tmp_path / "mixed.xml", [grouped_bam, ccs])
        with pytest.raises(InputShapeError, match="mix and match"):
            read_type(open_dataset(xml))
