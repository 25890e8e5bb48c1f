"""Shared fixtures: import paths, seeded RNG and small PacBio-style inputs."""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from bam_helpers import ccs_name, random_seq, subread_name, write_bam, write_pbi  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo ``setup_logging`` so caplog sees package records in every test."""
    yield
    logger = logging.getLogger("zmw_align")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def rng():
    return np.random.default_rng(20190830)


@pytest.fixture
def grouped_bam(tmp_path):
    """Indexed subread BAM with hole numbers [5, 5, 5, 7, 7, 9]."""
    reads = []
    for zm, n in ((5, 3), (7, 2), (9, 1)):
        for i in range(n):
            qs = i * 100
            reads.append((subread_name(zm, qs, qs + 20), "ACGT" * 5, zm))
    bam = write_bam(tmp_path / "grouped.subreads.bam", reads)
    write_pbi(bam)
    return bam


@pytest.fixture
def ten_zmw_bam(tmp_path):
    """Indexed subread BAM with ZMWs 100..109, two records each."""
    reads = []
    for zm in range(100, 110):
        reads.append((subread_name(zm, 0, 12), "ACGTACGTACGT", zm))
        reads.append((subread_name(zm, 50, 62), "TTGCATTGCATT", zm))
    bam = write_bam(tmp_path / "ten.subreads.bam", reads)
    write_pbi(bam)
    return bam


@pytest.fixture
def zmw_inputs(tmp_path, rng):
    """Matching subread and CCS BAMs for three ZMWs.

    Each ZMW has a 1 kb CCS read and three subreads: a forward copy with a few
    mismatches, a reverse-complement copy and a poly-A read that aligns nowhere.
    """
    from bam_helpers import mutate
    from zmw_align.cigar import reverse_complement

    holes = [11, 22, 33]
    ccs_reads = []
    subreads = []
    for zm in holes:
        ccs_seq = random_seq(rng, 1000)
        ccs_reads.append((ccs_name(zm), ccs_seq, zm))
        fwd = mutate(rng, ccs_seq[100:900], 8)
        rev = reverse_complement(mutate(rng, ccs_seq[50:950], 8))
        subreads.append((subread_name(zm, 0, len(fwd)), fwd, zm))
        subreads.append((subread_name(zm, 1000, 1000 + len(rev)), rev, zm))
        subreads.append((subread_name(zm, 2000, 2500), "A" * 500, zm))

    subread_bam = write_bam(tmp_path / "movie.subreads.bam", subreads, "SUBREAD")
    write_pbi(subread_bam)
    ccs_bam = write_bam(tmp_path / "movie.ccs.bam", ccs_reads, "CCS")
    return subread_bam, ccs_bam
