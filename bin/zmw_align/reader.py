"""Stream BAM records grouped by ZMW, with dataset filters and chunking.

``BamZmwReader`` yields one ``ZmwRecords`` per run of consecutive records that
share a hole number.  The input is either read sequentially (optionally from
the first ZMW of a chunk onwards) or through the PBI when the dataset carries
filters.  The two modes are mutually exclusive.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import numpy as np
import pysam

from zmw_align.dataset import DataSet, open_dataset
from zmw_align.filters import accepted_rows, describe_filters
from zmw_align.models import (
    ChunkSpec,
    InputShapeError,
    ReadIOError,
    ZmwRecords,
    hole_number,
    movie_name,
)
from zmw_align.pbi import has_pbi, load_pbi, pbi_path_for, unique_zmws, zmw_first_rows

log = logging.getLogger(__name__)


@dataclass
class BamZmwReaderConfig:
    """Reader options: optional chunk and BGZF decompression threads."""

    chunk: ChunkSpec | None = None
    decompression_threads: int = 1


class QueryKind(Enum):
    SEQUENTIAL = "sequential"
    FILTERED = "filtered"


class ReaderState(Enum):
    INIT = "init"
    STREAMING = "streaming"
    END_OF_FILE = "end_of_file"


def _round_half_away(x: float) -> int:
    return int(math.floor(x + 0.5)) if x >= 0 else int(math.ceil(x - 0.5))


def compute_chunk_range(num_unique: int, chunk: ChunkSpec) -> tuple[int, int]:
    """Indices ``(first, last)`` into the unique ZMW list for *chunk*.

    The chunk covers ``[first, last)``, or ``[first, last]`` for the final
    chunk where ``last`` is the index of the last ZMW.
    """
    if num_unique < chunk.denominator:
        raise InputShapeError(
            f"Fewer ZMWs available than specified chunks: {num_unique} vs. {chunk.denominator}"
        )
    chunk_size = num_unique / chunk.denominator
    first = 0 if chunk.is_first else _round_half_away(chunk_size * (chunk.numerator - 1))
    last = num_unique - 1 if chunk.is_last else _round_half_away(chunk_size * chunk.numerator)
    return first, last


def _require_indexed_single_bam(ds: DataSet) -> Path:
    if len(ds.bam_files) != 1:
        raise InputShapeError("Chunking only works with one input BAM file!")
    bam = ds.bam_files[0]
    if not has_pbi(bam):
        raise InputShapeError(
            f"PBI file is missing for input BAM file {bam}! Please create one using pbindex!"
        )
    return bam


class BamZmwReader:
    """Iterate over the ZMWs of one BAM or dataset.

    Parameters
    ----------
    path : Path or str
        BAM file or dataset XML.
    config : BamZmwReaderConfig, optional
        Chunk selection and decompression threads.
    """

    def __init__(self, path: Path | str, config: BamZmwReaderConfig | None = None):
        self.path = Path(path)
        self.config = config or BamZmwReaderConfig()
        self.dataset = open_dataset(self.path)
        self.num_zmws = -1
        self.end_hole_number: int | None = None
        self.state = ReaderState.INIT
        self._next_record: pysam.AlignedSegment | None = None
        self._bam: pysam.AlignmentFile | None = None
        self.query_kind, self._records = self._create_query()

    # ------------------------------------------------------------------
    # Query construction
    # ------------------------------------------------------------------

    def _open_bam(self, bam: Path) -> pysam.AlignmentFile:
        try:
            return pysam.AlignmentFile(
                str(bam), "rb", check_sq=False, threads=max(1, self.config.decompression_threads),
            )
        except (OSError, ValueError) as exc:
            raise ReadIOError(f"Cannot open BAM file {bam}: {exc}") from exc

    def _create_query(self) -> tuple[QueryKind, Iterator[pysam.AlignedSegment]]:
        ds = self.dataset
        chunk = self.config.chunk

        if ds.has_filters:
            if chunk is not None:
                raise InputShapeError(
                    "Cannot combine dataset filters with --chunk. Please use ZMW chunking via "
                    "dataset filters or remove filters from dataset."
                )
            describe_filters(ds.filters)
            return QueryKind.FILTERED, self._filtered_records()

        bam = ds.single_bam()
        start_offset = None
        if chunk is not None:
            _require_indexed_single_bam(ds)
            pbi = load_pbi(pbi_path_for(bam))
            zmws = unique_zmws(pbi)
            first, last = compute_chunk_range(len(zmws), chunk)
            self.num_zmws = last - first + int(chunk.is_last)
            start_offset = zmws[first].file_offset
            log.info("Chunk index %s", chunk)
            log.info(
                "ZMW range [%d,%d%s",
                zmws[first].hole_number, zmws[last].hole_number, "]" if chunk.is_last else ")",
            )
            if not chunk.is_last:
                self.end_hole_number = zmws[last].hole_number
        elif has_pbi(bam):
            self.num_zmws = len(zmw_first_rows(load_pbi(pbi_path_for(bam)).hole_number))

        self._bam = self._open_bam(bam)
        if start_offset is not None:
            log.debug("Chunking: file offset %d", start_offset)
            self._bam.seek(start_offset)
        return QueryKind.SEQUENTIAL, self._sequential_records()

    def _sequential_records(self) -> Iterator[pysam.AlignedSegment]:
        bam = self._bam
        while True:
            try:
                yield next(bam)
            except StopIteration:
                return

    def _filtered_records(self) -> Iterator[pysam.AlignedSegment]:
        """Records whose PBI rows pass the dataset filters, in file order."""
        for bam_path in self.dataset.bam_files:
            if not has_pbi(bam_path):
                raise InputShapeError(
                    f"PBI file is missing for input BAM file {bam_path}! Please create one using pbindex!"
                )
            pbi = load_pbi(pbi_path_for(bam_path))
            mask = accepted_rows(self.dataset.filters, pbi)
            rows = np.flatnonzero(mask)
            if len(rows) == 0:
                continue
            # Split accepted rows into runs of consecutive records; seek once per run
            breaks = np.flatnonzero(np.diff(rows) != 1) + 1
            with self._open_bam(bam_path) as bam:
                for run in np.split(rows, breaks):
                    bam.seek(int(pbi.file_offset[run[0]]))
                    for _ in range(len(run)):
                        record = next(bam, None)
                        if record is None:
                            raise ReadIOError(f"PBI of {bam_path} lists more records than the BAM holds")
                        yield record

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _read_record(self) -> pysam.AlignedSegment | None:
        return next(self._records, None)

    def get_next(self) -> ZmwRecords | None:
        """Return the next ZMW, or None when the input (or chunk) is exhausted."""
        if self.state is ReaderState.END_OF_FILE:
            return None

        if self._next_record is None:
            record = self._read_record()
            if record is None:
                log.warning("Input BAM is empty: %s", self.path)
                self.state = ReaderState.END_OF_FILE
                return None
            log.debug("First record %s", record.query_name)
            self._next_record = record
            self.state = ReaderState.STREAMING

        current_hole = hole_number(self._next_record)
        if self.end_hole_number is not None and current_hole == self.end_hole_number:
            return None

        records = [self._next_record]
        self._next_record = None
        while (record := self._read_record()) is not None:
            if hole_number(record) != current_hole:
                self._next_record = record
                return self._make_zmw(records)
            records.append(record)

        zmw = self._make_zmw(records)
        log.debug("Last ZMW %d %s with %d records", zmw.hole_number, zmw.movie_name, len(zmw))
        self.state = ReaderState.END_OF_FILE
        self.close()
        return zmw

    @staticmethod
    def _make_zmw(records: list[pysam.AlignedSegment]) -> ZmwRecords:
        if not records:
            log.debug("Empty ZMW")
            return ZmwRecords()
        return ZmwRecords(
            movie_name=movie_name(records[0]),
            hole_number=hole_number(records[0]),
            records=records,
        )

    def __iter__(self) -> Iterator[ZmwRecords]:
        while (zmw := self.get_next()) is not None:
            yield zmw

    def close(self) -> None:
        self._records.close()
        if self._bam is not None:
            self._bam.close()
            self._bam = None

    def __enter__(self) -> BamZmwReader:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
