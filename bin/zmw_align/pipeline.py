"""Align every ZMW's subreads to its CCS read and write an aligned BAM.

One producer (the caller of ``run``) streams CCS ZMWs, looks up the matching
subreads, and submits one unit of work per ZMW to a ``WorkQueue``.  Worker
threads align the unit; a single writer thread drains finished units in
submission order and writes their records.
"""
from __future__ import annotations

import logging
import queue
import resource
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

import pysam

from zmw_align import __version__
from zmw_align.alignment import AlignmentResult
from zmw_align.cigar import CigarOp, reverse_complement
from zmw_align.config import ActcSettings
from zmw_align.dataset import open_dataset, read_type
from zmw_align.engine import EdlibMapper, EngineSettings
from zmw_align.models import InputShapeError, ZmwRecords, hole_number
from zmw_align.pbi import has_pbi, hole_number_offsets, load_pbi, pbi_path_for
from zmw_align.reader import BamZmwReader, BamZmwReaderConfig

log = logging.getLogger(__name__)

PROGRAM_NAME = "zmw-align"
QUEUE_SIZE_PER_WORKER = 10

_DONE = object()


# ---------------------------------------------------------------------------
# Work queue
# ---------------------------------------------------------------------------


class WorkQueue:
    """Bounded producer/consumer queue over a thread pool.

    At most ``num_workers * size_per_worker`` units are in flight;
    ``produce_with`` blocks once that many have been submitted but not yet
    consumed.  Units are consumed in submission order.  The first exception
    raised by a unit or by the consumer callback is kept in ``error``; later
    units are drained without being consumed.
    """

    def __init__(self, num_workers: int, size_per_worker: int = QUEUE_SIZE_PER_WORKER):
        self.num_workers = max(1, num_workers)
        self.capacity = self.num_workers * max(1, size_per_worker)
        self._executor = ThreadPoolExecutor(max_workers=self.num_workers, thread_name_prefix="zmw-align")
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._pending: queue.Queue = queue.Queue()
        self.error: BaseException | None = None

    def produce_with(self, fn: Callable[..., Any], *args, **kwargs) -> None:
        if self.error is not None:
            raise self.error
        self._slots.acquire()
        future: Future = self._executor.submit(fn, *args, **kwargs)
        self._pending.put(future)

    def consume_with(self, callback: Callable[[Any], None]) -> bool:
        """Hand the next finished unit to *callback*; False once finalized and drained."""
        item = self._pending.get()
        if item is _DONE:
            return False
        try:
            result = item.result()
            if self.error is None:
                callback(result)
        except Exception as exc:
            if self.error is None:
                self.error = exc
        finally:
            self._slots.release()
        return True

    def finalize_workers(self) -> None:
        """Signal that no more units will be produced."""
        self._pending.put(_DONE)

    def finalize(self) -> None:
        self._executor.shutdown(wait=True)


# ---------------------------------------------------------------------------
# Alignment of one ZMW
# ---------------------------------------------------------------------------


_thread_state = threading.local()


def thread_mapper(settings: EngineSettings) -> EdlibMapper:
    """The calling thread's own mapper instance."""
    mapper = getattr(_thread_state, "mapper", None)
    if mapper is None or mapper.settings != settings:
        mapper = EdlibMapper(settings)
        _thread_state.mapper = mapper
    return mapper


def align_reads(mapper, reads: list[pysam.AlignedSegment], reference: str) -> list[list[AlignmentResult]]:
    """Map each read against *reference*; one list of results per read.

    Reverse hits get their Cigar reversed so that it walks the forward
    reference strand.
    """
    if not reads or not reference:
        return []
    queries = [r.query_sequence or "" for r in reads]
    mappings = mapper.map_and_align([reference], queries)

    results: list[list[AlignmentResult]] = []
    for hits in mappings:
        per_read = []
        for m in hits:
            cigar = list(reversed(m.cigar)) if m.target_reversed else list(m.cigar)
            per_read.append(AlignmentResult(
                ref_id=m.target_id,
                ref_reversed=m.target_reversed,
                ref_start=m.target_start,
                ref_end=m.target_end,
                query_start=m.query_start,
                query_end=m.query_end,
                query_len=m.query_len,
                cigar=cigar,
                mapq=60,
                score=m.score,
                is_aligned=True,
                is_supplementary=m.is_supplementary,
                is_secondary=m.priority > 0,
            ))
        results.append(per_read)
    return results


def soft_clips(aln: AlignmentResult) -> tuple[int, int]:
    """Leading and trailing soft clip lengths in reference orientation."""
    if aln.ref_reversed:
        return aln.query_len - aln.query_end, aln.query_start
    return aln.query_start, aln.query_len - aln.query_end


def aln_to_record(
    ref_id: int,
    header: pysam.AlignmentHeader,
    aln: AlignmentResult,
    read: pysam.AlignedSegment,
) -> pysam.AlignedSegment:
    """Build the output BAM record of *read* aligned as *aln* to reference *ref_id*."""
    record = pysam.AlignedSegment(header)
    record.query_name = read.query_name

    seq = read.query_sequence or ""
    quals = read.query_qualities
    if aln.ref_reversed:
        seq = reverse_complement(seq)
        if quals is not None:
            quals = quals[::-1]
    record.query_sequence = seq
    if quals is not None:
        record.query_qualities = quals

    clip_start, clip_end = soft_clips(aln)
    cigar = [(int(op), length) for op, length in aln.cigar]
    if clip_start:
        cigar.insert(0, (int(CigarOp.SOFT_CLIP), clip_start))
    if clip_end:
        cigar.append((int(CigarOp.SOFT_CLIP), clip_end))

    record.flag = 0
    record.is_reverse = aln.ref_reversed
    record.is_secondary = aln.is_secondary
    record.is_supplementary = aln.is_supplementary
    record.reference_id = ref_id
    record.reference_start = aln.ref_start
    record.mapping_quality = aln.mapq
    record.cigartuples = cigar
    record.set_tags(read.get_tags(with_value_type=True))
    record.set_tag("AS", aln.score, "i")
    return record


def align_zmw(
    subreads: list[pysam.AlignedSegment],
    ccs_record: pysam.AlignedSegment,
    ccs_index: int,
    header: pysam.AlignmentHeader,
    settings: EngineSettings,
) -> list[pysam.AlignedSegment]:
    """Worker task: align the subreads of one ZMW and return aligned output records."""
    alns = align_reads(thread_mapper(settings), subreads, ccs_record.query_sequence or "")
    records = []
    for read, per_read in zip(subreads, alns):
        for aln in per_read:
            if aln.is_aligned:
                records.append(aln_to_record(ccs_index, header, aln, read))
    return records


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


def write_records(work_queue: WorkQueue, writer, num_reads: int) -> None:
    """Writer loop: drain *work_queue* into *writer*, logging progress every 0.1%."""
    counter = 0
    perc = 0.0

    def _write(records: list[pysam.AlignedSegment]) -> None:
        nonlocal counter, perc
        counter += 1
        if num_reads > 0 and counter / num_reads > perc + 0.001:
            perc = counter / num_reads
            log.info("Progress %.2f%%", 100 * perc)
        for record in records:
            writer.write(record)

    while work_queue.consume_with(_write):
        pass


# ---------------------------------------------------------------------------
# Input checks
# ---------------------------------------------------------------------------


def classify_inputs(first: Path, second: Path, ccs_query: bool = False) -> tuple[Path, Path]:
    """Decide which input holds subreads and which holds CCS reads.

    Returns ``(subread_file, ccs_file)``.  With *ccs_query* two CCS inputs are
    accepted and the second one is used as the query.
    """
    subread_file: Path | None = None
    ccs_file: Path | None = None
    for path in (first, second):
        rtype = read_type(open_dataset(path))
        if rtype == "CCS":
            if ccs_file is not None and not ccs_query:
                raise InputShapeError(f"Multiple CCS files detected! 1) {ccs_file} 2) {path}")
            if ccs_file is None:
                ccs_file = path
            else:
                subread_file = path
        elif rtype == "SUBREAD":
            if subread_file is not None:
                raise InputShapeError(f"Multiple CLR files detected! 1) {subread_file} 2) {path}")
            subread_file = path
        else:
            raise InputShapeError(f"Unknown read type {rtype} in : {path}")
    if subread_file is None or ccs_file is None:
        raise InputShapeError("Need one subread input and one CCS input")
    return subread_file, ccs_file


def indexed_subread_bam(path: Path) -> Path:
    """The subread BAM behind *path*; it must be a single BAM with a PBI."""
    bams = open_dataset(path).bam_files
    if len(bams) != 1:
        raise InputShapeError(f"CLR input must be exactly one BAM file! Found {len(bams)}")
    if not has_pbi(bams[0]):
        raise InputShapeError(
            f"Missing PBI file for {bams[0]}. Please generate one with : pbindex {bams[0]}"
        )
    return bams[0]


def single_ccs_record(zmw: ZmwRecords) -> pysam.AlignedSegment | None:
    """The CCS record of a ZMW, or None (logged) if it has zero or several."""
    if not zmw.records:
        log.error("CCS ZMW %d has no records!", zmw.hole_number)
        return None
    if len(zmw.records) != 1:
        log.error("CCS ZMW %d has multiple records. Ignoring ZMW!", zmw.hole_number)
        return None
    return zmw.records[0]


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


def write_ccs_fasta(ccs_file: Path, config: BamZmwReaderConfig, fasta_path: Path) -> list[dict]:
    """Write every usable CCS read to *fasta_path*; return the matching ``@SQ`` entries."""
    sequences: list[dict] = []
    log.info("Start writing CCS reads to %s", fasta_path)
    fasta_path.parent.mkdir(parents=True, exist_ok=True)
    with BamZmwReader(ccs_file, config) as reader, open(fasta_path, "w") as fh:
        for zmw in reader:
            if len(sequences) % 10000 == 0:
                log.info("Fasta CCS %d", len(sequences))
            ccs_record = single_ccs_record(zmw)
            if ccs_record is None:
                continue
            seq = ccs_record.query_sequence or ""
            fh.write(f">{ccs_record.query_name}\n{seq}\n")
            sequences.append({"SN": ccs_record.query_name, "LN": len(seq)})
    log.info("Fasta CCS %d", len(sequences))
    return sequences


def build_output_header(template: pysam.AlignmentHeader, sequences: list[dict], command_line: str) -> pysam.AlignmentHeader:
    """Subread header plus one ``@SQ`` per CCS read and a ``@PG`` line."""
    hdr = template.to_dict()
    hdr["SQ"] = list(sequences)
    programs = hdr.setdefault("PG", [])
    pg = {"ID": PROGRAM_NAME, "PN": PROGRAM_NAME, "VN": __version__}
    if command_line:
        pg["CL"] = command_line
    if programs and "ID" in programs[-1]:
        pg["PP"] = programs[-1]["ID"]
    programs.append(pg)
    return pysam.AlignmentHeader.from_dict(hdr)


def _log_resources(start: float) -> None:
    log.info("Run Time %.3fs", time.monotonic() - start)
    log.info("CPU Time %.3fs", time.process_time())
    # ru_maxrss is in KiB on Linux
    peak_rss_gb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024.0 / 1024.0
    log.info("Peak RSS %.3f GB", peak_rss_gb)


def run(settings: ActcSettings) -> int:
    """Run the whole alignment; returns 0 on success, raises ``ZmwAlignError`` otherwise."""
    start = time.monotonic()

    subread_file, ccs_file = classify_inputs(settings.subread_file, settings.ccs_file, settings.ccs_query)
    subread_bam = indexed_subread_bam(subread_file)
    ccs_bams = open_dataset(ccs_file).bam_files
    if len(ccs_bams) != 1:
        raise InputShapeError(f"Expecting exactly one CCS BAM file, found {len(ccs_bams)}")

    offsets = hole_number_offsets(load_pbi(pbi_path_for(subread_bam)))
    reader_config = settings.reader_config()

    sequences = write_ccs_fasta(ccs_file, reader_config, settings.fasta_file)
    num_ccs = len(sequences)

    with pysam.AlignmentFile(str(subread_bam), "rb", check_sq=False,
                             threads=settings.num_threads) as clr:
        header = build_output_header(clr.header, sequences, settings.command_line)
        settings.output_file.parent.mkdir(parents=True, exist_ok=True)
        with pysam.AlignmentFile(str(settings.output_file), "wb", header=header,
                                 threads=settings.num_threads) as writer:
            work_queue = WorkQueue(settings.num_threads)
            writer_thread = threading.Thread(
                target=write_records, args=(work_queue, writer, num_ccs), name="zmw-align-writer",
            )
            writer_thread.start()
            try:
                _produce(settings, ccs_file, reader_config, clr, subread_bam, offsets, header, work_queue)
            finally:
                work_queue.finalize_workers()
                writer_thread.join()
                work_queue.finalize()
            if work_queue.error is not None:
                raise work_queue.error

    _log_resources(start)
    return 0


def _produce(
    settings: ActcSettings,
    ccs_file: Path,
    reader_config: BamZmwReaderConfig,
    clr: pysam.AlignmentFile,
    clr_path: Path,
    offsets: dict[int, int],
    header: pysam.AlignmentHeader,
    work_queue: WorkQueue,
) -> None:
    """Pair each CCS read with its subreads and submit the alignment units."""
    clr_record = next(clr, None)
    ccs_index = 0
    with BamZmwReader(ccs_file, reader_config) as ccs_reader:
        for zmw in ccs_reader:
            ccs_record = single_ccs_record(zmw)
            if ccs_record is None:
                continue
            log.debug("CCS reader %s", ccs_record.query_name)
            hn = hole_number(ccs_record)

            if clr_record is None or hole_number(clr_record) != hn:
                if hn not in offsets:
                    if not settings.ccs_query:
                        raise InputShapeError(f"ZMW {hn} missing in CLR file {clr_path}")
                    log.warning("ZMW %d missing in second file %s", hn, clr_path)
                    ccs_index += 1
                    continue
                log.debug("Seeking to ZMW %d", hn)
                clr.seek(offsets[hn])
                clr_record = next(clr, None)

            subreads = []
            while clr_record is not None and hole_number(clr_record) == hn:
                subreads.append(clr_record)
                clr_record = next(clr, None)

            work_queue.produce_with(align_zmw, subreads, ccs_record, ccs_index, header, settings.engine)
            ccs_index += 1
