import threading
from pathlib import Path
from typing import List

import pysam
import pytest
from bamsieve import (
    AlignmentIndexError,
    AlignmentIOError,
    ConfigError,
    ParseError,
    RegionIndex,
    SubtractConfig,
    WorkerError,
    record_span,
    subtract_regions,
)
from bamsieve._dispatch import ChromosomeDispatcher
from bamsieve._state import PipelineState, Stage
from bamsieve._worker import FilterWorker
from bamsieve._writer import BatchChannel
from pytest import fixture, mark
from pytest_cases import parametrize_with_cases
from utils import (
    CONTIGS,
    ReadSpec,
    expected_spans,
    read_header,
    read_spans,
    write_bam,
    write_bed,
)

BLACKLIST = [
    "chr1\t100\t200",
    "chr1\t1000\t1500",
    "chr2\t0\t50",
    "chr2\t40\t60",
    "chrM\t0\t1000",
    "chrUn\t0\t100",
]


def _reads() -> List[ReadSpec]:
    reads = []
    for contig, length in CONTIGS.items():
        for start in range(0, length - 50, 37):
            reads.append((contig, start, 10 + start % 41))
    return reads


def _overlaps(bed_lines: List[str], read: ReadSpec) -> bool:
    contig, start, length = read
    for line in bed_lines:
        c, s, e = line.split("\t")
        if c == contig and int(s) < start + length and int(e) > start:
            return True
    return False


@fixture
def bam(tmp_path) -> Path:
    return write_bam(tmp_path / "in.bam", _reads())


@fixture
def bed(tmp_path) -> Path:
    return write_bed(tmp_path / "blacklist.bed", BLACKLIST)


def test_boundary_scenario(tmp_path):
    reads = [("chr1", 50, 40), ("chr1", 150, 30), ("chr1", 190, 20), ("chr1", 205, 55)]
    bam = write_bam(tmp_path / "in.bam", reads)
    bed = write_bed(tmp_path / "blacklist.bed", ["chr1\t100\t200"])
    out = tmp_path / "out.bam"

    report = subtract_regions(bed, bam, out)

    assert sorted(read_spans(out)) == [("chr1", 50, 90), ("chr1", 205, 260)]
    assert report.seen == 4
    assert report.retained == 2
    assert report.dropped == 2
    assert report.written == 2


def threads_one():
    return 1


def threads_two():
    return 2


def threads_eight():
    return 8


@parametrize_with_cases("n_threads", cases=".", prefix="threads_")
def test_retained_set_independent_of_threads(bam, bed, tmp_path, n_threads):
    out = tmp_path / f"out_{n_threads}.bam"
    report = subtract_regions(bed, bam, out, n_threads=n_threads, batch_size=7)

    desired = expected_spans(r for r in _reads() if not _overlaps(BLACKLIST, r))
    assert sorted(read_spans(out)) == desired
    assert report.retained == len(desired)
    assert report.seen == len(_reads())
    assert list(report.contigs) == list(CONTIGS)


def test_contig_order_within_output(bam, bed, tmp_path):
    out = tmp_path / "out.bam"
    subtract_regions(bed, bam, out, n_threads=4, batch_size=5)

    # reads of one contig keep their scan order even when contigs interleave
    spans = read_spans(out)
    for contig in CONTIGS:
        starts = [s for c, s, _ in spans if c == contig]
        assert starts == sorted(starts)


def test_contig_without_intervals_kept(bam, bed, tmp_path):
    out = tmp_path / "out.bam"
    report = subtract_regions(bed, bam, out, n_threads=2)

    chr3 = [r for r in _reads() if r[0] == "chr3"]
    assert report.contigs["chr3"].seen == len(chr3)
    assert report.contigs["chr3"].dropped == 0
    assert [s for s in read_spans(out) if s[0] == "chr3"] == expected_spans(chr3)


def test_empty_bed_keeps_everything(bam, tmp_path):
    bed = tmp_path / "empty.bed"
    bed.touch()
    out = tmp_path / "out.bam"
    report = subtract_regions(bed, bam, out, n_threads=3)

    assert sorted(read_spans(out)) == expected_spans(_reads())
    assert report.dropped == 0


def test_idempotent(bam, bed, tmp_path):
    first = tmp_path / "first.bam"
    subtract_regions(bed, bam, first, n_threads=2)
    pysam.sort("-o", str(tmp_path / "sorted.bam"), str(first))
    pysam.index(str(tmp_path / "sorted.bam"))

    second = tmp_path / "second.bam"
    report = subtract_regions(bed, tmp_path / "sorted.bam", second, n_threads=2)

    assert report.dropped == 0
    assert sorted(read_spans(second)) == sorted(read_spans(first))


def test_header_preserved(bam, bed, tmp_path):
    out = tmp_path / "out.bam"
    report = subtract_regions(bed, bam, out)

    # every chrM read is dropped but chrM stays in the dictionary
    assert report.contigs["chrM"].retained == 0
    assert read_header(out)["SQ"] == read_header(bam)["SQ"]


def batching_full():
    return 1, 3, [1, 1, 1]


def batching_partial():
    return 2, 3, [2, 1]


def batching_exact():
    return 3, 3, [3]


def batching_default():
    return 100_000, 3, [3]


class RecordingChannel(BatchChannel):
    sent: List[int] = []

    def send(self, batch):
        self.sent.append(len(batch))
        super().send(batch)


@parametrize_with_cases("batch_size, n_reads, sizes", cases=".", prefix="batching_")
def test_batches(tmp_path, monkeypatch, batch_size, n_reads, sizes):
    sent: List[int] = []
    monkeypatch.setattr(RecordingChannel, "sent", sent)
    monkeypatch.setattr("bamsieve._pipeline.BatchChannel", RecordingChannel)
    bam = write_bam(tmp_path / "in.bam", [("chr2", i * 100, 10) for i in range(n_reads)])
    bed = tmp_path / "empty.bed"
    bed.touch()
    report = subtract_regions(bed, bam, tmp_path / "out.bam", batch_size=batch_size)

    assert report.contigs["chr2"].batches == len(sizes)
    assert sent == sizes
    # contigs without reads emit no batches
    assert report.contigs["chr1"].batches == 0


@mark.parametrize("capacity", [1, 2])
def test_bounded_channel(bam, bed, tmp_path, capacity):
    out = tmp_path / "out.bam"
    report = subtract_regions(
        bed, bam, out, n_threads=4, batch_size=3, channel_capacity=capacity
    )
    assert len(read_spans(out)) == report.retained


def test_missing_index(tmp_path, bed):
    bam = write_bam(tmp_path / "noindex.bam", _reads(), index=False)
    with pytest.raises(AlignmentIndexError) as excinfo:
        subtract_regions(bed, bam, tmp_path / "out.bam")
    assert excinfo.value.partial_output is None
    assert not (tmp_path / "out.bam").exists()


def test_malformed_bed(tmp_path, bam):
    bed = write_bed(tmp_path / "bad.bed", ["chr1\t10\t5"])
    with pytest.raises(ParseError) as excinfo:
        subtract_regions(bed, bam, tmp_path / "out.bam")
    assert excinfo.value.partial_output is None
    assert not (tmp_path / "out.bam").exists()


def config_missing_bed(tmp_path, bam):
    return dict(bed=tmp_path / "nope.bed", bam=bam)


def config_missing_bam(tmp_path, bed):
    return dict(bed=bed, bam=tmp_path / "nope.bam")


def config_zero_threads(bed, bam):
    return dict(bed=bed, bam=bam, n_threads=0)


def config_zero_batch(bed, bam):
    return dict(bed=bed, bam=bam, batch_size=0)


def config_negative_capacity(bed, bam):
    return dict(bed=bed, bam=bam, channel_capacity=-1)


def config_overwrite_input(bed, bam):
    return dict(bed=bed, bam=bam, output=bam)


@parametrize_with_cases("kwargs", cases=".", prefix="config_")
def test_config_errors(kwargs):
    with pytest.raises(ConfigError):
        SubtractConfig(**kwargs)


def test_unwritable_output(bam, bed, tmp_path):
    with pytest.raises(AlignmentIOError):
        subtract_regions(
            bed,
            bam,
            tmp_path / "missing_dir" / "out.bam",
            n_threads=4,
            batch_size=1,
            channel_capacity=1,
        )


def test_worker_failure_aborts(bam, bed, tmp_path, monkeypatch):
    def explode(read):
        raise RuntimeError("boom")

    monkeypatch.setattr("bamsieve._worker.record_span", explode)
    with pytest.raises(WorkerError) as excinfo:
        subtract_regions(bed, bam, tmp_path / "out.bam", n_threads=4, batch_size=1)
    assert excinfo.value.contig in {"chr1", "chr2", "chrM"}
    assert excinfo.value.thread.startswith("worker-")
    # the writer had already created the output
    assert excinfo.value.partial_output == tmp_path / "out.bam"


def test_unknown_contig(bam, bed):
    state = PipelineState()
    worker = FilterWorker(
        bam,
        RegionIndex.build(bed),
        ChromosomeDispatcher(state.abort),
        BatchChannel(1),
        state,
        batch_size=10,
    )
    with pytest.raises(AlignmentIndexError):
        worker.filter_contig("chrNotThere")


def test_stage_transitions():
    state = PipelineState()
    for stage in (Stage.DISPATCH, Stage.RUN, Stage.DRAIN, Stage.DONE):
        state.advance(stage)
    assert state.stage is Stage.DONE

    state = PipelineState()
    with pytest.raises(RuntimeError):
        state.advance(Stage.RUN)

    state.fail(ConfigError("first"))
    state.fail(ConfigError("second"))
    assert str(state.error) == "first"
    assert state.stage is Stage.ABORTED
    state.advance(Stage.DISPATCH)
    assert state.stage is Stage.ABORTED


def test_stage_transition_waits_for_lock():
    state = PipelineState()
    mover = threading.Thread(target=state.advance, args=(Stage.DISPATCH,))
    with state._lock:
        mover.start()
        mover.join(timeout=0.1)
        assert mover.is_alive()
        assert state.stage is Stage.INIT
    mover.join()
    assert state.stage is Stage.DISPATCH


def test_fail_during_transition_stays_aborted():
    state = PipelineState()
    state.advance(Stage.DISPATCH)
    mover = threading.Thread(target=state.advance, args=(Stage.RUN,))
    with state._lock:
        mover.start()
        mover.join(timeout=0.1)
        # what a concurrent fail would leave behind while holding the lock
        state.error = ConfigError("boom")
        state.stage = Stage.ABORTED
    mover.join()
    assert state.stage is Stage.ABORTED


def test_record_span_without_cigar(tmp_path):
    header = pysam.AlignmentHeader.from_dict({"SQ": [{"SN": "chr1", "LN": 1000}]})
    read = pysam.AlignedSegment(header=header)
    read.reference_id = 0
    read.reference_start = 42
    assert record_span(read) == (42, 42)

    read.cigartuples = [(0, 5), (2, 3), (0, 5)]
    assert record_span(read) == (42, 55)
