from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Tuple, Union

import pysam
from attrs import define, field
from loguru import logger
from tqdm.auto import tqdm

from ._dispatch import ChromosomeDispatcher, header_contigs
from ._errors import (
    AlignmentIndexError,
    AlignmentIOError,
    BamSieveError,
    ConfigError,
    WorkerError,
)
from ._regions import RegionIndex
from ._state import PipelineState, Stage
from ._worker import ContigStats, FilterWorker
from ._writer import BatchChannel, WriterSink

__all__ = ["subtract_regions", "run", "SubtractConfig", "SubtractReport"]

DEFAULT_OUTPUT = Path("subtracted.bam")
BATCH_SIZE = 100_000


def _existing_file(instance, attribute, value: Path):
    if not value.is_file():
        raise ConfigError(f"{attribute.name} file does not exist: {value}")


def _at_least(minimum: int):
    def validator(instance, attribute, value):
        if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
            raise ConfigError(
                f"{attribute.name} must be an integer >= {minimum}, got {value!r}"
            )

    return validator


@define(frozen=True)
class SubtractConfig:
    """Validated inputs of one region-subtraction run.

    Attributes
    ----------
    bed
        BED-like file of intervals to exclude.
    bam
        Indexed alignment file to filter.
    output
        Output BAM. Defaults to ``subtracted.bam`` in the working directory.
    n_threads
        Number of filter workers. The writer runs on its own additional thread.
    batch_size
        Maximum number of reads per batch sent to the writer.
    channel_capacity
        Maximum number of batches waiting for the writer. 0 means unbounded.
    progress
        Whether to show a progress bar over contigs.
    """

    bed: Path = field(converter=Path, validator=_existing_file)
    bam: Path = field(converter=Path, validator=_existing_file)
    output: Path = field(default=DEFAULT_OUTPUT, converter=Path)
    n_threads: int = field(default=1, validator=_at_least(1))
    batch_size: int = field(default=BATCH_SIZE, validator=_at_least(1))
    channel_capacity: int = field(default=0, validator=_at_least(0))
    progress: bool = False

    def __attrs_post_init__(self):
        if self.output.resolve() == self.bam.resolve():
            raise ConfigError(f"Output {self.output} would overwrite the input BAM.")


@define
class SubtractReport:
    """Per-contig counts of a finished run, in header order."""

    contigs: Dict[str, ContigStats]
    written: int
    elapsed: float

    @property
    def seen(self) -> int:
        return sum(s.seen for s in self.contigs.values())

    @property
    def retained(self) -> int:
        return sum(s.retained for s in self.contigs.values())

    @property
    def dropped(self) -> int:
        return self.seen - self.retained


def subtract_regions(
    bed: Union[str, Path],
    bam: Union[str, Path],
    output: Union[str, Path] = DEFAULT_OUTPUT,
    n_threads: int = 1,
    batch_size: int = BATCH_SIZE,
    channel_capacity: int = 0,
    progress: bool = False,
) -> SubtractReport:
    """Write every read of ``bam`` that overlaps no interval of ``bed`` to ``output``.

    The output keeps the input's full reference dictionary. Reads of one contig are
    written in input order, but with more than one thread reads of different contigs
    interleave in whatever order the workers finish their batches.

    Parameters
    ----------
    bed
        BED-like file whose first three columns are chrom, start and end (0-based, half-open).
    bam
        Alignment file with a positional index (.bai or .csi).
    output
        Path of the output BAM.
    n_threads
        Number of filter workers.
    batch_size
        Maximum number of reads per batch handed to the writer.
    channel_capacity
        Maximum number of batches waiting for the writer, 0 for unbounded.
    progress
        Whether to show a progress bar.

    Returns
    -------
    SubtractReport

    Raises
    ------
    ConfigError, ParseError, AlignmentIndexError, AlignmentIOError, WorkerError
        The first fatal error of the run. If the output was already created, its path
        is set as the error's ``partial_output`` and the file should be discarded.
    """
    config = SubtractConfig(
        bed=bed,
        bam=bam,
        output=output,
        n_threads=n_threads,
        batch_size=batch_size,
        channel_capacity=channel_capacity,
        progress=progress,
    )
    return run(config)


def _open_input(bam: Path) -> Tuple[Dict[str, Any], List[str]]:
    try:
        f = pysam.AlignmentFile(str(bam), "r")
    except (OSError, ValueError) as e:
        raise AlignmentIOError(f"Could not open {bam}: {e}") from e
    with f:
        if not f.has_index():
            raise AlignmentIndexError(
                f"{bam} has no positional index. Create one with `samtools index {bam}`."
            )
        return f.header.to_dict(), header_contigs(f.header)


def run(config: SubtractConfig) -> SubtractReport:
    """Run the pipeline for a validated configuration."""
    t0 = perf_counter()
    state = PipelineState()
    logger.info(
        f"Subtracting regions in {config.bed} from {config.bam} with {config.n_threads} thread(s)"
    )

    try:
        regions = RegionIndex.build(config.bed)
        header, contigs = _open_input(config.bam)
    except BamSieveError as e:
        state.fail(e)
        raise

    if missing := set(regions.contigs) - set(contigs):
        logger.warning(
            f"Contigs in {config.bed} are not in the BAM header and will be ignored: {sorted(missing)}"
        )
    logger.info(f"Found {len(contigs)} contigs in {config.bam}")

    state.advance(Stage.DISPATCH)
    dispatcher = ChromosomeDispatcher(state.abort)
    dispatcher.put_all(contigs)
    dispatcher.close()

    state.advance(Stage.RUN)
    channel = BatchChannel(config.n_threads, config.channel_capacity)
    state.progress = tqdm(
        total=len(contigs), unit="contig", disable=not config.progress
    )
    writer = WriterSink(config.output, header, channel, state)
    workers = [
        FilterWorker(
            config.bam,
            regions,
            dispatcher,
            channel,
            state,
            config.batch_size,
            name=f"worker-{i}",
        )
        for i in range(config.n_threads)
    ]

    try:
        writer.start()
    except RuntimeError as e:
        state.progress.close()
        raise WorkerError(writer.name, None, e) from e
    n_started = 0
    try:
        for worker in workers:
            worker.start()
            n_started += 1
    except RuntimeError as e:
        state.fail(WorkerError(workers[n_started].name, None, e))
        # workers that never ran must still release the writer
        for _ in range(len(workers) - n_started):
            channel.close_sender()

    state.advance(Stage.DRAIN)
    for worker in workers[:n_started]:
        worker.join()
    writer.join()
    state.progress.close()

    if state.error is not None:
        if writer.opened:
            state.error.partial_output = config.output
        raise state.error

    stats = {}
    for worker in workers:
        stats.update(worker.stats)
    report = SubtractReport(
        {c: stats[c] for c in contigs if c in stats},
        writer.written,
        perf_counter() - t0,
    )
    if report.retained != report.written:
        error = WorkerError(
            writer.name,
            None,
            RuntimeError(
                f"retained {report.retained} reads but wrote {report.written}"
            ),
        )
        error.partial_output = config.output
        raise error

    state.advance(Stage.DONE)
    logger.info(
        f"Retained {report.retained} of {report.seen} reads ({report.dropped} dropped) "
        f"in {report.elapsed:.1f}s, wrote {config.output}"
    )
    return report
