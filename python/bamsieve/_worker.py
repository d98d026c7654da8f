import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

import pysam
from attrs import define
from loguru import logger

from ._dispatch import ChromosomeDispatcher
from ._errors import AlignmentIndexError, AlignmentIOError, BamSieveError, WorkerError
from ._regions import RegionIndex
from ._state import PipelineState
from ._writer import Batch, BatchChannel

__all__ = ["FilterWorker", "ContigStats", "record_span"]


@define
class ContigStats:
    contig: str
    seen: int = 0
    retained: int = 0
    batches: int = 0

    @property
    def dropped(self) -> int:
        return self.seen - self.retained


def record_span(read: pysam.AlignedSegment) -> Tuple[int, int]:
    """Half-open reference span [start, end) of an alignment.

    Records without aligned bases (no CIGAR) get the empty span [start, start).
    """
    start = read.reference_start
    end = read.reference_end
    if end is None:
        end = start
    return start, end


class FilterWorker(threading.Thread):
    """Pulls contigs from the dispatcher and emits batches of reads that overlap
    no excluded interval.

    Each contig is scanned through its own random-access cursor. Batches are sent
    when they reach ``batch_size`` and once more at the end of the contig if any
    reads remain, so batches of one contig arrive in scan order.
    """

    def __init__(
        self,
        bam: Path,
        regions: RegionIndex,
        dispatcher: ChromosomeDispatcher,
        channel: BatchChannel,
        state: PipelineState,
        batch_size: int,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.bam = bam
        self.regions = regions
        self.dispatcher = dispatcher
        self.channel = channel
        self.state = state
        self.batch_size = batch_size
        self.stats: Dict[str, ContigStats] = {}

    def run(self) -> None:
        contig = None
        try:
            for contig in self.dispatcher:
                self.stats[contig] = self.filter_contig(contig)
                self.state.contig_done()
        except BamSieveError as e:
            self.state.fail(e)
        except Exception as e:
            self.state.fail(WorkerError(self.name, contig, e))
        finally:
            self.channel.close_sender()

    def filter_contig(self, contig: str) -> ContigStats:
        stats = ContigStats(contig)
        intervals = self.regions.get(contig)
        logger.debug(
            f"{self.name}: filtering {contig} against {self.regions.n_intervals(contig)} intervals"
        )

        try:
            bam = pysam.AlignmentFile(str(self.bam), "r")
        except (OSError, ValueError) as e:
            raise AlignmentIOError(f"Could not open {self.bam}: {e}") from e

        with bam:
            try:
                reads = bam.fetch(contig)
            except ValueError as e:
                raise AlignmentIndexError(
                    f"Could not fetch contig {contig} from {self.bam}: {e}"
                ) from e

            batch: Batch = []
            try:
                for read in reads:
                    if self.state.aborted:
                        return stats
                    stats.seen += 1
                    if intervals is not None:
                        start, end = record_span(read)
                        if intervals.count(start, end) > 0:
                            continue
                    batch.append(read)
                    if len(batch) == self.batch_size:
                        self._emit(batch, stats)
                        batch = []
            except OSError as e:
                raise AlignmentIOError(
                    f"Failed reading record {stats.seen} of contig {contig} in {self.bam}: {e}"
                ) from e

            if batch:
                self._emit(batch, stats)

        logger.debug(
            f"{self.name}: {contig} done, retained {stats.retained}/{stats.seen} reads"
        )
        return stats

    def _emit(self, batch: Batch, stats: ContigStats) -> None:
        self.channel.send(batch)
        stats.retained += len(batch)
        stats.batches += 1
