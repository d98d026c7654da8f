import queue
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List

import pysam
from loguru import logger

from ._errors import AlignmentIOError, BamSieveError, WorkerError
from ._state import PipelineState

__all__ = ["Batch", "BatchChannel", "WriterSink"]

Batch = List[pysam.AlignedSegment]

_SENDER_DONE = object()


class BatchChannel:
    """Multi-producer, single-consumer channel carrying whole batches.

    Parameters
    ----------
    n_senders : int
        Number of producers. The consumer stops once every one of them has called
        ``close_sender``.
    capacity : int, optional
        Maximum number of batches in flight. 0 means unbounded; otherwise ``send``
        blocks until the consumer makes room.
    """

    def __init__(self, n_senders: int, capacity: int = 0) -> None:
        if n_senders < 1:
            raise ValueError("Need at least one sender.")
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=capacity)
        self._open_senders = n_senders
        self.capacity = capacity

    def send(self, batch: Batch) -> None:
        self._queue.put(batch)

    def close_sender(self) -> None:
        self._queue.put(_SENDER_DONE)

    @property
    def open_senders(self) -> int:
        return self._open_senders

    def __iter__(self) -> Iterator[Batch]:
        # only the single consumer thread iterates, so the counter needs no lock
        while self._open_senders > 0:
            item = self._queue.get()
            if item is _SENDER_DONE:
                self._open_senders -= 1
                continue
            yield item


class WriterSink(threading.Thread):
    """Sole owner of the output file. Writes batches in arrival order.

    The output header is the input header's full reference dictionary, unmodified.
    Once the pipeline is aborted the sink stops writing but keeps draining the
    channel so that no producer blocks on a full channel.
    """

    def __init__(
        self,
        output: Path,
        header: Dict[str, Any],
        channel: BatchChannel,
        state: PipelineState,
        name: str = "writer",
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.output = output
        self.header = header
        self.channel = channel
        self.state = state
        self.opened = False
        self.written = 0
        self.batches = 0

    def run(self) -> None:
        try:
            self._write()
        except BamSieveError as e:
            self.state.fail(e)
        except Exception as e:
            self.state.fail(WorkerError(self.name, None, e))
        finally:
            for _ in self.channel:
                pass

    def _write(self) -> None:
        try:
            out = pysam.AlignmentFile(str(self.output), "wb", header=self.header)
        except (OSError, ValueError) as e:
            raise AlignmentIOError(f"Could not open {self.output} for writing: {e}") from e
        self.opened = True

        with out:
            for batch in self.channel:
                if self.state.aborted:
                    logger.debug("Pipeline aborted, stopping writes.")
                    return
                try:
                    for read in batch:
                        out.write(read)
                        self.written += 1
                except OSError as e:
                    raise AlignmentIOError(
                        f"Failed writing record {self.written} to {self.output}: {e}"
                    ) from e
                self.batches += 1
        logger.debug(f"Wrote {self.written} records in {self.batches} batches.")
