import queue
import threading
from typing import Iterable, Iterator, List, Optional

import pysam

from ._errors import AlignmentIOError

__all__ = ["ChromosomeDispatcher", "header_contigs"]


_CLOSED = object()


def header_contigs(header: pysam.AlignmentHeader) -> List[str]:
    """Contig names declared in an alignment header, in header order."""
    return list(header.references)


class ChromosomeDispatcher:
    """Thread-safe work queue handing out each contig name exactly once.

    Names are placed in header order and the queue is then closed. Any number of
    consumers may iterate concurrently; iteration blocks until a name is available
    and ends once the queue is closed and drained, or when ``abort`` is set.
    """

    def __init__(self, abort: Optional[threading.Event] = None) -> None:
        self._queue: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._closed = False
        self._abort = abort if abort is not None else threading.Event()
        self.n_contigs = 0

    @classmethod
    def from_alignment(
        cls, path: str, abort: Optional[threading.Event] = None
    ) -> "ChromosomeDispatcher":
        """Populate a dispatcher from the header of an alignment file and close it."""
        try:
            with pysam.AlignmentFile(path, "r") as bam:
                contigs = header_contigs(bam.header)
        except (OSError, ValueError) as e:
            raise AlignmentIOError(f"Could not read header of {path}: {e}") from e
        dispatcher = cls(abort)
        dispatcher.put_all(contigs)
        dispatcher.close()
        return dispatcher

    def put(self, contig: str) -> None:
        if self._closed:
            raise RuntimeError("Cannot add contigs to a closed dispatcher.")
        self._queue.put(contig)
        self.n_contigs += 1

    def put_all(self, contigs: Iterable[str]) -> None:
        for contig in contigs:
            self.put(contig)

    def close(self) -> None:
        """Signal that no more contigs will be added."""
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[str]:
        while not self._abort.is_set():
            item = self._queue.get()
            if item is _CLOSED:
                # leave the marker for the other consumers
                self._queue.put(_CLOSED)
                return
            if self._abort.is_set():
                return
            yield item  # type: ignore[misc]
