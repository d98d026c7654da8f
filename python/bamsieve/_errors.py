from pathlib import Path
from typing import Optional, Union

__all__ = [
    "BamSieveError",
    "ConfigError",
    "ParseError",
    "AlignmentIndexError",
    "AlignmentIOError",
    "WorkerError",
]


class BamSieveError(Exception):
    """Base class for every fatal pipeline error.

    Attributes
    ----------
    partial_output
        Output file this run created before failing, or None if it never opened one.
    """

    partial_output: Optional[Path] = None


class ConfigError(BamSieveError):
    """Missing or invalid file paths, or invalid numeric options."""


class ParseError(BamSieveError):
    """A line of the interval file could not be decomposed into (chrom, start, stop)."""

    def __init__(self, path: Union[str, Path], line: int, reason: str) -> None:
        self.path = Path(path)
        self.line = line
        self.reason = reason
        super().__init__(f"{self.path}:{line}: {reason}")


class AlignmentIndexError(BamSieveError):
    """Missing or unusable positional index, or a contig the index cannot resolve."""


class AlignmentIOError(BamSieveError, OSError):
    """Read or write failure on the alignment input or output."""


class WorkerError(BamSieveError):
    """An unexpected failure inside a worker or the writer thread."""

    def __init__(self, thread: str, contig: Optional[str], cause: BaseException):
        self.thread = thread
        self.contig = contig
        where = f"{thread} (contig {contig})" if contig is not None else thread
        super().__init__(f"{where} failed: {cause!r}")
