import importlib.metadata

from loguru import logger

from ._dispatch import ChromosomeDispatcher
from ._errors import (
    AlignmentIndexError,
    AlignmentIOError,
    BamSieveError,
    ConfigError,
    ParseError,
    WorkerError,
)
from ._pipeline import SubtractConfig, SubtractReport, run, subtract_regions
from ._regions import ContigIntervals, RegionIndex, read_regions
from ._worker import ContigStats, FilterWorker, record_span
from ._writer import BatchChannel, WriterSink

__version__ = importlib.metadata.version("bamsieve")

logger.disable("bamsieve")

__all__ = [
    "subtract_regions",
    "run",
    "SubtractConfig",
    "SubtractReport",
    "RegionIndex",
    "ContigIntervals",
    "read_regions",
    "ChromosomeDispatcher",
    "FilterWorker",
    "ContigStats",
    "record_span",
    "BatchChannel",
    "WriterSink",
    "BamSieveError",
    "ConfigError",
    "ParseError",
    "AlignmentIndexError",
    "AlignmentIOError",
    "WorkerError",
]
