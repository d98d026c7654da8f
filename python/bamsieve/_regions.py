from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Union

import numba as nb
import numpy as np
import polars as pl
from attrs import define, field
from loguru import logger
from numpy.typing import NDArray

from ._errors import ParseError

__all__ = ["RegionIndex", "ContigIntervals", "read_regions"]

BED3 = ["chrom", "chromStart", "chromEnd"]


def read_regions(path: Union[str, Path]) -> pl.DataFrame:
    """Read the first three columns of a BED-like file.

    Blank lines and ``track``/``browser``/``#`` lines are skipped wherever they
    appear, as are columns beyond the third. Coordinates are 0-based and half-open.

    Parameters
    ----------
    path : Union[str, Path]

    Returns
    -------
    polars.DataFrame
        Columns 'chrom' (Utf8), 'chromStart' (Int64) and 'chromEnd' (Int64), in file order.

    Raises
    ------
    ParseError
        If any line cannot be decomposed into (chrom, start, stop) with 0 <= start <= stop.
        The reported line number is 1-based and counts every line of the file.
    """
    path = Path(path)
    with open(path) as f:
        lines = f.read().splitlines()

    text = pl.col("text")
    raw = (
        pl.DataFrame({"text": lines}, schema={"text": pl.Utf8})
        .with_row_index("line", offset=1)
        .filter(
            (text.str.strip_chars() != "")
            & ~text.str.starts_with("#")
            & ~text.str.starts_with("track")
            & ~text.str.starts_with("browser")
        )
        .with_columns(fields=text.str.split("\t"))
    )

    _raise_first_bad_row(
        path,
        raw,
        pl.col("fields").list.len() < 3,
        "expected at least 3 tab-separated columns",
    )

    fields = pl.col("fields").list
    bed = raw.select(
        "line",
        chrom=fields.get(0).str.strip_chars(),
        chromStart=fields.get(1).str.strip_chars().cast(pl.Int64, strict=False),
        chromEnd=fields.get(2).str.strip_chars().cast(pl.Int64, strict=False),
    )

    _raise_first_bad_row(
        path, bed, pl.col("chrom") == "", "missing chromosome name"
    )
    _raise_first_bad_row(
        path,
        bed,
        pl.col("chromStart").is_null() | pl.col("chromEnd").is_null(),
        "start and end must be integers",
    )
    _raise_first_bad_row(
        path, bed, pl.col("chromStart") < 0, "negative start coordinate"
    )
    _raise_first_bad_row(
        path,
        bed,
        pl.col("chromEnd") < pl.col("chromStart"),
        "end is less than start",
    )

    return bed.select(BED3)


def _raise_first_bad_row(path: Path, bed: pl.DataFrame, bad: pl.Expr, reason: str):
    bad_rows = bed.filter(bad)
    if bad_rows.height > 0:
        raise ParseError(path, bad_rows["line"][0], reason)


@nb.njit(nogil=True, cache=True)
def _bisect(arr: NDArray[np.int64], x: int, right: bool) -> int:
    lo = 0
    hi = len(arr)
    while lo < hi:
        mid = (lo + hi) // 2
        if arr[mid] < x or (right and arr[mid] == x):
            lo = mid + 1
        else:
            hi = mid
    return lo


@nb.njit(nogil=True, cache=True)
def _count_overlaps(
    starts: NDArray[np.int64],
    stops: NDArray[np.int64],
    max_len: int,
    start: int,
    end: int,
) -> int:
    """Count intervals with start < end and stop > start.

    Intervals must be sorted by start. Any overlapping interval starts after
    start - max_len, so only the slice between the two binary searches is scanned.
    """
    lo = _bisect(starts, start - max_len, True)
    hi = _bisect(starts, end, False)
    n = 0
    for i in range(lo, hi):
        if stops[i] > start:
            n += 1
    return n


def _readonly(arr: NDArray) -> NDArray:
    arr.flags.writeable = False
    return arr


@define(frozen=True)
class ContigIntervals:
    """Intervals of a single contig, sorted by start, with read-only storage."""

    starts: NDArray[np.int64] = field(converter=_readonly)
    stops: NDArray[np.int64] = field(converter=_readonly)
    max_len: int

    @classmethod
    def from_arrays(
        cls, starts: NDArray[np.integer], stops: NDArray[np.integer]
    ) -> "ContigIntervals":
        starts = np.asarray(starts, np.int64)
        stops = np.asarray(stops, np.int64)
        order = np.argsort(starts, kind="stable")
        starts = np.ascontiguousarray(starts[order])
        stops = np.ascontiguousarray(stops[order])
        max_len = int((stops - starts).max()) if len(starts) > 0 else 0
        return cls(starts, stops, max_len)

    def __len__(self) -> int:
        return len(self.starts)

    def count(self, start: int, end: int) -> int:
        """Number of intervals overlapping [start, end). Touching endpoints do not overlap."""
        if len(self.starts) == 0:
            return 0
        return int(_count_overlaps(self.starts, self.stops, self.max_len, start, end))


@define(frozen=True)
class RegionIndex:
    """Immutable mapping from contig name to its overlap-queryable intervals.

    Built once and then shared across threads without locking. Duplicate and
    mutually overlapping intervals are kept as-is and each counts separately.
    """

    _intervals: Mapping[str, ContigIntervals] = field(converter=MappingProxyType)

    @classmethod
    def build(cls, path: Union[str, Path]) -> "RegionIndex":
        """Build an index from a BED-like interval file.

        Raises
        ------
        ParseError
            If a line of the file is malformed.
        """
        bed = read_regions(path)
        index = cls.from_frame(bed)
        logger.info(
            f"Loaded {len(index)} intervals on {len(index.contigs)} contigs from {path}"
        )
        return index

    @classmethod
    def from_frame(cls, bed: pl.DataFrame) -> "RegionIndex":
        """Build an index from a DataFrame with columns 'chrom', 'chromStart' and 'chromEnd'."""
        intervals: Dict[str, ContigIntervals] = {}
        if bed.height > 0:
            for part in bed.partition_by("chrom", maintain_order=True):
                contig = part["chrom"][0]
                intervals[contig] = ContigIntervals.from_arrays(
                    part["chromStart"].to_numpy(), part["chromEnd"].to_numpy()
                )
        return cls(intervals)

    @property
    def contigs(self) -> List[str]:
        return list(self._intervals)

    def __contains__(self, contig: object) -> bool:
        return contig in self._intervals

    def __len__(self) -> int:
        return sum(len(itvs) for itvs in self._intervals.values())

    def __iter__(self) -> Iterator[str]:
        return iter(self._intervals)

    def get(self, contig: str) -> Optional[ContigIntervals]:
        return self._intervals.get(contig)

    def n_intervals(self, contig: str) -> int:
        itvs = self._intervals.get(contig)
        return 0 if itvs is None else len(itvs)

    def query(self, contig: str, start: int, end: int) -> int:
        """Count stored intervals overlapping the half-open range [start, end) on a contig.

        Contigs without intervals always return 0.
        """
        itvs = self._intervals.get(contig)
        if itvs is None:
            return 0
        return itvs.count(start, end)

    def overlaps(self, contig: str, start: int, end: int) -> bool:
        return self.query(contig, start, end) > 0
