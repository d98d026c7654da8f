from pathlib import Path
from typing import Dict, Iterable, List, Tuple, Union

import pysam

CONTIGS = {"chr1": 10_000, "chr2": 5_000, "chr3": 5_000, "chrM": 1_000}

# contig, start, aligned length
ReadSpec = Tuple[str, int, int]
Span = Tuple[str, int, int]


def write_bed(path: Path, lines: Iterable[str]) -> Path:
    path.write_text("".join(f"{line}\n" for line in lines))
    return path


def write_bam(
    path: Path,
    reads: Iterable[ReadSpec],
    contigs: Dict[str, int] = CONTIGS,
    index: bool = True,
) -> Path:
    """Write a coordinate-sorted BAM of fully matching reads and optionally index it."""
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": c, "LN": length} for c, length in contigs.items()],
    }
    tids = {c: i for i, c in enumerate(contigs)}
    reads = sorted(reads, key=lambda r: (tids[r[0]], r[1]))
    with pysam.AlignmentFile(str(path), "wb", header=header) as f:
        for i, (contig, start, length) in enumerate(reads):
            a = pysam.AlignedSegment(header=f.header)
            a.query_name = f"r{i}"
            a.flag = 0
            a.reference_id = tids[contig]
            a.reference_start = start
            a.mapping_quality = 60
            a.cigartuples = [(0, length)]
            a.query_sequence = "A" * length
            a.query_qualities = pysam.qualitystring_to_array("I" * length)
            f.write(a)
    if index:
        pysam.index(str(path))
    return path


def read_spans(path: Union[str, Path]) -> List[Span]:
    """Spans of every read in a BAM, in file order."""
    with pysam.AlignmentFile(str(path), "rb") as f:
        return [(r.reference_name, r.reference_start, r.reference_end) for r in f]


def read_header(path: Union[str, Path]) -> dict:
    with pysam.AlignmentFile(str(path), "rb") as f:
        return f.header.to_dict()


def expected_spans(reads: Iterable[ReadSpec]) -> List[Span]:
    return sorted((c, s, s + n) for c, s, n in reads)
