from enum import Enum
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option, Typer

__all__ = []


app = Typer(rich_markup_mode="rich")


class LOG_LEVEL(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@app.callback()
def callback():
    """Filter alignment files against sets of genomic intervals."""


@app.command(no_args_is_help=True)
def subtract(
    bed: Annotated[
        Path,
        Argument(help="BED3+ file of regions to exclude (0-based, half-open)."),
    ],
    bam: Annotated[
        Path,
        Argument(help="Coordinate-sorted BAM with a .bai or .csi index."),
    ],
    output: Annotated[
        Path, Option("--output", "-o", help="Output BAM.")
    ] = Path("subtracted.bam"),
    threads: Annotated[
        int, Option("--threads", "-t", min=1, help="Number of filter threads.")
    ] = 1,
    batch_size: Annotated[
        int,
        Option(min=1, help="Maximum number of reads per batch sent to the writer."),
    ] = 100_000,
    channel_capacity: Annotated[
        int,
        Option(
            min=0,
            help="Maximum number of batches waiting to be written. 0 means unbounded; lower values cap memory at the cost of throughput.",
        ),
    ] = 0,
    progress: Annotated[bool, Option(help="Show a progress bar over contigs.")] = False,
    log_level: Annotated[
        LOG_LEVEL,
        Option(
            help="Log level to use. One of DEBUG, INFO, WARNING, ERROR, CRITICAL. Default is INFO."
        ),
    ] = LOG_LEVEL.INFO,
):
    """Remove every read overlapping a region of the BED file from a BAM file.

    The output keeps the input's reference dictionary. With more than one thread,
    reads from different contigs are interleaved in no particular order, so the
    output is [b]not[/b] coordinate-sorted; sort it before indexing.
    """
    import sys

    from loguru import logger

    from bamsieve._errors import BamSieveError
    from bamsieve._pipeline import subtract_regions

    logger.remove()
    logger.add(sys.stderr, level=log_level.value)
    logger.enable("bamsieve")

    try:
        subtract_regions(
            bed=bed,
            bam=bam,
            output=output,
            n_threads=threads,
            batch_size=batch_size,
            channel_capacity=channel_capacity,
            progress=progress,
        )
    except BamSieveError as e:
        logger.error(str(e))
        if e.partial_output is not None and e.partial_output.exists():
            logger.info(f"Removing partial output {e.partial_output}")
            e.partial_output.unlink()
        raise Exit(code=1)


if __name__ == "__main__":
    app()
