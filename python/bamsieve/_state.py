import threading
from enum import Enum
from typing import Optional

from loguru import logger
from tqdm.auto import tqdm

from ._errors import BamSieveError

__all__ = ["Stage", "PipelineState"]


class Stage(str, Enum):
    INIT = "init"
    DISPATCH = "dispatch"
    RUN = "run"
    DRAIN = "drain"
    DONE = "done"
    ABORTED = "aborted"


_NEXT = {
    Stage.INIT: Stage.DISPATCH,
    Stage.DISPATCH: Stage.RUN,
    Stage.RUN: Stage.DRAIN,
    Stage.DRAIN: Stage.DONE,
}


class PipelineState:
    """Shared failure latch and stage tracker for one pipeline run.

    The first error passed to ``fail`` is kept and every later one is dropped.
    Failing sets ``abort``, which workers, the dispatcher and the writer poll to
    shut down early.
    """

    def __init__(self, progress: Optional[tqdm] = None) -> None:
        self.abort = threading.Event()
        self.stage = Stage.INIT
        self.error: Optional[BamSieveError] = None
        self.progress = progress
        self._lock = threading.Lock()

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()

    def advance(self, stage: Stage) -> None:
        with self._lock:
            if self.stage is Stage.ABORTED:
                return
            if _NEXT.get(self.stage) is not stage:
                raise RuntimeError(
                    f"Invalid pipeline transition {self.stage} -> {stage}"
                )
            logger.debug(f"Pipeline stage: {stage.value}")
            self.stage = stage

    def fail(self, error: BamSieveError) -> None:
        with self._lock:
            if self.error is None:
                self.error = error
                self.stage = Stage.ABORTED
                logger.debug(f"Aborting pipeline: {error}")
            else:
                logger.debug(f"Suppressed error after abort: {error}")
            self.abort.set()

    def contig_done(self) -> None:
        if self.progress is None:
            return
        with self._lock:
            self.progress.update()
