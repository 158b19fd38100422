"""
Progress reporting across multi-stage pipelines.

Each stage reports its own 0-100 percentage; a fixed boundary table maps
(stage, percent in stage) onto a single overall percentage so callers can
render one progress bar for the whole backup or restore.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class Stage(str, Enum):
    # Backup pipeline
    PREPARE = 'Prepare'
    DUMP = 'Dump'
    ARCHIVE = 'Archive'
    ENCRYPT = 'Encrypt'
    COPY = 'Copy'
    UPLOAD = 'Upload'
    RETENTION = 'Retention'
    VERIFY = 'Verify'
    # Restore pipeline
    SCAN = 'Scan'
    DOWNLOAD = 'Download'
    DECRYPT = 'Decrypt'
    EXTRACT = 'Extract'
    DONE = 'Done'


STAGE_BOUNDS = {
    Stage.PREPARE: (0, 5),
    Stage.DUMP: (5, 10),
    Stage.ARCHIVE: (10, 75),
    Stage.ENCRYPT: (75, 95),
    Stage.COPY: (75, 95),
    Stage.UPLOAD: (95, 98),
    Stage.RETENTION: (98, 98),
    Stage.VERIFY: (98, 100),
    Stage.SCAN: (0, 15),
    Stage.DOWNLOAD: (0, 30),
    Stage.DECRYPT: (30, 45),
    Stage.EXTRACT: (45, 100),
    Stage.DONE: (100, 100),
}

# Share of a chain restore spent on scanning manifests
CHAIN_SCAN_END = STAGE_BOUNDS[Stage.SCAN][1]


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, value)))


def scale_percent(percent: float, start: int, end: int) -> int:
    """Map 0-100 onto the [start, end] range."""
    return _clamp(start + (end - start) * _clamp(percent) / 100, start, end)


def overall_percent(stage: Stage, percent_in_stage: float = 0) -> int:
    """
    Map a stage-local percentage onto the overall pipeline percentage.

    >>> overall_percent(Stage.ARCHIVE, 50)
    42
    """
    start, end = STAGE_BOUNDS[stage]
    return scale_percent(percent_in_stage, start, end)


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    percent_in_stage: int
    percent: int


class ProgressReporter:
    """
    Turns stage-local progress into monotonic overall progress events.

    The reporter can itself be confined to a sub-range of the caller's bar
    (start/end), which is how a chain restore nests the single-artifact
    pipeline inside its own progress.
    """

    def __init__(self, callback: Optional[Callable[[ProgressEvent], None]] = None,
                 start: int = 0, end: int = 100):
        self._callback = callback
        self._start = start
        self._end = end
        self._last = start
        self._lock = threading.Lock()

    @property
    def last_percent(self) -> int:
        return self._last

    def report(self, stage: Stage, percent_in_stage: float = 0):
        percent = scale_percent(overall_percent(stage, percent_in_stage), self._start, self._end)

        with self._lock:
            percent = max(percent, self._last)
            self._last = percent

        if self._callback:
            self._callback(ProgressEvent(stage, _clamp(percent_in_stage), percent))

    def for_stage(self, stage: Stage) -> Callable[[int], None]:
        """Return a plain 0-100 callback bound to one stage."""
        return lambda pct: self.report(stage, pct)

    def sub_range(self, start: int, end: int) -> 'ProgressReporter':
        """
        Create a reporter whose 0-100 maps onto [start, end] of this one.

        Args:
            start: Lower bound, in this reporter's 0-100 space
            end: Upper bound, in this reporter's 0-100 space
        """
        return ProgressReporter(
            self._callback,
            scale_percent(start, self._start, self._end),
            scale_percent(end, self._start, self._end)
        )
