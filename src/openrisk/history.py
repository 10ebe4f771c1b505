"""
History Compactor - bounded, lossy time series for graphing

One series per group name. A new point is only recorded when the value
moved materially over more than a minute; otherwise the most recent point
is stretched forward to "now". Roughly a day of history is kept.

Retention rule for a new value v at time now (prev = second-to-last
sample, last = last sample):

    now - prev.t > 60s  and  |prev.v - v| > |prev.v + v| / 2000
        -> append (now, v)
    otherwise
        -> last := (now, v)

Pruning runs once the oldest sample is 25h old, and cuts everything
older than 24h. A series with nothing younger than 24h starts over.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, List

from .schema import HistorySample

logger = logging.getLogger(__name__)


MIN_BREAKPOINT_SECONDS = 60.0
RELATIVE_CHANGE_DIVISOR = 2000.0
PRUNE_TRIGGER_SECONDS = 25 * 3600
RETAIN_SECONDS = 24 * 3600


class HistoryCompactor:
    """
    Per-group compacted history owned by one parameter definition.

    Updates are serialized with a lock; a scheduler running the same
    definition twice at once would still interleave whole passes.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.series: Dict[str, List[HistorySample]] = {}

    def record(self, group: str, value: float) -> None:
        """Fold one scalar value into the group's series."""
        if math.isnan(value):
            return
        now = float(int(self._clock()))

        with self._lock:
            samples = self._prune(self.series.get(group, []), now)
            self.series[group] = samples
            n = len(samples)

            if n <= 1:
                samples.append(HistorySample(now, value))
                return

            prev = samples[n - 2]
            if (
                now - prev.timestamp > MIN_BREAKPOINT_SECONDS
                and abs(prev.value - value) > abs(prev.value + value) / RELATIVE_CHANGE_DIVISOR
            ):
                samples.append(HistorySample(now, value))
            else:
                samples[n - 1] = HistorySample(now, value)

    def _prune(self, samples: List[HistorySample], now: float) -> List[HistorySample]:
        if not samples or now - samples[0].timestamp < PRUNE_TRIGGER_SECONDS:
            return samples

        for i in range(len(samples)):
            if now - samples[i].timestamp < RETAIN_SECONDS:
                logger.debug(f"History pruned {i} samples older than 24h")
                return samples[i:]
        logger.debug(f"History dropped {len(samples)} stale samples")
        return []

    def get(self, group: str) -> List[HistorySample]:
        with self._lock:
            return list(self.series.get(group, []))

    def to_dict(self) -> Dict[str, List[List[float]]]:
        """Chart payload: group -> [[timestamp, value], ...]."""
        with self._lock:
            return {
                group: [sample.to_list() for sample in samples]
                for group, samples in self.series.items()
            }
