from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..history import Snapshot, SnapshotHistory
from .decoder import TestRecord
from .sampler import PollingSupervisor

logger = logging.getLogger(__name__)

# metric -> (preferred sampler, parameter)
METRIC_SOURCES: Dict[str, Tuple[str, str]] = {
    "battery_voltage": ("battery", "BATTERY"),
    "fuel_trim": ("emissions", "SHORT_FUEL_TRIM_1"),
    "coolant_temp": ("dashboard", "COOLANT"),
}
CATALYST_TEST_ID = "01"


class SnapshotCollector:
    """
    Reads the latest values the samplers already hold and appends them to the
    snapshot history. Never issues adapter commands of its own.
    """

    def __init__(
        self,
        history: SnapshotHistory,
        samplers: Mapping[str, PollingSupervisor],
        *,
        test_results: Optional[Callable[[], Sequence[TestRecord]]] = None,
        is_connected: Optional[Callable[[], bool]] = None,
        sources: Optional[Mapping[str, Tuple[str, str]]] = None,
    ):
        self.history = history
        self.samplers = samplers
        self.test_results = test_results or (lambda: [])
        self.is_connected = is_connected or (lambda: True)
        self.sources = dict(sources or METRIC_SOURCES)
        self.collected = 0

    def gather(self) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for metric, (preferred, parameter) in self.sources.items():
            value = self._lookup(preferred, parameter)
            if value is not None:
                values[metric] = value
        catalyst = _find_test(self.test_results(), CATALYST_TEST_ID)
        if catalyst is not None:
            values["catalyst_ratio"] = catalyst.current
            values["catalyst_percent"] = catalyst.percent_to_limit
        return values

    def collect(self, timestamp: Optional[float] = None) -> Optional[Snapshot]:
        if not self.is_connected():
            return None
        snapshot = self.history.record(self.gather(), timestamp)
        if snapshot is None:
            logger.debug("No sampler data yet, snapshot skipped")
            return None
        self.collected += 1
        try:
            self.history.save()
        except OSError as exc:
            logger.warning("Could not persist snapshots: %s", exc)
        return snapshot

    async def tick(self) -> None:
        self.collect()

    def _lookup(self, preferred: str, parameter: str) -> Optional[float]:
        sampler = self.samplers.get(preferred)
        if sampler is not None:
            value = sampler.latest_value(parameter)
            if value is not None:
                return value
        for name, other in self.samplers.items():
            if name == preferred:
                continue
            value = other.latest_value(parameter)
            if value is not None:
                return value
        return None


def _find_test(records: Sequence[TestRecord], test_id: str) -> Optional[TestRecord]:
    matches: List[TestRecord] = [record for record in records if record.test_id == test_id]
    return matches[0] if matches else None
