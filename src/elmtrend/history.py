"""Snapshot history: bounded ring buffer with pluggable persistence."""
from __future__ import annotations

import collections
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterator, List, Optional, Protocol

import pandas as pd

logger = logging.getLogger(__name__)

SNAPSHOTS_KEY = "predictive_snapshots"
PREDICTIONS_KEY = "predictive_predictions"
LAST_ANALYSIS_KEY = "predictive_last_analysis"

METRICS = ("battery_voltage", "fuel_trim", "catalyst_ratio", "catalyst_percent", "coolant_temp")


class Storage(Protocol):
    """Key/value store for serialized history and predictions."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStorage:
    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileStorage:
    """Stores each key as ``<directory>/<key>.json``."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = self._path(key).with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(self._path(key))

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class Snapshot:
    """Metric values captured at one point in time (epoch seconds)."""

    timestamp: float
    values: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": int(self.timestamp * 1000),
            "date": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "data": dict(self.values),
        }

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "Snapshot":
        if "timestamp" not in data:
            raise ValueError("snapshot requires a 'timestamp' field")
        values = data.get("data", data.get("values")) or {}
        if not isinstance(values, dict):
            raise ValueError("snapshot 'data' must be an object")
        return Snapshot(
            timestamp=float(data["timestamp"]) / 1000.0,
            values={str(key): float(value) for key, value in values.items() if value is not None},
        )


class SnapshotHistory:
    """
    Ring buffer of snapshots; the oldest entry is dropped once ``capacity``
    is reached. Persistence goes through an optional :class:`Storage`.
    """

    def __init__(self, capacity: int = 500, storage: Optional[Storage] = None):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.storage = storage
        self._snapshots: Deque[Snapshot] = collections.deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[Snapshot]:
        return iter(self._snapshots)

    @property
    def snapshots(self) -> List[Snapshot]:
        return list(self._snapshots)

    def append(self, snapshot: Snapshot) -> None:
        self._snapshots.append(snapshot)

    def record(self, values: Dict[str, float], timestamp: Optional[float] = None) -> Optional[Snapshot]:
        """Append a snapshot unless ``values`` is empty."""

        clean = {key: float(value) for key, value in values.items() if value is not None}
        if not clean:
            return None
        snapshot = Snapshot(timestamp=time.time() if timestamp is None else timestamp, values=clean)
        self.append(snapshot)
        return snapshot

    def series(self, metric: str) -> List[float]:
        return [snap.values[metric] for snap in self._snapshots if metric in snap.values]

    def clear(self) -> None:
        self._snapshots.clear()

    def to_records(self) -> List[Dict[str, Any]]:
        return [snap.as_dict() for snap in self._snapshots]

    def to_dataframe(self) -> pd.DataFrame:
        rows = [{"timestamp": snap.timestamp, **snap.values} for snap in self._snapshots]
        df = pd.DataFrame(rows, columns=["timestamp", *_metric_columns(self._snapshots)])
        if not df.empty:
            df["time"] = pd.to_datetime(df["timestamp"], unit="s", utc=True)
        return df

    def extend_records(self, records: List[Dict[str, Any]]) -> None:
        for record in records:
            self.append(Snapshot.from_mapping(record))

    def load(self) -> int:
        if self.storage is None:
            return 0
        payload = self.storage.get(SNAPSHOTS_KEY)
        if not payload:
            logger.info("Starting fresh - no historical data found")
            return 0
        try:
            records = json.loads(payload)
        except json.JSONDecodeError as exc:
            logger.warning("Discarding unreadable snapshot store: %s", exc)
            return 0
        self.clear()
        self.extend_records(records or [])
        logger.info("Loaded %d historical snapshots", len(self))
        return len(self)

    def save(self) -> None:
        if self.storage is None:
            return
        self.storage.set(SNAPSHOTS_KEY, json.dumps(self.to_records()))


def _metric_columns(snapshots: Deque[Snapshot]) -> List[str]:
    seen = [name for name in METRICS if any(name in snap.values for snap in snapshots)]
    extra = sorted({key for snap in snapshots for key in snap.values} - set(METRICS))
    return seen + extra


def load_history_json(path: str | Path, capacity: int = 500) -> SnapshotHistory:
    """Load snapshots from a JSON export.

    Parameters
    ----------
    path:
        File holding either a list of snapshot objects or an object with a
        ``snapshots`` list. Each snapshot has ``timestamp`` (epoch ms) and a
        ``data`` mapping of metric name to value.

    Returns
    -------
    SnapshotHistory
        History trimmed to the newest ``capacity`` entries.
    """

    path = Path(path)
    if not path.exists():  # pragma: no cover - defensive
        raise FileNotFoundError(path)
    with path.open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    records = payload.get("snapshots") if isinstance(payload, dict) else payload
    if not isinstance(records, list):
        raise ValueError("history file must contain a list of snapshots")
    history = SnapshotHistory(capacity=capacity)
    history.extend_records(records)
    return history


def save_history_json(history: SnapshotHistory, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"snapshots": history.to_records()}, indent=2), encoding="utf-8")
