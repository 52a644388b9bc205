from __future__ import annotations

import json
from pathlib import Path

import pytest

from elmtrend.history import (
    SNAPSHOTS_KEY,
    FileStorage,
    MemoryStorage,
    Snapshot,
    SnapshotHistory,
    load_history_json,
    save_history_json,
)


def test_ring_buffer_drops_oldest():
    history = SnapshotHistory(capacity=3)
    for i in range(5):
        history.record({"battery_voltage": 12.0 + i / 10}, timestamp=1000.0 + i)
    assert len(history) == 3
    assert history.series("battery_voltage") == pytest.approx([12.2, 12.3, 12.4])
    assert history.snapshots[0].timestamp == 1002.0


def test_empty_values_not_recorded():
    history = SnapshotHistory()
    assert history.record({}) is None
    assert history.record({"fuel_trim": None}) is None
    assert len(history) == 0
    with pytest.raises(ValueError):
        SnapshotHistory(capacity=0)


def test_series_skips_missing_metrics():
    history = SnapshotHistory()
    history.record({"battery_voltage": 12.6}, timestamp=1.0)
    history.record({"fuel_trim": 3.1}, timestamp=2.0)
    history.record({"battery_voltage": 12.5, "fuel_trim": 2.9}, timestamp=3.0)
    assert history.series("battery_voltage") == [12.6, 12.5]
    assert history.series("fuel_trim") == [3.1, 2.9]
    assert history.series("catalyst_ratio") == []


def test_snapshot_serialization_uses_milliseconds():
    snap = Snapshot(timestamp=1_700_000_000.5, values={"battery_voltage": 12.6})
    data = snap.as_dict()
    assert data["timestamp"] == 1_700_000_000_500
    assert data["date"].startswith("2023-11-14")
    assert Snapshot.from_mapping(data) == snap


def test_file_storage_persists_history(tmp_path: Path):
    storage = FileStorage(tmp_path / "store")
    history = SnapshotHistory(storage=storage)
    history.record({"battery_voltage": 12.6}, timestamp=10.0)
    history.record({"battery_voltage": 12.5}, timestamp=20.0)
    history.save()
    assert (tmp_path / "store" / f"{SNAPSHOTS_KEY}.json").exists()

    restored = SnapshotHistory(storage=FileStorage(tmp_path / "store"))
    assert restored.load() == 2
    assert restored.series("battery_voltage") == [12.6, 12.5]

    storage.delete(SNAPSHOTS_KEY)
    assert storage.get(SNAPSHOTS_KEY) is None


def test_unreadable_store_is_discarded():
    storage = MemoryStorage()
    storage.set(SNAPSHOTS_KEY, "{not json")
    history = SnapshotHistory(storage=storage)
    assert history.load() == 0
    assert len(history) == 0


def test_dataframe_columns():
    history = SnapshotHistory()
    assert history.to_dataframe().empty
    history.record({"coolant_temp": 88.0, "battery_voltage": 12.6}, timestamp=0.0)
    df = history.to_dataframe()
    assert list(df.columns) == ["timestamp", "battery_voltage", "coolant_temp", "time"]
    assert str(df["time"].iloc[0]).startswith("1970-01-01")


def test_history_json_round_trip(tmp_path: Path):
    path = tmp_path / "history.json"
    path.write_text(
        json.dumps([{"timestamp": 1000, "data": {"battery_voltage": 12.6}}]), encoding="utf-8"
    )
    history = load_history_json(path)
    assert history.series("battery_voltage") == [12.6]

    out = tmp_path / "out" / "history.json"
    save_history_json(history, out)
    assert load_history_json(out).snapshots == history.snapshots

    path.write_text(json.dumps({"snapshots": {"bad": 1}}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_history_json(path)
