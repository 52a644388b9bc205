from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

from ..thresholds import BatteryThresholds, CatalystThresholds, FuelTrimThresholds, Thresholds

BLE_SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
BLE_CHARACTERISTIC_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"

DEFAULT_INIT_COMMANDS = ["ATZ", "ATE0", "ATL0", "ATS0", "ATH1", "ATAT1", "ATSP0"]


@dataclass
class LinkConfig:
    transport: str = "serial"  # serial | ble
    port: str = "/dev/ttyUSB0"
    baudrate: int = 38400
    address: str | None = None
    service_uuid: str = BLE_SERVICE_UUID
    notify_uuid: str = BLE_CHARACTERISTIC_UUID
    write_uuid: str = BLE_CHARACTERISTIC_UUID
    connect_timeout_sec: float = 10.0

    @property
    def transport_kind(self) -> str:
        kind = self.transport.lower()
        if kind not in {"serial", "ble"}:
            raise ValueError(f"Unsupported transport '{self.transport}'")
        return kind


@dataclass
class AdapterConfig:
    min_command_delay_ms: float = 150.0
    command_timeout_ms: float = 3000.0
    reset_delay_ms: float = 1500.0
    init_step_delay_ms: float = 100.0
    init_commands: List[str] = field(default_factory=lambda: list(DEFAULT_INIT_COMMANDS))
    terminator: str = ">"


@dataclass
class PollingConfig:
    max_errors: int = 3
    malformed_counts_as_failure: bool = False
    command_timeout_ms: float = 3000.0
    profiles: List[str] = field(default_factory=lambda: ["dashboard", "battery", "emissions"])
    stats_log_interval: float = 60.0


@dataclass
class HistoryConfig:
    capacity: int = 500
    collection_interval_s: float = 60.0
    directory: Path = Path("elmtrend_data")
    min_snapshots: int = 5


@dataclass
class ElmConfig:
    link: LinkConfig = field(default_factory=LinkConfig)
    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    thresholds: Thresholds = field(default_factory=Thresholds)


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> ElmConfig:
    """
    Load the adapter configuration from JSON and apply CLI-style overrides.

    Every key is optional; missing sections fall back to the defaults above.
    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["adapter.min_command_delay_ms=200", "link.transport=ble"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)

    link = merged.get("link") or {}
    adapter = merged.get("adapter") or {}
    polling = merged.get("polling") or {}
    history = merged.get("history") or {}
    thresholds = merged.get("thresholds") or {}
    battery = thresholds.get("battery") or {}
    catalyst = thresholds.get("catalyst") or {}
    fuel_trim = thresholds.get("fuel_trim") or {}

    return ElmConfig(
        link=LinkConfig(
            transport=str(link.get("transport", "serial")),
            port=str(link.get("port", "/dev/ttyUSB0")),
            baudrate=int(link.get("baudrate", 38400)),
            address=str(link["address"]) if link.get("address") is not None else None,
            service_uuid=str(link.get("service_uuid", BLE_SERVICE_UUID)),
            notify_uuid=str(link.get("notify_uuid", BLE_CHARACTERISTIC_UUID)),
            write_uuid=str(link.get("write_uuid", BLE_CHARACTERISTIC_UUID)),
            connect_timeout_sec=float(link.get("connect_timeout_sec", 10.0)),
        ),
        adapter=AdapterConfig(
            min_command_delay_ms=float(adapter.get("min_command_delay_ms", 150.0)),
            command_timeout_ms=float(adapter.get("command_timeout_ms", 3000.0)),
            reset_delay_ms=float(adapter.get("reset_delay_ms", 1500.0)),
            init_step_delay_ms=float(adapter.get("init_step_delay_ms", 100.0)),
            init_commands=[str(cmd) for cmd in adapter.get("init_commands", DEFAULT_INIT_COMMANDS)],
            terminator=str(adapter.get("terminator", ">")),
        ),
        polling=PollingConfig(
            max_errors=int(polling.get("max_errors", 3)),
            malformed_counts_as_failure=bool(polling.get("malformed_counts_as_failure", False)),
            command_timeout_ms=float(polling.get("command_timeout_ms", 3000.0)),
            profiles=_as_list(polling.get("profiles", ["dashboard", "battery", "emissions"])),
            stats_log_interval=float(polling.get("stats_log_interval", 60.0)),
        ),
        history=HistoryConfig(
            capacity=int(history.get("capacity", 500)),
            collection_interval_s=float(history.get("collection_interval_s", 60.0)),
            directory=Path(history.get("directory", "elmtrend_data")),
            min_snapshots=int(history.get("min_snapshots", 5)),
        ),
        thresholds=Thresholds(
            battery=BatteryThresholds(
                critical_low=float(battery.get("critical_low", 12.0)),
                warning_low=float(battery.get("warning_low", 12.4)),
                warning_high=float(battery.get("warning_high", 14.8)),
                critical_high=float(battery.get("critical_high", 15.0)),
                decline_slope=float(battery.get("decline_slope", -0.01)),
                min_samples=int(battery.get("min_samples", 5)),
            ),
            catalyst=CatalystThresholds(
                warning_ratio=float(catalyst.get("warning_ratio", 0.40)),
                critical_ratio=float(catalyst.get("critical_ratio", 0.45)),
                degrade_slope=float(catalyst.get("degrade_slope", 0.01)),
                min_samples=int(catalyst.get("min_samples", 3)),
            ),
            fuel_trim=FuelTrimThresholds(
                warning_offset=float(fuel_trim.get("warning_offset", 10.0)),
                critical_offset=float(fuel_trim.get("critical_offset", 20.0)),
                min_samples=int(fuel_trim.get("min_samples", 5)),
            ),
        ),
    )


def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
