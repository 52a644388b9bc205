"""
Decoding of ELM327 hex responses into typed OBD-II values.

Responses are ASCII hex with optional vendor headers (``ATH1``), optional
spaces and an echo of the request (mode + 0x40 followed by the PID). The
helpers here strip that framing, convert the payload into a byte list and
apply the SAE J1979 scaling rules for the parameters the samplers use.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .errors import MalformedResponse, UnsupportedParameter

UNSUPPORTED_MARKERS = ("NO DATA", "?")
ADAPTER_ERROR_MARKERS = UNSUPPORTED_MARKERS + ("ERROR", "UNABLE TO CONNECT", "STOPPED")

_HEX_RE = re.compile(r"^[0-9A-F]*$")
_HEADER_RE = re.compile(r"^[0-9A-F]{2,3}")
_LINE_INDEX_RE = re.compile(r"^[0-9A-F]:")

ScaleFn = Callable[[Sequence[int]], float]


@dataclass(frozen=True)
class ParameterDescriptor:
    """Immutable description of one Mode 01 parameter."""

    name: str
    request_code: str
    scale: ScaleFn = field(compare=False, repr=False)
    unit: str
    byte_count: int = 1

    @property
    def echo(self) -> str:
        return response_echo(self.request_code)

    def decode(self, data: Sequence[int]) -> Optional[float]:
        if len(data) < self.byte_count:
            return None
        return float(self.scale(data))


def response_echo(request_code: str) -> str:
    """Return the echo the ECU prefixes to a positive response (``010C`` -> ``410C``)."""

    code = request_code.replace(" ", "").upper()
    if len(code) < 2:
        raise ValueError(f"Request code '{request_code}' is too short")
    mode = int(code[:2], 16)
    return f"{mode + 0x40:02X}{code[2:]}"


def _word(data: Sequence[int]) -> int:
    return data[0] * 256 + data[1]


def _percent(data: Sequence[int]) -> float:
    return data[0] * 100 / 255


def _temperature(data: Sequence[int]) -> float:
    return data[0] - 40


def _fuel_trim(data: Sequence[int]) -> float:
    return (data[0] - 128) * 100 / 128


def _o2_voltage(data: Sequence[int]) -> float:
    return data[0] / 200


_PID_TABLE = [
    ParameterDescriptor("RPM", "010C", lambda d: _word(d) / 4, "rpm", 2),
    ParameterDescriptor("SPEED", "010D", lambda d: d[0], "km/h"),
    ParameterDescriptor("COOLANT", "0105", _temperature, "°C"),
    ParameterDescriptor("THROTTLE", "0111", _percent, "%"),
    ParameterDescriptor("FUEL_LEVEL", "012F", _percent, "%"),
    ParameterDescriptor("BATTERY", "0142", lambda d: _word(d) / 1000, "V", 2),
    ParameterDescriptor("ENGINE_LOAD", "0104", _percent, "%"),
    ParameterDescriptor("TIMING_ADVANCE", "010E", lambda d: (d[0] - 128) / 2, "°"),
    ParameterDescriptor("INTAKE_TEMP", "010F", _temperature, "°C"),
    ParameterDescriptor("MAF_RATE", "0110", lambda d: _word(d) / 100, "g/s", 2),
    ParameterDescriptor("SHORT_FUEL_TRIM_1", "0106", _fuel_trim, "%"),
    ParameterDescriptor("LONG_FUEL_TRIM_1", "0107", _fuel_trim, "%"),
    ParameterDescriptor("O2_B1S1", "0114", _o2_voltage, "V"),
    ParameterDescriptor("O2_B1S2", "0115", _o2_voltage, "V"),
    ParameterDescriptor("MAP", "010B", lambda d: d[0], "kPa"),
    ParameterDescriptor("BARO", "0133", lambda d: d[0], "kPa"),
]

PIDS: Dict[str, ParameterDescriptor] = {desc.name: desc for desc in _PID_TABLE}


def get_descriptor(name: str) -> ParameterDescriptor:
    try:
        return PIDS[name.upper()]
    except KeyError as exc:
        raise KeyError(f"Unknown parameter '{name}'. Expected one of {sorted(PIDS)}") from exc


def is_unsupported(raw: str | None) -> bool:
    if not raw:
        return False
    text = raw.upper()
    return any(marker in text for marker in UNSUPPORTED_MARKERS)


def clean_response(raw: str | None, echo: str | None = None) -> Optional[List[int]]:
    """
    Convert a raw adapter frame into data bytes.

    With an ``echo`` the payload starts right after its first occurrence, which
    drops any header or ISO-TP length that precedes it; a frame without the echo
    yields ``None``. Without an echo a 2-3 digit header is stripped instead.
    Adapter error markers and non-hex leftovers also yield ``None``.
    """

    if not raw:
        return None
    text = raw.upper()
    if any(marker in text for marker in ADAPTER_ERROR_MARKERS):
        return None
    lines = []
    for line in text.splitlines():
        line = re.sub(r"\s+", "", line)
        line = _LINE_INDEX_RE.sub("", line)
        # Status lines such as SEARCHING... or BUS INIT carry no payload
        if line and _HEX_RE.match(line):
            lines.append(line)
    if not lines:
        return None

    if echo:
        echo = echo.replace(" ", "").upper()
        payload = None
        for idx, line in enumerate(lines):
            pos = line.find(echo)
            if pos >= 0:
                payload = line[pos + len(echo) :]
                payload += "".join(_continuation(line[:pos], echo, rest) for rest in lines[idx + 1 :])
                break
        if payload is None:
            return None
    else:
        payload = _HEADER_RE.sub("", "".join(lines), count=1)

    if len(payload) % 2 or not _HEX_RE.match(payload):
        return None
    return [int(payload[i : i + 2], 16) for i in range(0, len(payload), 2)]


def _continuation(first_prefix: str, echo: str, line: str) -> str:
    # Multi-line answers either repeat the echo per line (K-line) or carry a
    # header plus a one byte sequence number (CAN with ATH1).
    pos = line.find(echo)
    if pos >= 0:
        return line[pos + len(echo) :]
    header = os.path.commonprefix([first_prefix, line])
    if len(header) >= 3:
        return line[len(header) + 2 :]
    return line


def decode_parameter(descriptor: ParameterDescriptor, raw: str | None) -> float:
    """Decode one parameter response or raise the matching protocol error."""

    if is_unsupported(raw):
        raise UnsupportedParameter(descriptor.request_code, raw or "")
    data = clean_response(raw, descriptor.echo)
    if data is None:
        raise MalformedResponse(descriptor.request_code, raw or "", "no decodable payload")
    value = descriptor.decode(data)
    if value is None:
        raise MalformedResponse(
            descriptor.request_code,
            raw or "",
            f"expected {descriptor.byte_count} bytes, got {len(data)}",
        )
    return value


# --- Diagnostic trouble codes -------------------------------------------------

DTC_PREFIXES = [
    "P0", "P1", "P2", "P3",
    "C0", "C1", "C2", "C3",
    "B0", "B1", "B2", "B3",
    "U0", "U1", "U2", "U3",
]


def decode_dtc(high: int | str, low: int | None = None) -> Optional[str]:
    """
    Decode a two-byte trouble code.

    Accepts either the two bytes or a four-digit hex string: ``"0300"`` ->
    ``P0300``, ``"4102"`` -> ``C0102``. The all-zero padding code yields ``None``.
    """

    if isinstance(high, str):
        text = high.replace(" ", "").upper()
        if len(text) != 4 or not _HEX_RE.match(text):
            raise ValueError(f"DTC '{high}' must be four hex digits")
        high, low = int(text[:2], 16), int(text[2:], 16)
    if low is None:
        raise ValueError("decode_dtc requires two bytes")
    if high == 0 and low == 0:
        return None
    prefix = DTC_PREFIXES[(high >> 4) & 0x0F]
    return f"{prefix}{high & 0x0F:X}{low:02X}"


def parse_dtc_response(raw: str | None, echo: str = "43") -> List[str]:
    """Extract stored/pending codes from a Mode 03/07 response (count byte first)."""

    data = clean_response(raw, echo)
    if not data:
        return []
    codes: List[str] = []
    for i in range(1, len(data) - 1, 2):
        code = decode_dtc(data[i], data[i + 1])
        if code and code not in codes:
            codes.append(code)
    return codes


# --- Readiness monitors -------------------------------------------------------

CONTINUOUS_MONITORS = {
    "misfire": 0x10,
    "fuel_system": 0x20,
    "components": 0x40,
}

NON_CONTINUOUS_MONITORS = {
    "catalyst": 0x01,
    "heated_catalyst": 0x02,
    "evap": 0x04,
    "secondary_air": 0x08,
    "ac_refrigerant": 0x10,
    "oxygen_sensor": 0x20,
    "oxygen_sensor_heater": 0x40,
    "egr": 0x80,
}


@dataclass(frozen=True)
class MonitorState:
    supported: bool
    complete: bool


@dataclass
class MonitorStatus:
    """MIL state, stored code count and per-monitor readiness."""

    mil_on: bool
    stored_code_count: int
    monitors: Dict[str, MonitorState]

    @property
    def incomplete(self) -> List[str]:
        return [name for name, state in self.monitors.items() if state.supported and not state.complete]

    def as_dict(self) -> Dict[str, object]:
        return {
            "milOn": self.mil_on,
            "dtcCount": self.stored_code_count,
            "monitors": {
                name: {"supported": state.supported, "complete": state.complete}
                for name, state in self.monitors.items()
            },
        }


def decode_readiness(a: int, b: int, c: int) -> MonitorStatus:
    monitors: Dict[str, MonitorState] = {}
    # Continuous monitors carry their completion bits in C
    for name, bit in CONTINUOUS_MONITORS.items():
        monitors[name] = MonitorState(supported=True, complete=not (c & bit))
    for name, bit in NON_CONTINUOUS_MONITORS.items():
        supported = bool(b & bit)
        monitors[name] = MonitorState(supported=supported, complete=supported and not (c & bit))
    return MonitorStatus(mil_on=bool(a & 0x80), stored_code_count=a & 0x7F, monitors=monitors)


# --- Mode 06 on-board monitor test results -----------------------------------

MODE06_SCALE = 0.001
MODE06_RECORD_SIZE = 8

TEST_IDS: Dict[str, tuple[str, str]] = {
    "0100": ("Catalyst Monitor Bank 1", "ratio"),
    "0200": ("Catalyst Monitor Bank 2", "ratio"),
    "0300": ("EGR System Monitor", "%"),
    "0501": ("O2 Sensor Bank 1 Sensor 1", "V"),
    "0502": ("O2 Sensor Bank 1 Sensor 2", "V"),
    "0601": ("O2 Sensor Bank 2 Sensor 1", "V"),
    "0602": ("O2 Sensor Bank 2 Sensor 2", "V"),
    "0A00": ("EVAP System Leak", "kPa"),
    "0B01": ("Misfire Cylinder 1", "count"),
    "0B02": ("Misfire Cylinder 2", "count"),
    "0B03": ("Misfire Cylinder 3", "count"),
    "0B04": ("Misfire Cylinder 4", "count"),
    "0B05": ("Misfire Cylinder 5", "count"),
    "0B06": ("Misfire Cylinder 6", "count"),
    "2100": ("Fuel System Rich/Lean", "%"),
}

TEST_CATEGORIES: Dict[str, str] = {
    "01": "Catalyst System",
    "02": "Catalyst System",
    "03": "EGR System",
    "05": "Oxygen Sensors",
    "06": "Oxygen Sensors",
    "0A": "EVAP System",
    "0B": "Misfire Monitor",
}

STATUS_LABELS = {
    "excellent": "Excellent",
    "good": "Good",
    "fair": "Fair",
    "warning": "Near Limit",
}


@dataclass
class TestRecord:
    """One decoded on-board monitor test."""

    __test__ = False  # keep pytest from collecting this class

    test_id: str
    component_id: str
    min: float
    max: float
    current: float
    percent_to_limit: float
    status_level: str
    name: str = ""
    unit: str = "units"

    @property
    def category(self) -> str:
        return TEST_CATEGORIES.get(self.test_id, "Other Tests")

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status_level]

    def as_dict(self) -> Dict[str, object]:
        return {
            "test": self.name,
            "testID": self.test_id,
            "componentID": self.component_id,
            "min": self.min,
            "max": self.max,
            "current": self.current,
            "unit": self.unit,
            "status": self.status_label,
            "percentToLimit": self.percent_to_limit,
        }


def evaluate_test_status(percent_to_limit: float) -> str:
    if percent_to_limit < 50:
        return "excellent"
    if percent_to_limit < 75:
        return "good"
    if percent_to_limit < 90:
        return "fair"
    return "warning"


def _signed16(high: int, low: int) -> int:
    value = (high << 8) | low
    return value - 0x10000 if value > 0x7FFF else value


def decode_test_records(data: Sequence[int], scale: float = MODE06_SCALE) -> List[TestRecord]:
    """
    Split a Mode 06 payload into 8-byte records.

    Trailing bytes that do not form a full record are ignored. The position of
    the current value inside [min, max] is computed on the raw integers and is
    not clamped, so values outside the window report below 0 or above 100.
    """

    records: List[TestRecord] = []
    for i in range(0, len(data) - MODE06_RECORD_SIZE + 1, MODE06_RECORD_SIZE):
        tid = f"{data[i]:02X}"
        cid = f"{data[i + 1]:02X}"
        raw_min = _signed16(data[i + 2], data[i + 3])
        raw_max = _signed16(data[i + 4], data[i + 5])
        raw_cur = _signed16(data[i + 6], data[i + 7])
        span = raw_max - raw_min
        percent = (raw_cur - raw_min) / span * 100 if span != 0 else 0.0
        name, unit = TEST_IDS.get(tid + cid, (f"Test {tid} Component {cid}", "units"))
        records.append(
            TestRecord(
                test_id=tid,
                component_id=cid,
                min=raw_min * scale,
                max=raw_max * scale,
                current=raw_cur * scale,
                percent_to_limit=percent,
                status_level=evaluate_test_status(percent),
                name=name,
                unit=unit,
            )
        )
    return records


# --- Mode 09 vehicle information ---------------------------------------------

_VIN_CHARS = set("0123456789ABCDEFGHJKLMNPRSTUVWXYZ")
VIN_LENGTH = 17


def decode_vin(data: Sequence[int]) -> Optional[str]:
    """Return the 17 character VIN embedded in a Mode 09 PID 02 payload."""

    chars = [chr(byte) for byte in data if chr(byte) in _VIN_CHARS]
    if len(chars) < VIN_LENGTH:
        return None
    return "".join(chars[:VIN_LENGTH])


def decode_ascii(data: Sequence[int]) -> Optional[str]:
    text = "".join(chr(byte) for byte in data if 32 <= byte <= 126).strip()
    return text or None
