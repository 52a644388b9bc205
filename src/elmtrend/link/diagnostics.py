"""
One-shot diagnostic services: trouble codes, readiness, freeze frame,
on-board monitor results and vehicle information.

Every function takes the command sender (``AdapterSession.send_command`` or
``CommandScheduler.submit``) so it can run against any link.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .decoder import (
    MODE06_SCALE,
    MonitorStatus,
    ParameterDescriptor,
    TestRecord,
    clean_response,
    decode_ascii,
    decode_parameter,
    decode_readiness,
    decode_test_records,
    decode_vin,
    get_descriptor,
    is_unsupported,
    parse_dtc_response,
)
from .errors import CommandTimeout, MalformedResponse, UnsupportedParameter
from .sampler import Sender

logger = logging.getLogger(__name__)

COMMON_TEST_IDS = ["01", "03", "05", "0A", "0B"]
FREEZE_FRAME_PARAMETERS = [
    "RPM",
    "SPEED",
    "COOLANT",
    "ENGINE_LOAD",
    "SHORT_FUEL_TRIM_1",
    "TIMING_ADVANCE",
    "MAF_RATE",
    "O2_B1S1",
]


@dataclass
class VehicleInfo:
    vin: Optional[str] = None
    calibration_id: Optional[str] = None
    ecu_name: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"vin": self.vin, "calibrationId": self.calibration_id, "ecuName": self.ecu_name}


@dataclass
class FreezeFrame:
    available: bool
    values: Dict[str, float] = field(default_factory=dict)
    units: Dict[str, str] = field(default_factory=dict)


async def read_parameter(sender: Sender, descriptor: ParameterDescriptor | str, timeout_ms: Optional[float] = None) -> float:
    desc = get_descriptor(descriptor) if isinstance(descriptor, str) else descriptor
    raw = await sender(desc.request_code, timeout_ms)
    return decode_parameter(desc, raw)


async def read_dtcs(sender: Sender, timeout_ms: Optional[float] = None) -> List[str]:
    raw = await sender("03", timeout_ms)
    codes = parse_dtc_response(raw, "43")
    logger.info("Read %d stored trouble code(s)", len(codes))
    return codes


async def clear_dtcs(sender: Sender, timeout_ms: Optional[float] = None) -> bool:
    raw = await sender("04", timeout_ms)
    ok = "44" in raw.replace(" ", "").upper()
    if ok:
        logger.info("Trouble codes cleared")
    else:
        logger.warning("Clear codes not acknowledged: %r", raw)
    return ok


async def read_readiness(sender: Sender, timeout_ms: Optional[float] = None) -> MonitorStatus:
    raw = await sender("0101", timeout_ms)
    if is_unsupported(raw):
        raise UnsupportedParameter("0101", raw)
    data = clean_response(raw, "4101")
    if data is None or len(data) < 4:
        raise MalformedResponse("0101", raw, "readiness needs 4 data bytes")
    return decode_readiness(data[0], data[1], data[2])


async def read_freeze_frame(
    sender: Sender,
    parameters: Sequence[str] = FREEZE_FRAME_PARAMETERS,
    timeout_ms: Optional[float] = None,
) -> FreezeFrame:
    try:
        probe = await sender("0200", timeout_ms)
    except CommandTimeout as exc:
        logger.warning("Freeze frame check timed out: %s", exc)
        return FreezeFrame(available=False)
    if clean_response(probe, "4200") is None:
        logger.info("No freeze frame stored")
        return FreezeFrame(available=False)

    frame = FreezeFrame(available=True)
    for name in parameters:
        desc = _freeze_descriptor(get_descriptor(name))
        try:
            raw = await sender(desc.request_code, timeout_ms)
            frame.values[desc.name] = decode_parameter(desc, raw)
            frame.units[desc.name] = desc.unit
        except (CommandTimeout, UnsupportedParameter, MalformedResponse) as exc:
            logger.debug("Freeze frame %s unavailable: %s", desc.name, exc)
    return frame


def _freeze_descriptor(desc: ParameterDescriptor, frame_number: int = 0) -> ParameterDescriptor:
    # Mode 02 requests carry the frame number after the PID: 02 0C 00 -> 42 0C 00 ..
    code = f"02{desc.request_code[2:]}{frame_number:02X}"
    return ParameterDescriptor(desc.name, code, desc.scale, desc.unit, desc.byte_count)


async def read_test_results(
    sender: Sender,
    timeout_ms: Optional[float] = None,
    scale: float = MODE06_SCALE,
) -> List[TestRecord]:
    """Read Mode 06 results, falling back to individual common test IDs."""

    try:
        raw = await sender("0600", timeout_ms)
    except CommandTimeout as exc:
        logger.debug("Mode 06 bulk request timed out: %s", exc)
        raw = ""
    records = _parse_mode06(raw, "4600", scale)
    if records:
        logger.info("Mode 06 returned %d test result(s)", len(records))
        return records

    logger.info("Mode 06 bulk request empty, scanning common test IDs")
    for tid in COMMON_TEST_IDS:
        try:
            raw = await sender(f"06{tid}", timeout_ms)
        except CommandTimeout as exc:
            logger.debug("Test %s unavailable: %s", tid, exc)
            continue
        records.extend(_parse_mode06(raw, "46", scale))
    return records


def _parse_mode06(raw: str, echo: str, scale: float) -> List[TestRecord]:
    data = clean_response(raw, echo)
    if not data:
        return []
    return decode_test_records(data, scale)


async def read_vehicle_info(sender: Sender, timeout_ms: Optional[float] = None) -> VehicleInfo:
    info = VehicleInfo()
    try:
        raw = await sender("0902", timeout_ms)
    except CommandTimeout as exc:
        logger.warning("VIN request timed out: %s", exc)
    else:
        data = clean_response(raw, "4902")
        if data is not None:
            info.vin = decode_vin(data)
        if info.vin is None:
            logger.warning("VIN not available or invalid: %r", raw)

    for code, echo, attr in (("0904", "4904", "calibration_id"), ("090A", "490A", "ecu_name")):
        try:
            raw = await sender(code, timeout_ms)
        except CommandTimeout as exc:
            logger.debug("%s unavailable: %s", code, exc)
            continue
        data = clean_response(raw, echo)
        if data:
            setattr(info, attr, decode_ascii(data))
    return info
